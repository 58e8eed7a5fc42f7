"""Registry of rooms and the (at most two) members seated in each."""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any
from typing import NamedTuple

from pairlink.events import EventName

logger = logging.getLogger(__name__)

ROOM_CAPACITY = 2


class Notification(NamedTuple):
    """Event which must be delivered to a member after a registry mutation.

    Attributes:
        recipient: Member ID to deliver the event to.
        event: Name of the event.
        data: Event payload.
    """

    recipient: str
    event: EventName
    data: Any = None


class JoinStatus(enum.Enum):
    """Result of a request to join a room."""

    WAITING = 'waiting'
    """Seated alone in the room, waiting for a peer."""
    PAIRED = 'paired'
    """Seated as the second member of the room."""
    ROOM_FULL = 'room_full'
    """Rejected because the room already holds two members."""


@dataclasses.dataclass(frozen=True)
class JoinOutcome:
    """Outcome of [`RoomRegistry.join()`][pairlink.signaling.registry.RoomRegistry.join].

    Attributes:
        status: Whether the member was seated and if it was paired.
        room_id: Room the member asked to join.
        peer: Member already in the room when `status` is `PAIRED`.
        notifications: Events to deliver, in order, once the registry lock
            has been released. Includes `user left` events caused by removing
            the member from rooms it was previously seated in.
    """

    status: JoinStatus
    room_id: str
    peer: str | None = None
    notifications: tuple[Notification, ...] = ()

    @property
    def seated(self) -> bool:
        """If the member was admitted to the room."""
        return self.status is not JoinStatus.ROOM_FULL


class RoomRegistry:
    """In-memory rooms which each seat zero, one, or two members.

    Rooms are created when a member joins an unseen room ID and deleted as
    soon as their last member leaves. A member is seated in at most one room.
    All mutations are serialized by a single lock and never perform I/O.
    Instead, mutations return the
    [`Notification`][pairlink.signaling.registry.Notification] events that
    the caller must deliver after the mutation completes.

    Example:
        ```python
        registry = RoomRegistry()

        outcome = await registry.join('alice', 'room')
        assert outcome.status is JoinStatus.WAITING

        outcome = await registry.join('bob', 'room')
        assert outcome.status is JoinStatus.PAIRED
        assert outcome.peer == 'alice'
        ```
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rooms: dict[str, list[str]] = {}

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def rooms(self) -> dict[str, tuple[str, ...]]:
        """Get a snapshot of all rooms and their members in arrival order."""
        return {
            room_id: tuple(members) for room_id, members in self._rooms.items()
        }

    def members(self, room_id: str) -> tuple[str, ...]:
        """Get the members of a room in arrival order.

        Returns:
            Tuple of member IDs which is empty if the room does not exist.
        """
        return tuple(self._rooms.get(room_id, ()))

    def room_of(self, member: str) -> str | None:
        """Get the ID of the room a member is seated in."""
        for room_id, members in self._rooms.items():
            if member in members:
                return room_id
        return None

    async def join(self, member: str, room_id: str) -> JoinOutcome:
        """Seat a member in a room.

        The member is first removed from any rooms it is already seated in.
        If the room does not exist, it is created with the member as its only
        occupant. If the room has one occupant, the member is appended and the
        two are paired: the new member is told about the existing one with
        `other user` and the existing member is told about the new one with
        `user joined`. If the room is full, nothing is mutated and the member
        is told `room full`.

        Args:
            member: ID of the member joining.
            room_id: ID of the room to join.

        Returns:
            Outcome of the join and the notifications to deliver.
        """
        async with self._lock:
            notifications = self._remove(member)
            members = self._rooms.get(room_id)

            if members is None:
                self._rooms[room_id] = [member]
                outcome = JoinOutcome(
                    JoinStatus.WAITING,
                    room_id,
                    notifications=tuple(notifications),
                )
            elif len(members) < ROOM_CAPACITY:
                members.append(member)
                peer = next(other for other in members if other != member)
                notifications.append(
                    Notification(member, EventName.other_user, peer),
                )
                notifications.append(
                    Notification(peer, EventName.user_joined, member),
                )
                outcome = JoinOutcome(
                    JoinStatus.PAIRED,
                    room_id,
                    peer=peer,
                    notifications=tuple(notifications),
                )
            else:
                logger.info(
                    f'Member {member} rejected from full room {room_id}',
                )
                notifications.append(
                    Notification(member, EventName.room_full),
                )
                return JoinOutcome(
                    JoinStatus.ROOM_FULL,
                    room_id,
                    notifications=tuple(notifications),
                )

            logger.info(f'Room {room_id}: {self._rooms[room_id]}')
            return outcome

    async def leave(self, member: str) -> list[Notification]:
        """Remove a member from every room it is seated in.

        Safe to call any number of times for the same member. Calls after the
        first have no effect and return no notifications.

        Args:
            member: ID of the member leaving.

        Returns:
            A `user left` notification for each counterpart left behind.
        """
        async with self._lock:
            return self._remove(member)

    def _remove(self, member: str) -> list[Notification]:
        # Caller must hold the lock. A member is expected in at most one room
        # but every room is scanned in case a stale entry was left behind.
        notifications: list[Notification] = []
        removed = False
        for room_id in list(self._rooms):
            members = self._rooms[room_id]
            if member not in members:
                continue
            removed = True
            members.remove(member)
            for remaining in members:
                notifications.append(
                    Notification(remaining, EventName.user_left),
                )
            if not members:
                del self._rooms[room_id]

        if removed:
            logger.info(f'Rooms after removing {member}: {self._rooms}')
        return notifications
