"""Helper classes for tracking websocket connections to the signaling server."""
from __future__ import annotations

import dataclasses
import datetime
import uuid

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


def new_member_id() -> str:
    """Generate a new opaque member identifier."""
    return uuid.uuid4().hex


@dataclasses.dataclass(frozen=True, eq=False)
class Connection:
    """A client connected to the signaling server.

    Attributes:
        member_id: Opaque identifier assigned when the client connected.
            Used by other members to address signals to this client.
        websocket: WebSocket connection to the client.
        created: Time the connection was accepted at.
    """

    member_id: str
    websocket: ServerConnection
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Connection):
            return self.member_id == other.member_id
        return False

    def __hash__(self) -> int:
        return hash(self.member_id)

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(member_id={self.member_id}, '
            f'address={address}, created={created})'
        )


class ConnectionManager:
    """Manages the currently open client connections.

    Warning:
        This class is intended for internal use by the
        [`SignalingServer`][pairlink.signaling.server.SignalingServer].
    """

    def __init__(self) -> None:
        self._by_member_id: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._by_member_id)

    def add_connection(self, connection: Connection) -> None:
        """Add a newly accepted connection."""
        self._by_member_id[connection.member_id] = connection

    def get_connection_by_member_id(self, member_id: str) -> Connection | None:
        """Get a connection by its member ID."""
        return self._by_member_id.get(member_id, None)

    def remove_connection(self, connection: Connection) -> None:
        """Remove a connection. No-op if it was already removed."""
        self._by_member_id.pop(connection.member_id, None)
