"""Control-plane events exchanged between clients and the signaling server.

Every websocket text frame carries exactly one event encoded as a JSON
object with an `event` name and an optional `data` payload.

```json
{"event": "signal", "data": {"target": "c0ffee...", "signal": {...}}}
```
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any


class EventName(str, enum.Enum):
    """Names of the events in the pairing protocol."""

    join_room = 'join room'
    """Client requests admission to a room. Data is the room ID."""
    room_full = 'room full'
    """Server rejects admission because the room holds two members."""
    other_user = 'other user'
    """Server tells the joining member (the caller) about the waiting one."""
    user_joined = 'user joined'
    """Server tells the waiting member (the callee) about the joining one."""
    user_left = 'user left'
    """Server tells the remaining member its counterpart departed."""
    signal = 'signal'
    """Opaque handshake payload, `{target, signal}` outbound and
    `{caller, signal}` inbound."""


@dataclasses.dataclass
class Event:
    """A named control-plane event.

    Attributes:
        name: Event name. Usually one of [`EventName`][pairlink.events.EventName]
            but unknown names are preserved so that receivers can decide how
            to handle them.
        data: JSON-serializable payload or `None`.
    """

    name: str
    data: Any = None


class EventError(Exception):
    """Base exception type for event encoding errors."""

    pass


class EventDecodeError(EventError):
    """Exception raised when an event cannot be decoded."""

    pass


class EventEncodeError(EventError):
    """Exception raised when an event cannot be encoded."""

    pass


def _name(name: str | EventName) -> str:
    return name.value if isinstance(name, EventName) else name


def encode_event(name: str | EventName, data: Any = None) -> str:
    """Encode an event as a JSON string.

    Args:
        name: Event name.
        data: JSON-serializable payload.

    Raises:
        EventEncodeError: If the name is not a string or the payload cannot
            be JSON encoded.
    """
    if not isinstance(name, str):
        raise EventEncodeError(
            f'Event name must be a str. Got {type(name).__name__}.',
        )
    try:
        return json.dumps({'event': _name(name), 'data': data})
    except (TypeError, ValueError) as e:
        raise EventEncodeError(
            f'Failed to encode data of event "{_name(name)}": {e}',
        ) from e


def decode_event(message: str | bytes) -> Event:
    """Decode a JSON string into an [`Event`][pairlink.events.Event].

    Args:
        message: JSON string received on the websocket.

    Raises:
        EventDecodeError: If the message is not a text frame, is not valid
            JSON, or is not an object with a string `event` key.
    """
    if not isinstance(message, str):
        raise EventDecodeError('Got message as bytes but expected str.')

    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise EventDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise EventDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        name = data['event']
    except KeyError as e:
        raise EventDecodeError('Message does not contain an event key.') from e

    if not isinstance(name, str):
        raise EventDecodeError('Event name must be a string.')

    return Event(name=name, data=data.get('data'))
