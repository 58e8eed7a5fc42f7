"""Exception types shared by pairlink clients."""
from __future__ import annotations


class PairlinkError(Exception):
    """Base exception type for pairlink errors."""

    pass


class RoomFullError(PairlinkError):
    """The requested room already holds two members."""

    pass


class SignalApplyError(PairlinkError):
    """A signal payload could not be applied to the peer connection."""

    pass


class PeerConnectionError(PairlinkError):
    """Error negotiating or maintaining the peer connection."""

    pass


class TransportDisconnectedError(PairlinkError):
    """The connection to the signaling server was lost."""

    pass
