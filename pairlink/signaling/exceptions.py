"""Exception types raised by the signaling server."""
from __future__ import annotations


class SignalingServerError(Exception):
    """Base exception type for exceptions raised by the signaling server."""

    pass


class BadRequestError(SignalingServerError):
    """A client sent an event with a malformed payload."""

    pass
