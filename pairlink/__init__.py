"""Two-party room pairing and WebRTC signaling.

This package provides two halves of a peer pairing system:

* [`pairlink.signaling`][pairlink.signaling] implements the signaling server
  which admits at most two members per room, tells each member about the
  other, and relays opaque handshake payloads between them.
* [`pairlink.client`][pairlink.client] implements the client side: a
  websocket transport to the signaling server and the
  [`ConnectionSession`][pairlink.client.session.ConnectionSession] state
  machine that drives a direct peer connection built with
  [aiortc](https://aiortc.readthedocs.io/){target=_blank}.
"""
from __future__ import annotations

__version__ = '0.1.0'
