"""Signaling server which pairs two members per room.

The signaling server is a lightweight websocket server reachable by both
peers. It owns the [`RoomRegistry`][pairlink.signaling.registry.RoomRegistry],
tells members about each other as rooms fill, and forwards opaque handshake
payloads until the two peers are connected directly.
"""
from __future__ import annotations
