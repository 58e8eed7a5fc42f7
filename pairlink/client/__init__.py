"""Client side of the pairing protocol."""
from __future__ import annotations

from pairlink.client.session import ConnectionSession
from pairlink.client.session import Role
from pairlink.client.session import SessionState
from pairlink.client.transport import SignalingTransport
