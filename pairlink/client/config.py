"""Chat client configuration file parsing."""
from __future__ import annotations

import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from pairlink.client.session import DEFAULT_RECONNECT_DELAY
from pairlink.utils.config import load_file


class ClientConfig(BaseModel):
    """Client configuration.

    Attributes:
        address: Address of the signaling server. Should start with `ws://`
            or `wss://`.
        timeout: Seconds to wait on opening the signaling server connection.
        verify_certificate: Verify the signaling server's SSL certificate
            when connecting to a `wss://` address.
        reconnect_delay: Seconds to wait before renegotiating a peer
            connection which closed while the remote member is still present.
        ice_servers: STUN/TURN server URLs used to discover candidates.
    """

    model_config = ConfigDict(extra='forbid')

    address: str = 'ws://localhost:8000'
    timeout: float = 10
    verify_certificate: bool = True
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    ice_servers: list[str] = Field(
        default_factory=lambda: ['stun:stun.l.google.com:19302'],
    )

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="client.toml"
            address = "wss://signaling.example.com"
            reconnect_delay = 1.0
            ice_servers = ["stun:stun.l.google.com:19302"]
            ```
        """
        return load_file(cls, filepath)
