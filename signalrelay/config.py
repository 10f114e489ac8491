"""Relay server configuration file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field

from signalrelay.utils.config import load


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of currently connected clients.
        current_client_limit: Max threshold for enumerating the
            detailed list of connected clients. If `None`, no detailed
            list will be logged.
    """

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        path: Request path clients open websocket connections on. All other
            paths are answered with the HTTP status surface.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server. Connections sending larger messages are
            closed. If `None`, message size is not limited.
        max_queued_frames: Maximum number of outbound frames waiting to be
            sent to one client. A client which falls further behind is
            disconnected. If `None`, the queue is not bounded.
        trust_forwarded_for: Report the first address of the
            `X-Forwarded-For` header as the client address. Only enable
            when the server is reached through a trusted reverse proxy.
        reap_interval: Seconds between scans of the registry for clients
            whose connection is no longer open.
        logging: Logging configuration.
    """

    host: str | None = '0.0.0.0'
    port: int = 3000
    path: str = '/peerjs'
    certfile: str | None = None
    keyfile: str | None = None
    max_message_bytes: int | None = 100 * 1024 * 1024
    max_queued_frames: int | None = 1024
    trust_forwarded_for: bool = False
    reap_interval: float = 60
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="relay.toml"
            port = 3000

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 32
            ```

            ```python
            from signalrelay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            ```

        Example:
            Serve with SSL on a custom path.
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 443
            path = "/signal"
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"
            reap_interval = 30.0
            ```

        Note:
            Omitted values will be set to their defaults (if they are an
            optional value with a default).
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
