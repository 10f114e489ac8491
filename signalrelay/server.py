"""Relay server implementation for brokering peer-to-peer connections.

The relay server (or signaling server) is a lightweight server accessible by
all peers (e.g., has a public IP address). Clients register under a self
chosen identifier, discover each other by identifier, and exchange
connection requests and file transfer messages through the relay. The relay
never takes part in the peer-to-peer exchange itself.
"""
from __future__ import annotations

import http
import json
import logging
import urllib.parse
from typing import Any

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request
from websockets.http11 import Response

from signalrelay.registry import SessionRegistry
from signalrelay.router import MessageRouter
from signalrelay.session import WebSocketSession

logger = logging.getLogger(__name__)


def json_response(
    connection: ServerConnection,
    status: http.HTTPStatus,
    body: Any,
) -> Response:
    """Create an HTTP response with a JSON body."""
    response = connection.respond(status, json.dumps(body))
    del response.headers['Content-Type']
    response.headers['Content-Type'] = 'application/json'
    return response


class RelayServer:
    """Signaling relay server.

    The relay server is built on websockets and designed to be served
    using [`serve()`][signalrelay.run.serve]. Websocket connections are
    accepted on `path` and every other request path is answered by the
    HTTP status surface.

    - `GET /` returns the server status and the number of live connections.
    - `GET /status` returns a summary of every registered client.

    Args:
        registry: Registry of client identifiers. A new, empty registry is
            created if `None`.
        path: Request path clients open websocket connections on.
        max_queued_frames: Maximum number of outbound frames waiting to be
            sent to one client before it is disconnected.
        trust_forwarded_for: Use the `X-Forwarded-For` request header as
            the client address.
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        *,
        path: str = '/peerjs',
        max_queued_frames: int | None = 1024,
        trust_forwarded_for: bool = False,
    ) -> None:
        self._max_queued_frames = max_queued_frames
        self._trust_forwarded_for = trust_forwarded_for
        self._registry = SessionRegistry() if registry is None else registry
        self._router = MessageRouter(self._registry)
        self._path = path
        self._sessions: set[WebSocketSession] = set()

    @property
    def registry(self) -> SessionRegistry:
        """Registry of client identifiers."""
        return self._registry

    @property
    def router(self) -> MessageRouter:
        """Router of inbound client messages."""
        return self._router

    @property
    def path(self) -> str:
        """Request path of the websocket endpoint."""
        return self._path

    @property
    def sessions(self) -> list[WebSocketSession]:
        """Currently connected sessions, registered or not."""
        return list(self._sessions)

    def status(self) -> dict[str, Any]:
        """Get the server status reported on `GET /`."""
        return {
            'status': 'online',
            'protocol': 'WebSocket',
            'path': self._path,
            'clients': len(self._sessions),
            'registered': self._registry.size(),
        }

    def process_request(
        self,
        connection: ServerConnection,
        request: Request,
    ) -> Response | None:
        """Answer plain HTTP requests before the websocket handshake.

        Returns:
            `None` for requests on the websocket path so the handshake \
            continues. Otherwise, the HTTP response to send.
        """
        path = urllib.parse.urlsplit(request.path).path
        if path == self._path:
            return None
        elif path == '/':
            return json_response(connection, http.HTTPStatus.OK, self.status())
        elif path == '/status':
            return json_response(
                connection,
                http.HTTPStatus.OK,
                {'clients': self._registry.snapshot()},
            )
        else:
            return connection.respond(
                http.HTTPStatus.NOT_FOUND,
                f'Invalid path. Use {self._path} for WebSocket connections.\n',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Frames are routed in the order they arrive. When the connection
        closes, normally or with an error, the identifier bound to the
        session is released. Unexpected errors raised while routing a frame
        are logged and the connection is kept open.

        Args:
            websocket: Websocket connection with the client.
        """
        session = WebSocketSession(
            websocket,
            max_queued_frames=self._max_queued_frames,
            trust_forwarded_for=self._trust_forwarded_for,
        )
        self._sessions.add(session)
        logger.info(f'Client connected from {session.address}')

        try:
            while True:
                try:
                    frame = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    logger.info(f'Client at {session.address} disconnected')
                    break
                except websockets.exceptions.ConnectionClosedError as e:
                    if not session.closing:
                        logger.warning(
                            f'Connection with client at {session.address} '
                            f'closed unexpectedly: {e}',
                        )
                    else:
                        logger.info(
                            f'Connection with client at {session.address} '
                            f'closed by the relay server: {e}',
                        )
                    break

                try:
                    self._router.route(session, frame)
                except Exception:
                    logger.exception(
                        'Unexpected error handling message from '
                        f'{session.address}',
                    )
        finally:
            self._router.on_close(session)
            self._sessions.discard(session)
            await session.shutdown()
