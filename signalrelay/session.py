"""Session handles for client connections to the relay server."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from typing import Union

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from signalrelay.exceptions import SessionClosedError
from signalrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SessionState:
    """Mutable state of a single client session.

    Attributes:
        bound_identifier: Identifier the session registered with or `None`
            if the session has not registered.
    """

    bound_identifier: str | None = None


@runtime_checkable
class Session(Protocol):
    """Handle to a live bidirectional connection with a client."""

    @property
    def address(self) -> str:
        """Origin address of the client."""
        ...

    @property
    def state(self) -> SessionState:
        """Per-session state owned by this session."""
        ...

    def is_open(self) -> bool:
        """Check if the connection can still be used to send data."""
        ...

    def send(self, data: str | bytes) -> None:
        """Send a text or binary frame without waiting on the transport.

        Raises:
            SessionClosedError: If the session is no longer open.
        """
        ...

    def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the connection once pending frames have been sent."""
        ...


@dataclasses.dataclass(frozen=True)
class _CloseRequest:
    code: int
    reason: str


_OutboxItem = Union[str, bytes, _CloseRequest]

OUTBOX_FULL_CLOSE_CODE = 1008
OUTBOX_FULL_CLOSE_REASON = 'Too many messages queued for delivery.'


def origin_address(
    websocket: ServerConnection,
    trust_forwarded_for: bool = False,
) -> str:
    """Get the origin address of a websocket connection.

    Args:
        websocket: Websocket connection with the client.
        trust_forwarded_for: Report the first address of the
            `X-Forwarded-For` request header instead of the peer address.
            Only enable when the relay runs behind a trusted reverse proxy
            because clients can set the header to any value.
    """
    if trust_forwarded_for and websocket.request is not None:
        forwarded = websocket.request.headers.get('X-Forwarded-For')
        if forwarded:
            return forwarded.split(',')[0].strip()

    address = websocket.remote_address
    if isinstance(address, tuple):
        return str(address[0])
    return str(address)


class WebSocketSession:
    """Session backed by a websocket server connection.

    Outbound frames are placed in a queue which is drained in order by a
    background writer task so a slow client never stalls the session that
    is sending to it.

    A client which stops reading lets frames pile up in the queue. Once
    `max_queued_frames` frames are waiting, the connection is closed with
    code 1008 and further sends raise
    [`SessionClosedError`][signalrelay.exceptions.SessionClosedError].

    Note:
        Must be created inside a running event loop.

    Args:
        websocket: Open websocket connection with the client.
        max_queued_frames: Maximum number of frames waiting to be sent. If
            `None`, the queue is not bounded.
        trust_forwarded_for: Use the `X-Forwarded-For` request header as
            the client address.
    """

    def __init__(
        self,
        websocket: ServerConnection,
        *,
        max_queued_frames: int | None = None,
        trust_forwarded_for: bool = False,
    ) -> None:
        self._websocket = websocket
        self._address = origin_address(websocket, trust_forwarded_for)
        self._state = SessionState()
        self._closing = False
        self._outbox: asyncio.Queue[_OutboxItem] = asyncio.Queue(
            0 if max_queued_frames is None else max_queued_frames,
        )
        self._closer: asyncio.Task[Any] | None = None
        self._writer = spawn_guarded_background_task(self._drain)
        self._writer.set_name(f'session-writer-{websocket.id}')

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(address={self.address}, '
            f'identifier={self.state.bound_identifier})'
        )

    @property
    def address(self) -> str:
        """Origin address of the client."""
        return self._address

    @property
    def state(self) -> SessionState:
        """Per-session state owned by this session."""
        return self._state

    @property
    def websocket(self) -> ServerConnection:
        """Underlying websocket connection."""
        return self._websocket

    @property
    def closing(self) -> bool:
        """If the relay server started closing the connection."""
        return self._closing

    def is_open(self) -> bool:
        """Check if the connection can still be used to send data."""
        return not self._closing and self._websocket.state is State.OPEN

    def send(self, data: str | bytes) -> None:
        """Queue a text or binary frame to be sent to the client.

        Args:
            data: Frame to send. Strings are sent as text frames and bytes
                as binary frames.

        Raises:
            SessionClosedError: If the session is no longer open.
        """
        if not self.is_open():
            raise SessionClosedError(
                f'Session with {self.address} is no longer open.',
            )
        try:
            self._outbox.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning(
                f'Closing connection with {self.address} because '
                f'{self._outbox.qsize()} messages are waiting to be sent',
            )
            self._abort(OUTBOX_FULL_CLOSE_CODE, OUTBOX_FULL_CLOSE_REASON)
            raise SessionClosedError(
                f'Session with {self.address} has too many queued messages.',
            ) from None

    def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the connection once queued frames have been sent.

        This method is a no-op if the session is already closing.
        """
        if self._closing:
            return
        self._closing = True
        try:
            self._outbox.put_nowait(_CloseRequest(code, reason))
        except asyncio.QueueFull:
            self._abort(code, reason)

    async def shutdown(self) -> None:
        """Stop the background writer task."""
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        if self._closer is not None:
            await asyncio.wait([self._closer])

    def _abort(self, code: int, reason: str) -> None:
        # Queued frames are discarded and the close skips the queue.
        self._closing = True
        self._writer.cancel()
        self._closer = spawn_guarded_background_task(
            self._websocket.close,
            code,
            reason,
        )

    async def _drain(self) -> None:
        while True:
            item = await self._outbox.get()
            try:
                if isinstance(item, _CloseRequest):
                    await self._websocket.close(item.code, item.reason)
                    return
                await self._websocket.send(item)
            except websockets.exceptions.ConnectionClosed:
                logger.error(
                    f'Connection with {self.address} closed while '
                    'attempting to send message',
                )
                return
