"""Routing of inbound client messages."""
from __future__ import annotations

import logging
import time

from signalrelay.exceptions import TransportError
from signalrelay.exceptions import UnknownTargetError
from signalrelay.exceptions import UnregisteredClientError
from signalrelay.messages import ConnectionRequest
from signalrelay.messages import decode_message
from signalrelay.messages import DisconnectRequest
from signalrelay.messages import encode_message
from signalrelay.messages import FileTransfer
from signalrelay.messages import InvalidMessageResponse
from signalrelay.messages import Message
from signalrelay.messages import MessageDecodeError
from signalrelay.messages import MessageEncodeError
from signalrelay.messages import PeerConnectRequest
from signalrelay.messages import PeerErrorResponse
from signalrelay.messages import PingRequest
from signalrelay.messages import PongResponse
from signalrelay.messages import RegisterRequest
from signalrelay.messages import RegisterResponse
from signalrelay.messages import UnknownMessage
from signalrelay.registry import RegistryEntry
from signalrelay.registry import SessionRegistry
from signalrelay.session import Session

logger = logging.getLogger(__name__)

SUPERSEDED_CLOSE_CODE = 4004
SUPERSEDED_CLOSE_REASON = 'Superseded by a newer registration.'
TARGET_NOT_FOUND = 'Target peer not found'
NOT_REGISTERED = 'Client is not registered'


def _current_time_ms() -> int:
    return int(time.time() * 1000)


class MessageRouter:
    """Route messages between client sessions.

    The router classifies each inbound frame by its `type` and either
    mutates the registry, replies to the sender, or forwards a message to
    the session registered under the target identifier. Sending never
    waits on the transport so a slow target cannot stall the sender.

    Args:
        registry: Registry of client identifiers shared with the reaper.
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SessionRegistry:
        """Registry of client identifiers."""
        return self._registry

    def send(self, session: Session, message: Message | str | bytes) -> bool:
        """Send a message on a session.

        Failures are logged and never raised because delivery is best
        effort. The sending session learns about a broken target through
        the target's own close notification.

        Args:
            session: Session to send on.
            message: Message to encode or raw frame to send as is.

        Returns:
            If the frame was handed to the transport.
        """
        if isinstance(message, Message):
            try:
                data: str | bytes = encode_message(message)
            except MessageEncodeError as e:
                logger.error(f'Failed to encode message: {e}')
                return False
        else:
            data = message

        try:
            session.send(data)
        except TransportError as e:
            logger.warning(
                f'Failed to send message to {session.address}: '
                f'{e.__class__.__name__}: {e}',
            )
            return False
        return True

    def route(self, session: Session, frame: str | bytes) -> None:
        """Handle a raw inbound frame from a session.

        Frames which cannot be parsed are answered with an `ERROR` message
        and discarded. The session is left open.

        Args:
            session: Session the frame was received on.
            frame: Raw text or binary websocket frame.
        """
        try:
            message = decode_message(frame)
        except MessageDecodeError as e:
            logger.warning(
                f'Invalid message received from {session.address}: {e}',
            )
            self.send(session, InvalidMessageResponse())
            return

        if isinstance(message, RegisterRequest):
            self.register(session, message)
        elif isinstance(message, PingRequest):
            self.send(session, PongResponse(timestamp=_current_time_ms()))
        elif isinstance(message, DisconnectRequest):
            self.disconnect(session, message)
        elif isinstance(message, PeerConnectRequest):
            try:
                self.connect_peer(session, message)
            except UnregisteredClientError as e:
                logger.warning(
                    f'Rejected connection request from {session.address}. '
                    f'{e}',
                )
                self.send(session, PeerErrorResponse(NOT_REGISTERED))
            except UnknownTargetError as e:
                logger.warning(
                    f'Rejected connection request from {session.address}. '
                    f'{e}',
                )
                self.send(session, PeerErrorResponse(TARGET_NOT_FOUND))
        elif isinstance(message, FileTransfer):
            try:
                self.forward_file(session, message)
            except (UnregisteredClientError, UnknownTargetError) as e:
                logger.debug(f'Dropped {message.message_type.value}: {e}')
        elif isinstance(message, UnknownMessage):
            logger.info(
                f'Ignoring message of unknown type "{message.type_name}" '
                f'from {session.address}',
            )
        else:
            raise AssertionError('Unreachable.')

    def register(self, session: Session, request: RegisterRequest) -> None:
        """Register the session under the requested identifier.

        A previous registration of the identifier by a different session is
        replaced and that session is closed. If this session was already
        registered under another identifier, that identifier is released.

        Args:
            session: Session requesting registration.
            request: Registration request message.
        """
        previous_identifier = session.state.bound_identifier
        if (
            previous_identifier is not None
            and previous_identifier != request.client_id
        ):
            self._registry.unregister(previous_identifier, session)
            logger.info(
                f'Client {session.address} released identifier '
                f'{previous_identifier} to register as {request.client_id}',
            )

        replaced = self._registry.register(
            request.client_id,
            session,
            origin_address=session.address,
            platform=request.platform,
            version=request.version,
        )
        session.state.bound_identifier = request.client_id

        if replaced is not None and replaced.session is not session:
            logger.info(
                f'Previously registered client {request.client_id} '
                'reregistered on a new connection so the old connection '
                'will be closed',
            )
            replaced.session.close(
                SUPERSEDED_CLOSE_CODE,
                SUPERSEDED_CLOSE_REASON,
            )

        logger.info(
            f'Registered client {request.client_id} from {session.address}',
        )
        self.send(session, RegisterResponse(client_id=request.client_id))

    def disconnect(self, session: Session, request: DisconnectRequest) -> None:
        """Remove the registration of the requested identifier."""
        removed = self._registry.unregister(request.client_id)
        if session.state.bound_identifier == request.client_id:
            session.state.bound_identifier = None
        if removed:
            logger.info(
                f'Unregistered client {request.client_id} on request from '
                f'{session.address}',
            )

    def connect_peer(
        self,
        session: Session,
        request: PeerConnectRequest,
    ) -> None:
        """Forward a peer connection request to the target client.

        Args:
            session: Session making the request.
            request: Peer connection request message.

        Raises:
            UnregisteredClientError: If the sender has not registered.
            UnknownTargetError: If the target identifier is not registered.
        """
        source = self._source_identifier(session)
        target = self._target(request.target_id)
        logger.info(
            f'Transmitting connection request from {source} to '
            f'{target.identifier}',
        )
        self.send(target.session, ConnectionRequest(from_id=source))

    def forward_file(self, session: Session, message: FileTransfer) -> None:
        """Forward a file transfer frame unmodified to the target client.

        Args:
            session: Session the frame was received on.
            message: Decoded routing envelope of the frame.

        Raises:
            UnregisteredClientError: If the sender has not registered.
            UnknownTargetError: If the target identifier is not registered.
        """
        source = self._source_identifier(session)
        target = self._target(message.target_id)
        logger.debug(
            f'Forwarding {message.message_type.value} from {source} to '
            f'{target.identifier}',
        )
        self.send(target.session, message.raw)

    def on_close(self, session: Session) -> None:
        """Release the identifier bound to a closed session.

        Only the entry still bound to this session is removed so a session
        that was superseded by a newer registration does not evict it.
        """
        identifier = session.state.bound_identifier
        if identifier is None:
            return
        session.state.bound_identifier = None
        if self._registry.unregister(identifier, session):
            logger.info(
                f'Unregistered client {identifier} ({session.address}) '
                'after connection closed',
            )

    def _source_identifier(self, session: Session) -> str:
        identifier = session.state.bound_identifier
        if identifier is None:
            raise UnregisteredClientError(
                'Client has not registered with the relay server.',
            )
        return identifier

    def _target(self, target_id: str) -> RegistryEntry:
        target = self._registry.lookup(target_id)
        if target is None:
            raise UnknownTargetError(
                f'Peer {target_id} is not registered with the relay server.',
            )
        return target
