"""Message types exchanged between clients and the relay server.

Every message on the wire is a JSON object with a required `type` key.
The remaining keys use camel case (e.g., `clientId`) and map onto the
snake case fields of the dataclasses defined here. Unknown extra keys are
ignored when decoding.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar


class MessageType(enum.Enum):
    """Types of messages supported.

    Note:
        The discriminator is case sensitive. `CONNECT` registers a client
        with the relay while `connect` asks the relay to introduce the
        sender to another registered peer.
    """

    register = 'CONNECT'
    """Client registration request."""
    registered = 'CONNECTED'
    """Registration acknowledgement."""
    ping = 'PING'
    """Application level heartbeat."""
    pong = 'PONG'
    """Heartbeat reply."""
    disconnect = 'DISCONNECT'
    """Client unregistration request."""
    invalid = 'ERROR'
    """Reply to a frame that could not be parsed."""
    peer_connect = 'connect'
    """Peer connection request sent by a client to the relay."""
    connection_request = 'connection-request'
    """Peer connection request forwarded by the relay to the target."""
    peer_error = 'error'
    """Reply to a peer connection request that could not be forwarded."""
    file_info = 'file-info'
    """File metadata forwarded verbatim to the target."""
    file_chunk = 'file-chunk'
    """File data forwarded verbatim to the target."""


@dataclasses.dataclass
class Message:
    """Base message."""

    message_type: ClassVar[MessageType]


@dataclasses.dataclass
class RegisterRequest(Message):
    """Register with the relay server under a client chosen identifier.

    Attributes:
        client_id: Identifier the client wants to be reachable under.
        platform: Optional platform declared by the client.
        version: Optional client version declared by the client.
    """

    client_id: str
    platform: str | None = None
    version: str | None = None
    message_type = MessageType.register


@dataclasses.dataclass
class RegisterResponse(Message):
    """Acknowledge a successful registration."""

    client_id: str
    message_type = MessageType.registered


@dataclasses.dataclass
class PingRequest(Message):
    """Heartbeat sent by a client."""

    message_type = MessageType.ping


@dataclasses.dataclass
class PongResponse(Message):
    """Heartbeat reply.

    Attributes:
        timestamp: Server time in milliseconds since the epoch.
    """

    timestamp: int
    message_type = MessageType.pong


@dataclasses.dataclass
class DisconnectRequest(Message):
    """Remove the registration of `client_id`."""

    client_id: str
    message_type = MessageType.disconnect


@dataclasses.dataclass
class InvalidMessageResponse(Message):
    """Reply sent when an inbound frame cannot be decoded."""

    message: str = 'Invalid message format'
    message_type = MessageType.invalid


@dataclasses.dataclass
class PeerConnectRequest(Message):
    """Ask the relay to introduce the sender to `target_id`."""

    target_id: str
    message_type = MessageType.peer_connect


@dataclasses.dataclass
class ConnectionRequest(Message):
    """Introduction forwarded to the target of a peer connection request.

    Attributes:
        from_id: Registered identifier of the requesting client.
    """

    from_id: str
    message_type = MessageType.connection_request


@dataclasses.dataclass
class PeerErrorResponse(Message):
    """Reply sent when a peer connection request cannot be forwarded."""

    message: str
    message_type = MessageType.peer_error


@dataclasses.dataclass
class FileTransfer(Message):
    """File transfer message relayed to another client.

    Only the routing envelope is parsed. The relay forwards the original
    frame so the payload reaches the target unmodified.

    Attributes:
        target_id: Identifier of the client to forward the frame to.
        raw: Original frame as received from the sender.
    """

    target_id: str
    raw: str | bytes = dataclasses.field(default=b'', repr=False)


@dataclasses.dataclass
class FileInfo(FileTransfer):
    """File metadata announcement."""

    message_type = MessageType.file_info


@dataclasses.dataclass
class FileChunk(FileTransfer):
    """Chunk of file data."""

    message_type = MessageType.file_chunk


@dataclasses.dataclass
class UnknownMessage(Message):
    """Well-formed message with a type the relay does not handle."""

    type_name: str


_INBOUND_TYPES: dict[MessageType, type[Message]] = {
    MessageType.register: RegisterRequest,
    MessageType.ping: PingRequest,
    MessageType.disconnect: DisconnectRequest,
    MessageType.peer_connect: PeerConnectRequest,
    MessageType.file_info: FileInfo,
    MessageType.file_chunk: FileChunk,
}

_OUTBOUND_TYPES = (
    RegisterResponse,
    PongResponse,
    InvalidMessageResponse,
    ConnectionRequest,
    PeerErrorResponse,
)


class MessageError(Exception):
    """Base exception type for relay messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when an message cannot be encoded."""

    pass


def snake_to_camel(name: str) -> str:
    """Convert a snake case field name to its camel case wire key.

    Example:
        ```python
        >>> snake_to_camel('client_id')
        'clientId'
        ```
    """
    first, *rest = name.split('_')
    return first + ''.join(part.capitalize() for part in rest)


def decode_message(frame: str | bytes) -> Message:  # noqa: C901
    """Decode a websocket frame into the correct message type.

    Binary frames are decoded as UTF-8 text before parsing.

    Args:
        frame: Text or binary frame to decode.

    Returns:
        Parsed message. Messages with a type the relay does not handle \
        are returned as an
        [`UnknownMessage`][signalrelay.messages.UnknownMessage].

    Raises:
        MessageDecodeError: If the frame is not a JSON object with a string
            `type` key or if a required field is missing or not a string.
    """
    if isinstance(frame, bytes):
        try:
            text = frame.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MessageDecodeError('Frame is not valid UTF-8.') from e
    else:
        text = frame

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MessageDecodeError('Failed to load frame as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    type_name = data.get('type')
    if not isinstance(type_name, str):
        raise MessageDecodeError('Message does not contain a string type.')

    try:
        message_cls = _INBOUND_TYPES[MessageType(type_name)]
    except (KeyError, ValueError):
        return UnknownMessage(type_name)

    kwargs: dict[str, str | bytes] = {}
    for field in dataclasses.fields(message_cls):
        if field.name == 'raw':
            continue
        key = snake_to_camel(field.name)
        value = data.get(key)
        if field.default is dataclasses.MISSING:
            if not isinstance(value, str):
                raise MessageDecodeError(
                    f'{type_name} message requires a string {key} field.',
                )
            kwargs[field.name] = value
        elif value is not None:
            kwargs[field.name] = (
                value if isinstance(value, str) else str(value)
            )

    if issubclass(message_cls, FileTransfer):
        kwargs['raw'] = frame

    return message_cls(**kwargs)


def encode_message(message: Message) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode. Only messages sent by the relay
            server can be encoded.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, _OUTBOUND_TYPES):
        raise MessageEncodeError(
            f'Message of type {type(message).__name__} is not sent by the '
            'relay server.',
        )

    data: dict[str, Any] = {'type': message.message_type.value}
    for key, value in dataclasses.asdict(message).items():
        data[snake_to_camel(key)] = value

    try:
        return json.dumps(data)
    except TypeError as e:
        raise MessageEncodeError('Error encoding message.') from e
