from __future__ import annotations

import json
from typing import Any

import pytest

from signalrelay.messages import ConnectionRequest
from signalrelay.messages import decode_message
from signalrelay.messages import DisconnectRequest
from signalrelay.messages import encode_message
from signalrelay.messages import FileChunk
from signalrelay.messages import FileInfo
from signalrelay.messages import InvalidMessageResponse
from signalrelay.messages import MessageDecodeError
from signalrelay.messages import MessageEncodeError
from signalrelay.messages import PeerConnectRequest
from signalrelay.messages import PeerErrorResponse
from signalrelay.messages import PingRequest
from signalrelay.messages import PongResponse
from signalrelay.messages import RegisterRequest
from signalrelay.messages import RegisterResponse
from signalrelay.messages import snake_to_camel
from signalrelay.messages import UnknownMessage


@pytest.mark.parametrize(
    ('name', 'result'),
    (
        ('client_id', 'clientId'),
        ('from_id', 'fromId'),
        ('target_id', 'targetId'),
        ('timestamp', 'timestamp'),
    ),
)
def test_snake_to_camel(name: str, result: str) -> None:
    assert snake_to_camel(name) == result


def test_decode_register_request() -> None:
    message = decode_message(
        json.dumps(
            {
                'type': 'CONNECT',
                'clientId': 'alice',
                'platform': 'web',
                'version': '1.2.0',
            },
        ),
    )
    assert message == RegisterRequest('alice', 'web', '1.2.0')


def test_decode_register_request_optional_fields() -> None:
    message = decode_message('{"type": "CONNECT", "clientId": "alice"}')
    assert isinstance(message, RegisterRequest)
    assert message.platform is None
    assert message.version is None


def test_decode_optional_field_converted_to_string() -> None:
    frame = '{"type": "CONNECT", "clientId": "alice", "version": 2}'
    message = decode_message(frame)
    assert isinstance(message, RegisterRequest)
    assert message.version == '2'


def test_decode_ignores_extra_fields() -> None:
    frame = '{"type": "PING", "extra": [1, 2, 3], "nested": {"a": 1}}'
    assert decode_message(frame) == PingRequest()


def test_decode_binary_frame() -> None:
    frame = b'{"type": "DISCONNECT", "clientId": "alice"}'
    assert decode_message(frame) == DisconnectRequest('alice')


def test_decode_type_is_case_sensitive() -> None:
    register = decode_message('{"type": "CONNECT", "clientId": "a"}')
    peer_connect = decode_message('{"type": "connect", "targetId": "a"}')
    assert isinstance(register, RegisterRequest)
    assert isinstance(peer_connect, PeerConnectRequest)


@pytest.mark.parametrize('type_name', ('file-info', 'file-chunk'))
def test_decode_file_transfer_keeps_raw_frame(type_name: str) -> None:
    frame = json.dumps(
        {'type': type_name, 'targetId': 'bob', 'data': [0, 1, 2]},
    )
    message = decode_message(frame)
    assert isinstance(message, (FileInfo, FileChunk))
    assert message.message_type.value == type_name
    assert message.target_id == 'bob'
    assert message.raw is frame


@pytest.mark.parametrize(
    'type_name',
    ('HELLO', 'ERROR', 'error', 'CONNECTED', 'connection-request', 'Ping'),
)
def test_decode_unhandled_type(type_name: str) -> None:
    message = decode_message(json.dumps({'type': type_name}))
    assert message == UnknownMessage(type_name)


@pytest.mark.parametrize(
    'frame',
    (
        'not json',
        b'\xff\xfe\x00',
        '[1, 2, 3]',
        '"CONNECT"',
        '{}',
        '{"type": 1}',
        '{"type": null}',
        # Known types missing a required field
        '{"type": "CONNECT"}',
        '{"type": "CONNECT", "clientId": 42}',
        '{"type": "DISCONNECT"}',
        '{"type": "connect"}',
        '{"type": "file-chunk", "data": "abc"}',
    ),
)
def test_decode_invalid_frame(frame: str | bytes) -> None:
    with pytest.raises(MessageDecodeError):
        decode_message(frame)


@pytest.mark.parametrize(
    ('message', 'expected'),
    (
        (
            RegisterResponse('alice'),
            {'type': 'CONNECTED', 'clientId': 'alice'},
        ),
        (PongResponse(1234), {'type': 'PONG', 'timestamp': 1234}),
        (
            InvalidMessageResponse(),
            {'type': 'ERROR', 'message': 'Invalid message format'},
        ),
        (
            ConnectionRequest('alice'),
            {'type': 'connection-request', 'fromId': 'alice'},
        ),
        (
            PeerErrorResponse('Target peer not found'),
            {'type': 'error', 'message': 'Target peer not found'},
        ),
    ),
)
def test_encode_message(message: Any, expected: dict[str, Any]) -> None:
    assert json.loads(encode_message(message)) == expected


@pytest.mark.parametrize(
    'message',
    (
        object(),
        RegisterRequest('alice'),
        FileChunk('bob', raw='{}'),
        UnknownMessage('HELLO'),
    ),
)
def test_encode_inbound_message_error(message: Any) -> None:
    with pytest.raises(MessageEncodeError):
        encode_message(message)
