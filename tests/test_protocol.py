"""
RetroChat - Wire protocol tests.
"""

import json

import pytest

from retrochat import protocol
from retrochat.crypto import derive_key, encrypt
from retrochat.errors import ErrorCode, ProtocolError
from retrochat.protocol import MessageType, NetworkMessage


@pytest.fixture
def payload():
    return encrypt("hello", derive_key("7xK2mQ"))


def test_chat_wire_shape(payload):
    frame = protocol.create_chat(payload, "NeonWave7", "m-1")
    wire = json.loads(frame.encode().decode("utf-8"))
    assert wire["type"] == "CHAT"
    assert wire["sender"] == "NeonWave7"
    assert wire["messageId"] == "m-1"
    assert wire["payload"]["iv"] == list(payload.iv)
    assert wire["payload"]["data"] == list(payload.data)


def test_control_frames_omit_empty_fields():
    wire = json.loads(protocol.create_typing("NeonWave7").encode())
    assert wire == {"type": "TYPING", "sender": "NeonWave7"}


def test_decode_chat(payload):
    raw = protocol.create_chat(payload, "NeonWave7", "m-1").encode()
    message = NetworkMessage.decode(raw)
    assert message.type == MessageType.CHAT
    assert message.payload == payload
    assert message.sender == "NeonWave7"
    assert message.message_id == "m-1"


def test_decode_read_receipt():
    raw = json.dumps({"type": "READ_RECEIPT", "messageId": "m-9", "sender": "Bob"}).encode()
    message = NetworkMessage.decode(raw)
    assert message.type == MessageType.READ_RECEIPT
    assert message.message_id == "m-9"


def test_decode_unknown_type():
    with pytest.raises(ProtocolError) as exc_info:
        NetworkMessage.decode(b'{"type": "SHOUT"}')
    assert exc_info.value.code == ErrorCode.E502_UNKNOWN_FRAME_TYPE


@pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b"\xff\xfe"])
def test_decode_malformed(raw):
    with pytest.raises(ProtocolError) as exc_info:
        NetworkMessage.decode(raw)
    assert exc_info.value.code == ErrorCode.E501_INVALID_FRAME


def test_decode_chat_without_payload():
    with pytest.raises(ProtocolError) as exc_info:
        NetworkMessage.decode(b'{"type": "CHAT", "sender": "Bob"}')
    assert exc_info.value.code == ErrorCode.E504_MISSING_FIELD


def test_decode_receipt_without_id():
    with pytest.raises(ProtocolError) as exc_info:
        NetworkMessage.decode(b'{"type": "READ_RECEIPT"}')
    assert exc_info.value.code == ErrorCode.E504_MISSING_FIELD


def test_decode_bad_payload():
    with pytest.raises(ProtocolError):
        NetworkMessage.decode(b'{"type": "CHAT", "payload": {"iv": [1]}}')


@pytest.mark.parametrize(
    "fields",
    [
        {"iv": 12, "data": 50000000},
        {"iv": "abc", "data": "def"},
        {"iv": [1, 2], "data": 3},
        {"iv": [1, 2], "data": [256]},
        {"iv": [1.5], "data": [1]},
    ],
)
def test_decode_rejects_non_byte_arrays(fields):
    raw = json.dumps({"type": "CHAT", "payload": fields, "sender": "Bob", "messageId": "m1"})
    with pytest.raises(ProtocolError) as exc_info:
        NetworkMessage.decode(raw.encode("utf-8"))
    assert exc_info.value.code == ErrorCode.E501_INVALID_FRAME


def test_encode_rejects_invalid_frame():
    with pytest.raises(ProtocolError):
        NetworkMessage(MessageType.SYSTEM, sender="Bob").encode()


def test_join_and_leave_frames():
    assert NetworkMessage.decode(b'{"type": "JOIN", "sender": "Bob"}').type == MessageType.JOIN
    assert NetworkMessage.decode(protocol.create_leave("Bob").encode()).type == MessageType.LEAVE
