"""
pb_wire.py - Protobuf wire format primitives

Low-level helpers shared by the container codec (config_schema.py) and the
row codecs (field_types.py).

Wire format:
    Each field is a tag followed by a payload.
    Tag: varint of (field_number << 3) | wire_type

    Wire types:
        0 VARINT  - base-128 varint, little-endian groups of 7 bits
        1 I64     - 8 bytes little-endian
        2 LEN     - varint length + raw bytes
        5 I32     - 4 bytes little-endian

    Negative int32/int64 values are written as 10-byte two's complement
    varints; sint32/sint64 use zigzag encoding instead.
"""

import struct
from typing import Iterator, Tuple, Union

from config_errors import WireFormatError


WIRE_VARINT = 0
WIRE_I64 = 1
WIRE_LEN = 2
WIRE_I32 = 5

WIRE_TYPE_NAMES = {
    WIRE_VARINT: 'varint',
    WIRE_I64: 'i64',
    WIRE_LEN: 'len',
    WIRE_I32: 'i32',
}

MAX_FIELD_NUMBER = (1 << 29) - 1
MAX_VARINT_BYTES = 10

_UINT64_MASK = (1 << 64) - 1

Payload = Union[int, bytes]


def encode_varint(value: int) -> bytes:
    """Encode integer as varint (negative values as 64-bit two's complement)."""
    if value < 0:
        value &= _UINT64_MASK
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(buf: bytes, pos: int) -> Tuple[int, int]:
    """Decode varint at pos. Returns (value, new_pos)."""
    result = 0
    shift = 0
    start = pos
    while True:
        if pos >= len(buf):
            raise WireFormatError(f"Truncated varint at pos {start}")
        if pos - start >= MAX_VARINT_BYTES:
            raise WireFormatError(f"Varint too long at pos {start}")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not (byte & 0x80):
            break
        shift += 7
    return result & _UINT64_MASK, pos


def to_signed(value: int, bits: int) -> int:
    """Reinterpret an unsigned integer as two's complement of `bits` width."""
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def encode_zigzag(value: int) -> int:
    return (value << 1) ^ (value >> 63)


def decode_zigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def encode_tag(field_number: int, wire_type: int) -> bytes:
    if not 1 <= field_number <= MAX_FIELD_NUMBER:
        raise WireFormatError(f"Field number out of range: {field_number}")
    return encode_varint((field_number << 3) | wire_type)


def encode_fixed32(value: int) -> bytes:
    return struct.pack('<I', value & 0xFFFFFFFF)


def encode_fixed64(value: int) -> bytes:
    return struct.pack('<Q', value & _UINT64_MASK)


def encode_field(field_number: int, wire_type: int, payload: Payload) -> bytes:
    """Encode one complete field (tag + payload)."""
    tag = encode_tag(field_number, wire_type)
    if wire_type == WIRE_VARINT:
        return tag + encode_varint(payload)
    if wire_type == WIRE_LEN:
        return tag + encode_varint(len(payload)) + bytes(payload)
    if wire_type == WIRE_I64:
        if isinstance(payload, int):
            payload = encode_fixed64(payload)
        if len(payload) != 8:
            raise WireFormatError(f"I64 payload must be 8 bytes, got {len(payload)}")
        return tag + payload
    if wire_type == WIRE_I32:
        if isinstance(payload, int):
            payload = encode_fixed32(payload)
        if len(payload) != 4:
            raise WireFormatError(f"I32 payload must be 4 bytes, got {len(payload)}")
        return tag + payload
    raise WireFormatError(f"Unsupported wire type: {wire_type}")


def encode_packed(field_number: int, wire_type: int, payloads) -> bytes:
    """Encode repeated scalar payloads as one packed LEN field."""
    body = bytearray()
    for payload in payloads:
        if wire_type == WIRE_VARINT:
            body.extend(encode_varint(payload))
        else:
            body.extend(payload)
    return encode_field(field_number, WIRE_LEN, bytes(body))


def encode_string(field_number: int, value: str) -> bytes:
    return encode_field(field_number, WIRE_LEN, value.encode('utf-8'))


def read_payload(buf: bytes, pos: int, wire_type: int) -> Tuple[Payload, int]:
    """Read the payload of one field. Returns (payload, new_pos).

    VARINT payloads are returned as int, everything else as bytes.
    """
    if wire_type == WIRE_VARINT:
        return decode_varint(buf, pos)
    if wire_type == WIRE_LEN:
        length, pos = decode_varint(buf, pos)
        if pos + length > len(buf):
            raise WireFormatError(
                f"Length-delimited field overruns buffer: need {length} bytes at pos {pos}")
        return bytes(buf[pos:pos + length]), pos + length
    if wire_type in (WIRE_I64, WIRE_I32):
        size = 8 if wire_type == WIRE_I64 else 4
        if pos + size > len(buf):
            raise WireFormatError(f"Buffer too short: need {size} bytes at pos {pos}")
        return bytes(buf[pos:pos + size]), pos + size
    raise WireFormatError(f"Unsupported wire type {wire_type} at pos {pos}")


def iter_fields(buf: bytes) -> Iterator[Tuple[int, int, Payload]]:
    """Walk a message buffer, yielding (field_number, wire_type, payload)."""
    pos = 0
    while pos < len(buf):
        key, pos = decode_varint(buf, pos)
        field_number = key >> 3
        wire_type = key & 0x07
        if field_number == 0:
            raise WireFormatError(f"Invalid field number 0 at pos {pos}")
        payload, pos = read_payload(buf, pos, wire_type)
        yield field_number, wire_type, payload


def iter_packed(buf: bytes, wire_type: int) -> Iterator[Payload]:
    """Walk the elements of a packed repeated field."""
    pos = 0
    while pos < len(buf):
        value, pos = read_payload(buf, pos, wire_type)
        yield value


def expect_wire_type(field_number: int, wire_type: int, expected: int,
                     message: str = 'message') -> None:
    if wire_type != expected:
        raise WireFormatError(
            f"{message} field {field_number}: expected wire type "
            f"{WIRE_TYPE_NAMES.get(expected, expected)}, got "
            f"{WIRE_TYPE_NAMES.get(wire_type, wire_type)}")


def decode_utf8(payload: bytes, what: str = 'string') -> str:
    try:
        return payload.decode('utf-8')
    except UnicodeDecodeError as e:
        raise WireFormatError(f"Invalid UTF-8 in {what}: {e}") from e
