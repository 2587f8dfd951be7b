"""Binary encoding primitives of the WebAssembly format."""

from __future__ import annotations

from enum import IntEnum
from typing import Iterable

MAGIC = b"\x00asm"
VERSION = b"\x01\x00\x00\x00"


class ValType(IntEnum):
    I32 = 0x7F
    I64 = 0x7E

    def __str__(self) -> str:
        return self.name.lower()


class SectionId(IntEnum):
    CUSTOM = 0
    TYPE = 1
    IMPORT = 2
    FUNCTION = 3
    TABLE = 4
    MEMORY = 5
    GLOBAL = 6
    EXPORT = 7
    START = 8
    ELEMENT = 9
    CODE = 10
    DATA = 11
    DATA_COUNT = 12


class ExternKind(IntEnum):
    FUNC = 0x00
    TABLE = 0x01
    MEMORY = 0x02
    GLOBAL = 0x03


FUNC_TYPE_TAG = 0x60
EMPTY_BLOCK = 0x40


def uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"uleb128 of negative value {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def sleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        done = (value == 0 and not byte & 0x40) or (value == -1 and byte & 0x40)
        out.append(byte if done else byte | 0x80)
        if done:
            return bytes(out)


def decode_uleb128(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return result, pos


def decode_sleb128(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            if byte & 0x40:
                result -= 1 << shift
            return result, pos


def to_signed(value: int, bits: int) -> int:
    """Reinterpret an unsigned ``bits``-wide value as two's complement."""
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def name(text: str) -> bytes:
    raw = text.encode("utf-8")
    return uleb128(len(raw)) + raw


def vector(items: Iterable[bytes]) -> bytes:
    items = list(items)
    return uleb128(len(items)) + b"".join(items)


def section(section_id: int, payload: bytes) -> bytes:
    return bytes([section_id]) + uleb128(len(payload)) + payload


def func_type(params: Iterable[ValType], results: Iterable[ValType]) -> bytes:
    return (bytes([FUNC_TYPE_TAG])
            + vector(bytes([p]) for p in params)
            + vector(bytes([r]) for r in results))
