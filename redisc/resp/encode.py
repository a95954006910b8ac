"""Encoder for the redis serialization protocol (RESP)."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, BinaryIO

_CRLF = b"\r\n"
_PONG = b"+PONG\r\n"
_OK = b"+OK\r\n"
_TRUE = b":1\r\n"
_FALSE = b":0\r\n"
_NIL_BULK = b"$-1\r\n"
_NIL_ARRAY = b"*-1\r\n"


class InvalidValueError(ValueError):
    """Raised when a value has no RESP encoding."""

    def __init__(self, value: Any = None) -> None:
        super().__init__(f"resp: invalid value {value!r}")
        self.value = value


class Array(list):
    """A RESP array. A nil array is distinct from an empty one."""

    def __init__(self, items: Iterable[Any] = (), *, nil: bool = False) -> None:
        super().__init__(items)
        if nil and len(self):
            raise ValueError("a nil array cannot hold items")
        self.is_nil = nil

    @classmethod
    def nil(cls) -> "Array":
        """Return the nil array."""
        return cls(nil=True)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Array) and self.is_nil != other.is_nil:
            return False
        return list.__eq__(self, other)

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        return result if result is NotImplemented else not result

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self.is_nil:
            return "Array.nil()"
        return f"Array({list.__repr__(self)})"

    def __str__(self) -> str:
        return "".join(
            f"[{index:2d}] {value} ({type(value).__name__})\n"
            for index, value in enumerate(self)
        )


class SimpleString(str):
    """A RESP simple string; must not contain CR or LF."""


class BulkString(str):
    """A binary-safe RESP bulk string (the default for plain ``str``)."""


class Error(str):
    """A RESP error string; must not contain CR or LF."""


class Pong:
    """Sentinel encoded as the ``PONG`` simple string."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Pong)

    def __hash__(self) -> int:
        return hash(Pong)

    def __repr__(self) -> str:
        return "Pong()"


class OK:
    """Sentinel encoded as the ``OK`` simple string."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, OK)

    def __hash__(self) -> int:
        return hash(OK)

    def __repr__(self) -> str:
        return "OK()"


def _prefixed(prefix: bytes, payload: bytes) -> bytes:
    return prefix + payload + _CRLF


def _bulk(data: bytes) -> bytes:
    return b"$" + str(len(data)).encode("ascii") + _CRLF + data + _CRLF


def _encode(value: Any) -> bytes:
    if isinstance(value, OK):
        return _OK
    if isinstance(value, Pong):
        return _PONG
    if isinstance(value, bool):
        return _TRUE if value else _FALSE
    if isinstance(value, SimpleString):
        return _prefixed(b"+", value.encode("utf-8"))
    if isinstance(value, Error):
        return _prefixed(b"-", value.encode("utf-8"))
    if isinstance(value, int):
        if value == 0:
            return _FALSE
        if value == 1:
            return _TRUE
        return _prefixed(b":", str(value).encode("ascii"))
    if isinstance(value, str):
        return _bulk(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _bulk(bytes(value))
    if isinstance(value, Array) and value.is_nil:
        return _NIL_ARRAY
    if isinstance(value, (list, tuple)):
        header = _prefixed(b"*", str(len(value)).encode("ascii"))
        return header + b"".join(_encode(item) for item in value)
    if value is None:
        return _NIL_BULK
    raise InvalidValueError(value)


def encode_to_bytes(value: Any) -> bytes:
    """Return the RESP encoding of *value*."""
    return _encode(value)


def encode(writer: BinaryIO, value: Any) -> None:
    """Encode *value* and write the serialized data to *writer*."""
    writer.write(_encode(value))