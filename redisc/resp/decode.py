"""Decoder for the redis serialization protocol (RESP)."""

from __future__ import annotations

from typing import Any, BinaryIO

from .encode import Array


class DecodeError(ValueError):
    """Base class of the errors raised while decoding RESP data."""


class InvalidPrefixError(DecodeError):
    """The data starts with an unrecognized type prefix."""

    def __init__(self) -> None:
        super().__init__("resp: invalid prefix")


class MissingCRLFError(DecodeError):
    """A CRLF terminator is missing."""

    def __init__(self) -> None:
        super().__init__("resp: missing CRLF")


class InvalidIntegerError(DecodeError):
    """An invalid character was found while parsing an integer."""

    def __init__(self) -> None:
        super().__init__("resp: invalid integer character")


class InvalidBulkStringError(DecodeError):
    """The bulk string data cannot be decoded."""

    def __init__(self) -> None:
        super().__init__("resp: invalid bulk string")


class InvalidArrayError(DecodeError):
    """The array data cannot be decoded."""

    def __init__(self) -> None:
        super().__init__("resp: invalid array")


class NotAnArrayError(DecodeError):
    """A request was expected but the value is not an array."""

    def __init__(self) -> None:
        super().__init__("resp: expected an array type")


class InvalidRequestError(DecodeError):
    """A request must be a non-empty array of bulk strings."""

    def __init__(self) -> None:
        super().__init__(
            "resp: invalid request, must be an array of bulk strings "
            "with at least one element"
        )


def _read_byte(reader: BinaryIO) -> int:
    data = reader.read(1)
    if not data:
        raise EOFError("resp: unexpected end of data")
    return data[0]


def _read_until_cr(reader: BinaryIO) -> bytes:
    chunk = bytearray()
    while True:
        byte = _read_byte(reader)
        if byte == 0x0D:
            return bytes(chunk)
        chunk.append(byte)


def _text(data: bytes) -> str:
    return data.decode("utf-8", "surrogateescape")


def _decode_simple_string(reader: BinaryIO) -> str:
    data = _read_until_cr(reader)
    _read_byte(reader)  # presumed "\n"
    return _text(data)


def _decode_integer(reader: BinaryIO) -> int:
    value = 0
    sign = 1
    count = 0
    saw_cr = False
    while True:
        byte = _read_byte(reader)
        count += 1
        if byte == 0x0D:
            saw_cr = True
            break
        if byte == 0x0A:
            break
        if 0x30 <= byte <= 0x39:
            value = value * 10 + (byte - 0x30)
        elif byte == 0x2D and count == 1:
            sign = -1
        else:
            raise InvalidIntegerError()
    if not saw_cr:
        raise MissingCRLFError()
    _read_byte(reader)  # presumed "\n"
    return sign * value


def _decode_bulk_string(reader: BinaryIO) -> str | None:
    length = _decode_integer(reader)
    if length == -1:
        return None
    if length < -1:
        raise InvalidBulkStringError()
    need = length + 2
    buf = bytearray()
    while len(buf) < need:
        chunk = reader.read(need - len(buf))
        if not chunk:
            raise EOFError("resp: unexpected end of data")
        buf.extend(chunk)
    return _text(bytes(buf[:length]))


def _decode_array(reader: BinaryIO) -> Array:
    count = _decode_integer(reader)
    if count == -1:
        return Array.nil()
    if count < 0:
        raise InvalidArrayError()
    return Array(_decode_value(reader) for _ in range(count))


def _decode_value(reader: BinaryIO) -> Any:
    prefix = _read_byte(reader)
    if prefix in (0x2B, 0x2D):  # "+" simple string, "-" error
        return _decode_simple_string(reader)
    if prefix == 0x3A:  # ":"
        return _decode_integer(reader)
    if prefix == 0x24:  # "$"
        return _decode_bulk_string(reader)
    if prefix == 0x2A:  # "*"
        return _decode_array(reader)
    raise InvalidPrefixError()


def decode(reader: BinaryIO) -> Any:
    """Decode one value from *reader*.

    Raises :class:`EOFError` when the data ends early and a
    :class:`DecodeError` subclass when it is malformed.
    """
    return _decode_value(reader)


def decode_request(reader: BinaryIO) -> list[str]:
    """Decode a request: a non-empty array of strings."""
    value = decode(reader)
    if not isinstance(value, Array):
        raise NotAnArrayError()
    if not value or not all(isinstance(item, str) for item in value):
        raise InvalidRequestError()
    return list(value)