import io

import pytest

from redisc.resp.encode import (
    OK,
    Array,
    BulkString,
    Error,
    InvalidValueError,
    Pong,
    SimpleString,
    encode,
    encode_to_bytes,
)

LONG = "ceci n'est pas un string"
MULTILINE = "ceci n'est pas un string\r\navec\rdes\nsauts\r\nde\x00ligne."

VALID_CASES = [
    (b"+\r\n", SimpleString("")),
    (b"+a\r\n", SimpleString("a")),
    (b"+OK\r\n", SimpleString("OK")),
    (b"+ceci n'est pas un string\r\n", SimpleString(LONG)),
    (b"-\r\n", Error("")),
    (b"-a\r\n", Error("a")),
    (b"-KO\r\n", Error("KO")),
    (b"-ceci n'est pas un string\r\n", Error(LONG)),
    (b":1\r\n", 1),
    (b":123\r\n", 123),
    (b":-123\r\n", -123),
    (b"$0\r\n\r\n", ""),
    (b"$24\r\nceci n'est pas un string\r\n", LONG),
    (
        b"$51\r\nceci n'est pas un string\r\navec\rdes\nsauts\r\nde\x00ligne.\r\n",
        MULTILINE,
    ),
    (b"$-1\r\n", None),
    (b"*0\r\n", Array()),
    (b"*1\r\n:10\r\n", Array([10])),
    (b"*-1\r\n", Array.nil()),
    (
        b"*3\r\n+string\r\n-error\r\n:-2345\r\n",
        Array([SimpleString("string"), Error("error"), -2345]),
    ),
    (
        b"*5\r\n+string\r\n-error\r\n:-2345\r\n$4\r\nallo\r\n*2\r\n$0\r\n\r\n$-1\r\n",
        Array([SimpleString("string"), Error("error"), -2345, "allo", Array(["", None])]),
    ),
]


@pytest.mark.parametrize("expected,value", VALID_CASES)
def test_encode_to_bytes(expected, value):
    assert encode_to_bytes(value) == expected


@pytest.mark.parametrize("expected,value", VALID_CASES)
def test_encode_writes_to_writer(expected, value):
    buffer = io.BytesIO()
    encode(buffer, value)
    assert buffer.getvalue() == expected


def test_sentinels():
    assert encode_to_bytes(OK()) == b"+OK\r\n"
    assert encode_to_bytes(Pong()) == b"+PONG\r\n"


def test_booleans():
    assert encode_to_bytes(True) == b":1\r\n"
    assert encode_to_bytes(False) == b":0\r\n"
    assert encode_to_bytes(0) == b":0\r\n"


def test_bulk_string_type_and_bytes():
    assert encode_to_bytes(BulkString("allo")) == b"$4\r\nallo\r\n"
    assert encode_to_bytes(b"allo") == b"$4\r\nallo\r\n"


def test_bulk_string_length_counts_utf8_bytes():
    assert encode_to_bytes("•") == b"$3\r\n\xe2\x80\xa2\r\n"


def test_plain_list_and_tuple_are_arrays():
    assert encode_to_bytes(["a", 10]) == b"*2\r\n$1\r\na\r\n:10\r\n"
    assert encode_to_bytes(("a",)) == b"*1\r\n$1\r\na\r\n"


@pytest.mark.parametrize("value", [1.5, {"a": 1}, object(), [1, 2.0]])
def test_invalid_value(value):
    with pytest.raises(InvalidValueError):
        encode_to_bytes(value)


def test_invalid_value_writes_nothing():
    buffer = io.BytesIO()
    with pytest.raises(InvalidValueError):
        encode(buffer, ["ok", 3.5])
    assert buffer.getvalue() == b""


def test_nil_array_differs_from_empty():
    assert Array.nil() != Array()
    assert Array.nil() == Array.nil()
    assert Array() == Array()
    assert Array([1]) == [1]


def test_nil_array_cannot_hold_items():
    with pytest.raises(ValueError):
        Array([1], nil=True)


def test_array_str():
    assert str(Array(["a", 10])) == "[ 0] a (str)\n[ 1] 10 (int)\n"