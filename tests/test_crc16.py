import pytest

from redisc.crc16 import crc16


def test_check_value():
    assert crc16("123456789") == 0x31C3


def test_empty_is_zero():
    assert crc16("") == 0
    assert crc16(b"") == 0


def test_single_byte_matches_polynomial():
    assert crc16(b"\x01") == 0x1021


@pytest.mark.parametrize("text", ["a", "abc", "a≠b", "•", "{a}b", "123456789"])
def test_str_hashes_as_utf8(text):
    assert crc16(text) == crc16(text.encode("utf-8"))


def test_accepts_bytearray_and_memoryview():
    raw = b"some-key"
    assert crc16(bytearray(raw)) == crc16(raw)
    assert crc16(memoryview(raw)) == crc16(raw)


@pytest.mark.parametrize(
    "left,right",
    [(b"abcd", b"wxyz"), (b"\x00\xff\x10", b"\x13\x37\x42"), (b"k", b"z")],
)
def test_linearity(left, right):
    xored = bytes(x ^ y for x, y in zip(left, right))
    assert crc16(xored) == crc16(left) ^ crc16(right)


@pytest.mark.parametrize("data", [b"a", b"hello world", bytes(range(256))])
def test_result_fits_sixteen_bits(data):
    assert 0 <= crc16(data) <= 0xFFFF