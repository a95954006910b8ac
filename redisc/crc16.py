"""CRC-16/XMODEM checksum as used by the cluster hash-slot function.

Parameters: width 16, polynomial 0x1021, initial value 0, no input or
output reflection, no final xor. The check value for b"123456789" is 0x31C3.
"""

from __future__ import annotations

_POLYNOMIAL = 0x1021


def _make_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte << 8
        for _ in range(8):
            crc = (crc << 1) ^ _POLYNOMIAL if crc & 0x8000 else crc << 1
            crc &= 0xFFFF
        table.append(crc)
    return tuple(table)


_TABLE = _make_table()


def crc16(data: str | bytes | bytearray | memoryview) -> int:
    """Return the CRC-16/XMODEM checksum of *data*.

    Text is hashed as its UTF-8 encoding.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    crc = 0
    for byte in bytes(data):
        crc = ((crc << 8) & 0xFFFF) ^ _TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc