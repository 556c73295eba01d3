"""
Checksum helpers shared by the MSP and STM32 bootloader protocols.

- XOR checksum: STM32 UART bootloader (address, payload, command complement)
- CRC-8 poly 0xD5: MSP v2 frame integrity (a.k.a. CRC-8/DVB-S2)
"""

from typing import Iterable

CRC8_D5_POLY = 0xD5


def xor_checksum(data: Iterable[int]) -> int:
    """
    XOR all bytes together.

    Appending the result to ``data`` makes the whole sequence XOR to zero,
    which is what the bootloader checks on its side.
    """
    checksum = 0
    for byte in data:
        checksum ^= byte
    return checksum & 0xFF


def crc8_d5(data: Iterable[int]) -> int:
    """
    Calculate CRC-8 with polynomial 0xD5.

    MSB-first, initial value 0, no input/output reflection and no final
    XOR. MSP v2 computes it over every frame byte after the ``$X<`` header.

    Args:
        data: Bytes to checksum

    Returns:
        8-bit CRC value
    """
    crc = 0
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = (crc << 1) ^ CRC8_D5_POLY
            else:
                crc <<= 1
            crc &= 0xFF
    return crc


def command_frame(cmd: int) -> bytes:
    """Bootloader command byte followed by its complement."""
    return bytes([cmd & 0xFF, (cmd ^ 0xFF) & 0xFF])


def with_xor_checksum(data: bytes) -> bytes:
    """Return ``data`` with its XOR checksum appended."""
    return bytes(data) + bytes([xor_checksum(data)])
