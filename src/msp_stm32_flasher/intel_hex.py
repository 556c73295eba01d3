"""
Intel HEX decoding into a sparse flash image.

Only the records that matter for an STM32 flash image affect the output:
- 00 Data
- 01 End Of File (stops parsing)
- 04 Extended Address (upper 16 address bits)

Every other record type is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Tuple

from msp_stm32_flasher.errors import FlasherError

logger = logging.getLogger(__name__)

RECORD_MARKER = ":"

REC_DATA = 0x00
REC_EOF = 0x01
REC_EXTENDED_ADDRESS = 0x04

ERASED_BYTE = 0xFF


class FormatError(FlasherError):
    """Malformed Intel HEX input."""

    def __init__(self, message: str, line_no: Optional[int] = None):
        self.line_no = line_no
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)


class ChecksumError(FormatError):
    """Record checksum does not match its contents."""


@dataclass(frozen=True)
class _HexRecord:
    record_type: int
    offset: int
    payload: bytes


class MemoryImage:
    """
    Read-only sparse mapping of absolute address -> byte value.

    Built once by the parser. Membership and lookups are O(1) and the
    address bounds are computed up front.
    """

    def __init__(self, data: Mapping[int, int]):
        if not data:
            raise ValueError("MemoryImage requires at least one byte")
        self._data: Mapping[int, int] = MappingProxyType(dict(data))
        self.min_address = min(self._data)
        self.max_address = max(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, address: object) -> bool:
        return address in self._data

    def __getitem__(self, address: int) -> int:
        return self._data[address]

    def __iter__(self) -> Iterator[int]:
        return iter(self._data)

    def get(self, address: int, default: Optional[int] = None) -> Optional[int]:
        return self._data.get(address, default)

    @property
    def span(self) -> int:
        """Number of addresses between the lowest and highest byte, inclusive."""
        return self.max_address - self.min_address + 1

    def read(self, start: int, length: int, fill: int = ERASED_BYTE) -> bytes:
        """Return ``length`` bytes from ``start``, filling holes with ``fill``."""
        get = self._data.get
        return bytes(get(addr, fill) for addr in range(start, start + length))

    def to_bytes(self, fill: int = ERASED_BYTE) -> bytes:
        """Flatten the covered address range into contiguous bytes."""
        return self.read(self.min_address, self.span, fill)

    def chunks(self, size: int, fill: int = ERASED_BYTE) -> Iterator[Tuple[int, bytes]]:
        """
        Yield ``(address, bytes)`` write chunks in ascending order.

        Chunks start at ``min_address``; the last one stops at
        ``max_address`` instead of being padded out.
        """
        if size < 1:
            raise ValueError(f"Chunk size must be positive, got {size}")
        addr = self.min_address
        while addr <= self.max_address:
            length = min(size, self.max_address - addr + 1)
            yield addr, self.read(addr, length, fill)
            addr += length

    def chunk_count(self, size: int) -> int:
        return -(-self.span // size)

    def __repr__(self) -> str:
        return (
            f"MemoryImage(0x{self.min_address:08X}-0x{self.max_address:08X}, "
            f"{len(self)} bytes)"
        )


class HexImageParser:
    """
    Intel HEX text -> MemoryImage.

    Args:
        verify_checksums: Reject records whose checksum does not match.
            Turn off to accept files produced by sloppy tools.
    """

    def __init__(self, verify_checksums: bool = True):
        self.verify_checksums = verify_checksums

    def parse_record(self, line: str, line_no: Optional[int] = None) -> _HexRecord:
        digits = line[1:]
        if len(digits) < 10 or len(digits) % 2:
            raise FormatError(f"record too short or odd digit count: {line!r}", line_no)
        try:
            raw = bytes.fromhex(digits)
        except ValueError:
            raise FormatError(f"invalid hex digits: {line!r}", line_no)

        count = raw[0]
        if len(raw) != count + 5:
            raise FormatError(
                f"byte count {count} does not match record length {len(raw) - 5}",
                line_no,
            )
        if self.verify_checksums and sum(raw) & 0xFF:
            raise ChecksumError(
                f"checksum mismatch (expected 0x{(-sum(raw[:-1])) & 0xFF:02X}, "
                f"got 0x{raw[-1]:02X})",
                line_no,
            )

        offset = (raw[1] << 8) | raw[2]
        return _HexRecord(record_type=raw[3], offset=offset, payload=raw[4:-1])

    def parse(self, text: str) -> MemoryImage:
        """
        Decode Intel HEX text.

        Raises:
            FormatError: Malformed record, or no data at all
            ChecksumError: Record checksum mismatch (when verification is on)
        """
        memory: Dict[int, int] = {}
        base = 0

        for line_no, line in enumerate(text.splitlines(), 1):
            line = line.strip()
            if not line.startswith(RECORD_MARKER):
                continue

            record = self.parse_record(line, line_no)

            if record.record_type == REC_DATA:
                start = base + record.offset
                for i, value in enumerate(record.payload):
                    memory[start + i] = value
            elif record.record_type == REC_EXTENDED_ADDRESS:
                if len(record.payload) != 2:
                    raise FormatError("extended address record needs 2 data bytes", line_no)
                base = ((record.payload[0] << 8) | record.payload[1]) << 16
            elif record.record_type == REC_EOF:
                break
            else:
                logger.debug(f"Skipping record type 0x{record.record_type:02X} on line {line_no}")

        if not memory:
            raise FormatError("no data records")

        image = MemoryImage(memory)
        logger.debug(f"Parsed {image!r}")
        return image


def parse_hex(text: str, verify_checksums: bool = True) -> MemoryImage:
    """Parse Intel HEX text into a MemoryImage."""
    return HexImageParser(verify_checksums=verify_checksums).parse(text)


def parse_hex_file(path: str | Path, verify_checksums: bool = True) -> MemoryImage:
    """Read and parse an Intel HEX file."""
    text = Path(path).read_text(encoding="ascii", errors="replace")
    return parse_hex(text, verify_checksums=verify_checksums)
