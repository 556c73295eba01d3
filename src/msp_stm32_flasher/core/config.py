"""
Flash session configuration.

Defaults follow the MSP passthrough setup: 115200 baud, 2 KiB pages from
0x08000000, 32-byte writes and per-page erase.
"""

from dataclasses import dataclass
from enum import Enum

from msp_stm32_flasher.protocol.stm32_bootloader import (
    DEFAULT_ACK_TIMEOUT,
    DEFAULT_MASS_ERASE_TIMEOUT,
    DEFAULT_SYNC_ATTEMPTS,
    DEFAULT_SYNC_RETRY_DELAY,
    DEFAULT_SYNC_TIMEOUT,
    MAX_WRITE_LEN,
)
from msp_stm32_flasher.protocol.msp import DEFAULT_SETTLE_DELAY
from msp_stm32_flasher.protocol.serial_transport import DEFAULT_BAUDRATE

FLASH_BASE = 0x08000000
PAGE_SIZE = 2048
WRITE_CHUNK = 32


class EraseStrategy(Enum):
    """How flash is cleared before programming."""
    PAGE = "page"
    MASS = "mass"


def parse_erase_strategy(value: str) -> EraseStrategy:
    """
    Parse an erase strategy name ("page" or "mass", case-insensitive).

    Raises:
        ValueError: If the name is not recognized.
    """
    normalized = (value or "").strip().lower()
    for strategy in EraseStrategy:
        if strategy.value == normalized:
            return strategy
    valid = ", ".join(s.value for s in EraseStrategy)
    raise ValueError(f"Invalid erase strategy '{value}'. Use one of: {valid}.")


@dataclass
class FlashConfig:
    """
    Tunables for one flash session.

    Attributes:
        baudrate: Serial speed of the controller UART
        flash_base: Address of flash page 0
        page_size: Erase granularity in bytes
        write_chunk: Bytes per Write Memory command (1..256)
        erase_strategy: Per-page erase or one mass erase
        settle_delay: Seconds to wait after each MSP frame
        sync_attempts: Number of 0x7F sync attempts
        sync_timeout: Seconds to wait for the sync ACK
        sync_retry_delay: Seconds between sync attempts
        ack_timeout: Seconds to wait for ordinary ACK/NACK
        mass_erase_timeout: Seconds to wait for the mass erase ACK
        verify_checksums: Check Intel HEX record checksums
        progress_interval: Chunks between programming progress log lines
    """
    baudrate: int = DEFAULT_BAUDRATE
    flash_base: int = FLASH_BASE
    page_size: int = PAGE_SIZE
    write_chunk: int = WRITE_CHUNK
    erase_strategy: EraseStrategy = EraseStrategy.PAGE
    settle_delay: float = DEFAULT_SETTLE_DELAY
    sync_attempts: int = DEFAULT_SYNC_ATTEMPTS
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    sync_retry_delay: float = DEFAULT_SYNC_RETRY_DELAY
    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    mass_erase_timeout: float = DEFAULT_MASS_ERASE_TIMEOUT
    verify_checksums: bool = True
    progress_interval: int = 16

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: On the first out-of-range value.
        """
        if not 1 <= self.write_chunk <= MAX_WRITE_LEN:
            raise ValueError(
                f"write_chunk must be 1..{MAX_WRITE_LEN}, got {self.write_chunk}"
            )
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.baudrate < 1:
            raise ValueError(f"baudrate must be positive, got {self.baudrate}")
        if self.sync_attempts < 1:
            raise ValueError("sync_attempts must be >= 1")
        if self.progress_interval < 1:
            raise ValueError("progress_interval must be >= 1")
        for name in ("settle_delay", "sync_timeout", "sync_retry_delay",
                     "ack_timeout", "mass_erase_timeout"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if not isinstance(self.erase_strategy, EraseStrategy):
            raise ValueError(f"Unknown erase strategy: {self.erase_strategy!r}")
