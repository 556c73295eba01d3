"""
STM32 UART ROM Bootloader Client

Implements the subset of the AN3155 command set needed to program flash:
sync, Get ID, Extended Erase and Write Memory.

Every command is framed as [cmd, cmd ^ 0xFF] and answered with a single
ACK (0x79) or NACK (0x1F). Address and payload blocks carry a trailing XOR
checksum.

Retry policy belongs to the caller. The only retry performed here is the
sync loop, because the bootloader is known to miss the first 0x7F.
"""

import logging
import struct
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Optional

from msp_stm32_flasher.errors import FlasherError

from .checksums import command_frame, with_xor_checksum
from .serial_transport import ByteChannel

logger = logging.getLogger(__name__)

# Protocol constants
ACK = 0x79
NACK = 0x1F
SYNC_BYTE = 0x7F

CMD_GET_ID = 0x02
CMD_WRITE_MEMORY = 0x31
CMD_EXTENDED_ERASE = 0x44

MAX_WRITE_LEN = 256
MASS_ERASE_CODE = 0xFFFF

DEFAULT_ACK_TIMEOUT = 2.0
DEFAULT_MASS_ERASE_TIMEOUT = 5.0
DEFAULT_SYNC_TIMEOUT = 0.5
DEFAULT_SYNC_ATTEMPTS = 5
DEFAULT_SYNC_RETRY_DELAY = 0.1

# Product IDs from AN2606
CHIP_IDS: Dict[int, str] = {
    0x410: "STM32F10x Medium-density",
    0x412: "STM32F10x Low-density",
    0x414: "STM32F10x High-density",
    0x418: "STM32F105/107 Connectivity line",
    0x420: "STM32F100 Medium-density value line",
    0x428: "STM32F100 High-density value line",
    0x430: "STM32F10x XL-density",
    0x411: "STM32F2xx",
    0x413: "STM32F405/407/415/417",
    0x419: "STM32F42x/43x",
    0x421: "STM32F446",
    0x423: "STM32F401xB/C",
    0x431: "STM32F411",
    0x433: "STM32F401xD/E",
    0x440: "STM32F030x8/F05x",
    0x442: "STM32F09x",
    0x444: "STM32F03x",
    0x445: "STM32F04x",
    0x448: "STM32F07x",
    0x422: "STM32F302xB/C/F303xB/C",
    0x432: "STM32F37x",
    0x438: "STM32F303x4/6/8",
    0x439: "STM32F301/F302x4/6/8",
    0x446: "STM32F303xD/E",
    0x460: "STM32G07x/G08x",
    0x466: "STM32G03x/G04x",
    0x468: "STM32G431/441",
    0x469: "STM32G47x/48x",
    0x415: "STM32L47x/48x",
    0x435: "STM32L43x/44x",
    0x449: "STM32F74x/75x",
    0x451: "STM32F76x/77x",
    0x450: "STM32H74x/75x",
}


class BootloaderError(FlasherError):
    """Base exception for bootloader protocol errors"""
    pass


class SyncError(BootloaderError):
    """Bootloader did not answer the sync byte"""
    pass


class UnexpectedResponseError(BootloaderError):
    """Response byte was neither ACK nor NACK"""

    def __init__(self, received: int, context: str = ""):
        self.received = received
        self.context = context
        where = f" after {context}" if context else ""
        super().__init__(f"Unexpected response 0x{received:02X}{where}")


class ResponseTimeoutError(BootloaderError):
    """No response byte within the ack timeout"""
    pass


class IdError(BootloaderError):
    """Get ID command was rejected"""
    pass


class InvalidChunkError(BootloaderError, ValueError):
    """Write payload is empty or longer than 256 bytes"""
    pass


class BootloaderState(Enum):
    """Lifecycle of one bootloader session."""
    DISCONNECTED = "disconnected"
    SYNCING = "syncing"
    SYNCED = "synced"
    IDENTIFIED = "identified"
    ERASING = "erasing"
    PROGRAMMING = "programming"
    DONE = "done"
    FAILED = "failed"


def describe_device(pid: int) -> str:
    """Human readable family name for a product ID."""
    return CHIP_IDS.get(pid, "Unknown STM32 device")


class BootloaderClient:
    """
    STM32 ROM bootloader command client over a ByteChannel.

    Example:
        client = BootloaderClient(channel)
        client.sync()
        pid = client.get_id()
        client.erase_page(0)
        client.write_memory(0x08000000, firmware[:256])
    """

    def __init__(
        self,
        channel: ByteChannel,
        *,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        mass_erase_timeout: float = DEFAULT_MASS_ERASE_TIMEOUT,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
        sync_attempts: int = DEFAULT_SYNC_ATTEMPTS,
        sync_retry_delay: float = DEFAULT_SYNC_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if sync_attempts < 1:
            raise ValueError("sync_attempts must be >= 1")

        self.channel = channel
        self.ack_timeout = ack_timeout
        self.mass_erase_timeout = mass_erase_timeout
        self.sync_timeout = sync_timeout
        self.sync_attempts = sync_attempts
        self.sync_retry_delay = sync_retry_delay
        self._sleep = sleep

        self.state = BootloaderState.DISCONNECTED
        self.failure_reason: Optional[str] = None
        self.device_id: Optional[int] = None

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def mark_failed(self, reason: str) -> None:
        self.state = BootloaderState.FAILED
        self.failure_reason = reason
        logger.debug(f"Bootloader session failed: {reason}")

    def mark_done(self) -> None:
        self.state = BootloaderState.DONE

    def reset(self) -> None:
        """Forget the previous session before reconnecting."""
        self.state = BootloaderState.DISCONNECTED
        self.failure_reason = None
        self.device_id = None

    @contextmanager
    def _operation(self, state: Optional[BootloaderState] = None):
        if state is not None:
            self.state = state
        try:
            yield
        except Exception as exc:
            self.mark_failed(str(exc))
            raise

    # ------------------------------------------------------------------
    # Byte level
    # ------------------------------------------------------------------

    def _read_byte(self, timeout: Optional[float] = None, context: str = "") -> int:
        timeout = self.ack_timeout if timeout is None else timeout
        try:
            return self.channel.receive(timeout)
        except TimeoutError as exc:
            where = f" waiting for {context}" if context else ""
            raise ResponseTimeoutError(
                f"No response within {timeout:.1f}s{where}"
            ) from exc

    def _wait_ack(self, context: str, timeout: Optional[float] = None) -> bool:
        """Read one byte: True on ACK, False on NACK."""
        response = self._read_byte(timeout, context)
        if response == ACK:
            return True
        if response == NACK:
            logger.debug(f"NACK after {context}")
            return False
        raise UnexpectedResponseError(response, context)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def sync(self) -> None:
        """
        Synchronise with the bootloader's autobaud detection.

        Sends 0x7F and waits briefly for ACK, up to ``sync_attempts`` times.

        Raises:
            SyncError: If no attempt was acknowledged
        """
        with self._operation(BootloaderState.SYNCING):
            logger.info("Bootloader sync")
            last_response = "no response"
            for attempt in range(1, self.sync_attempts + 1):
                self.channel.send(bytes([SYNC_BYTE]))
                try:
                    response = self.channel.receive(self.sync_timeout)
                except TimeoutError:
                    last_response = "no response"
                else:
                    if response == ACK:
                        self.state = BootloaderState.SYNCED
                        logger.info(f"Sync OK (attempt {attempt})")
                        return
                    last_response = f"0x{response:02X}"

                if attempt < self.sync_attempts:
                    logger.warning(
                        f"Sync attempt {attempt}/{self.sync_attempts} failed "
                        f"({last_response}), retrying..."
                    )
                    self._sleep(self.sync_retry_delay)

            raise SyncError(
                f"Sync failed after {self.sync_attempts} attempts ({last_response})"
            )

    def send_command(self, cmd: int) -> bool:
        """
        Send a framed command byte.

        Returns:
            True on ACK, False on NACK

        Raises:
            UnexpectedResponseError: Response is neither ACK nor NACK
            ResponseTimeoutError: No response in time
        """
        self.channel.send(command_frame(cmd))
        return self._wait_ack(f"command 0x{cmd:02X}")

    def get_id(self) -> int:
        """
        Read the product ID.

        Response: N, then N+1 PID bytes (big-endian), then ACK.

        Raises:
            IdError: If the command is NACKed
        """
        with self._operation():
            logger.info("Get device ID")
            if not self.send_command(CMD_GET_ID):
                raise IdError("GET_ID (0x02) rejected by bootloader")

            count = self._read_byte(context="GET_ID length") + 1
            pid = 0
            for _ in range(count):
                pid = (pid << 8) | self._read_byte(context="GET_ID data")

            if not self._wait_ack("GET_ID data"):
                raise UnexpectedResponseError(NACK, "GET_ID data")

            self.device_id = pid
            self.state = BootloaderState.IDENTIFIED
            logger.info(f"PID: 0x{pid:X} ({describe_device(pid)})")
            return pid

    def erase_page(self, page: int) -> bool:
        """
        Erase a single flash page via Extended Erase.

        Payload: [N-1 = 0x0000 (one page), page_hi, page_lo, xor].

        Returns:
            True if the bootloader acknowledged the erase
        """
        if not 0 <= page <= 0xFFEF:
            raise ValueError(f"Page index out of range: {page}")

        with self._operation(BootloaderState.ERASING):
            if not self.send_command(CMD_EXTENDED_ERASE):
                return False
            payload = struct.pack(">HH", 0x0000, page)
            self.channel.send(with_xor_checksum(payload))
            return self._wait_ack(f"erase page {page}")

    def mass_erase(self) -> bool:
        """
        Erase the whole flash via the Extended Erase special code 0xFFFF.

        Uses the longer mass-erase timeout for the final ACK.
        """
        with self._operation(BootloaderState.ERASING):
            if not self.send_command(CMD_EXTENDED_ERASE):
                return False
            self.channel.send(with_xor_checksum(struct.pack(">H", MASS_ERASE_CODE)))
            return self._wait_ack("mass erase", timeout=self.mass_erase_timeout)

    def write_memory(self, address: int, data: bytes) -> bool:
        """
        Write up to 256 bytes starting at ``address``.

        Protocol:
            [0x31, 0xCE] -> ACK
            [addr (4, BE), xor] -> ACK
            [len-1, data..., xor] -> ACK

        Raises:
            InvalidChunkError: If ``data`` is empty or longer than 256 bytes.
                Raised before anything is sent.

        Returns:
            True if every stage was acknowledged
        """
        if not 1 <= len(data) <= MAX_WRITE_LEN:
            raise InvalidChunkError(
                f"Write chunk must be 1..{MAX_WRITE_LEN} bytes, got {len(data)}"
            )
        if not 0 <= address <= 0xFFFFFFFF:
            raise ValueError(f"Address out of range: 0x{address:X}")

        with self._operation(BootloaderState.PROGRAMMING):
            if not self.send_command(CMD_WRITE_MEMORY):
                return False

            self.channel.send(with_xor_checksum(struct.pack(">I", address)))
            if not self._wait_ack(f"write address 0x{address:08X}"):
                return False

            self.channel.send(with_xor_checksum(bytes([len(data) - 1]) + bytes(data)))
            return self._wait_ack(f"write data at 0x{address:08X}")
