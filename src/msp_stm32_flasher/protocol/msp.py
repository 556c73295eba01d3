"""
MSP v2 frames that hand the flight controller UART to the STM32 bootloader.

Protocol sequence:
1. Send MSP_SET_PASSTHROUGH (245) → controller bridges UART to the target
2. Wait for the controller to switch UART ownership
3. Send BOOTLOADER_START (68) → target resets into its ROM bootloader
4. Wait again before talking to the bootloader

Neither frame is acknowledged. A passthrough failure only shows up as a
bootloader sync failure further down the line.

Frame format:
[ '$' | 'X' | '<' | flag | function (2, LE) | size (2, LE) | payload | crc8 ]
"""

import logging
import time
from typing import Callable, Optional

from .checksums import crc8_d5
from .serial_transport import ByteChannel

logger = logging.getLogger(__name__)

MSP_HEADER = b"$X<"  # 0x24 0x58 0x3C

MSP_SET_PASSTHROUGH = 245
MSP_BOOTLOADER_START = 68

# Body bytes after the header, exactly as the controller expects them
PASSTHROUGH_BODY = bytes([0x00, MSP_SET_PASSTHROUGH, 0x00, 0x02, 0x00, 0xFE, 0x11])
BOOTLOADER_START_BODY = bytes([0x00, MSP_BOOTLOADER_START, 0x00, 0x00, 0x00])

DEFAULT_SETTLE_DELAY = 1.0


def build_frame(body: bytes) -> bytes:
    """Prefix ``body`` with the MSP v2 header and append its CRC-8."""
    return MSP_HEADER + bytes(body) + bytes([crc8_d5(body)])


def build_passthrough_frame() -> bytes:
    """Frame enabling serial passthrough to the bootloader UART."""
    return build_frame(PASSTHROUGH_BODY)


def build_bootloader_start_frame() -> bytes:
    """Frame asking the target to reboot into its ROM bootloader."""
    return build_frame(BOOTLOADER_START_BODY)


class MspFramer:
    """
    Sends the two fire-and-forget MSP frames.

    Example:
        framer = MspFramer(channel)
        framer.send_passthrough()
        framer.send_bootloader_start()
    """

    def __init__(
        self,
        channel: ByteChannel,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.settle_delay = settle_delay
        self._sleep = sleep

    def _send(self, name: str, frame: bytes, log_cb: Optional[Callable[[str], None]]) -> bytes:
        self.channel.send(frame)
        message = f"MSP TX ({name}): {frame.hex(' ').upper()}"
        logger.info(message)
        if log_cb:
            log_cb(message)
        if self.settle_delay > 0:
            self._sleep(self.settle_delay)
        return frame

    def send_passthrough(self, log_cb: Optional[Callable[[str], None]] = None) -> bytes:
        """Enable passthrough and wait for the controller to settle."""
        return self._send("set passthrough", build_passthrough_frame(), log_cb)

    def send_bootloader_start(self, log_cb: Optional[Callable[[str], None]] = None) -> bytes:
        """Start the target bootloader and wait for it to come up."""
        return self._send("bootloader start", build_bootloader_start_frame(), log_cb)
