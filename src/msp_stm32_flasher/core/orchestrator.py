"""
Flash orchestration: MSP handoff → sync → identify → erase → program.

The pipeline is forward-only and fail-fast. Any step failure aborts the
whole run; flash is then in an indeterminate state and the caller is
expected to retry from the top. The only retried step is the bootloader
sync, which BootloaderClient handles itself.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from msp_stm32_flasher.errors import FlasherError
from msp_stm32_flasher.intel_hex import MemoryImage, parse_hex
from msp_stm32_flasher.protocol.msp import MspFramer
from msp_stm32_flasher.protocol.serial_transport import ByteChannel
from msp_stm32_flasher.protocol.stm32_bootloader import (
    BootloaderClient,
    describe_device,
)

from .config import EraseStrategy, FlashConfig, FLASH_BASE, PAGE_SIZE
from .events import EventCallback, EventLevel, FlashEvent, FlashPhase, ProgressCallback
from .results import OperationResult

logger = logging.getLogger(__name__)

MAX_PAGE_INDEX = 0xFFEF  # 0xFFF0-0xFFFF are special erase codes


class FlashError(FlasherError):
    """Base exception for orchestration failures."""


class EraseError(FlashError):
    """Bootloader refused to erase a page (page is None for mass erase)."""

    def __init__(self, page: Optional[int]):
        self.page = page
        what = "mass erase" if page is None else f"page {page}"
        super().__init__(f"Erase failed: {what}")


class WriteError(FlashError):
    """Bootloader refused a Write Memory command."""

    def __init__(self, address: int, length: int):
        self.address = address
        self.length = length
        super().__init__(f"Write failed at 0x{address:08X} ({length} bytes)")


class ImageRangeError(FlashError, ValueError):
    """Image does not fit in the flash page space."""


class FlashCancelled(FlashError):
    """Operator cancelled the flash."""


@dataclass
class FlashSession:
    """
    Mutable state of one flash run.

    Only FlashOrchestrator touches it.
    """
    phase: FlashPhase = FlashPhase.IDLE
    device_id: Optional[int] = None
    page_range: Optional[Tuple[int, int]] = None
    write_cursor: Optional[int] = None
    pages_erased: int = 0
    chunks_written: int = 0
    total_chunks: int = 0


def compute_page_range(
    image: MemoryImage,
    flash_base: int = FLASH_BASE,
    page_size: int = PAGE_SIZE,
) -> Tuple[int, int]:
    """
    First and last flash page touched by ``image`` (inclusive).

    Raises:
        ImageRangeError: If the image starts below ``flash_base`` or ends
            beyond the addressable page indices.
    """
    if image.min_address < flash_base:
        raise ImageRangeError(
            f"Image starts at 0x{image.min_address:08X}, below flash base 0x{flash_base:08X}"
        )
    start_page = (image.min_address - flash_base) // page_size
    end_page = (image.max_address - flash_base) // page_size
    if end_page > MAX_PAGE_INDEX:
        raise ImageRangeError(
            f"Image ends at 0x{image.max_address:08X}, page {end_page} is not addressable"
        )
    return start_page, end_page


class FlashOrchestrator:
    """
    Drives one complete flash session over an exclusively owned channel.

    Example:
        orchestrator = FlashOrchestrator(SerialChannel("/dev/ttyACM0"))
        result = orchestrator.start_flash(Path("fw.hex").read_text())
        if not result.ok:
            print(result.errors)
    """

    def __init__(
        self,
        channel: ByteChannel,
        config: Optional[FlashConfig] = None,
        *,
        on_event: Optional[EventCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or FlashConfig()
        self.config.validate()

        self.channel = channel
        self.on_event = on_event
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()

        self.framer = MspFramer(channel, settle_delay=self.config.settle_delay, sleep=sleep)
        self.bootloader = BootloaderClient(
            channel,
            ack_timeout=self.config.ack_timeout,
            mass_erase_timeout=self.config.mass_erase_timeout,
            sync_timeout=self.config.sync_timeout,
            sync_attempts=self.config.sync_attempts,
            sync_retry_delay=self.config.sync_retry_delay,
            sleep=sleep,
        )
        self.session = FlashSession()
        self.events: List[FlashEvent] = []
        self._channel_open = False
        self._failed_phase = FlashPhase.IDLE

    def _new_session(self) -> None:
        """Start every flash from scratch; nothing carries over from a previous run."""
        self.session = FlashSession()
        self.events = []
        self._failed_phase = FlashPhase.IDLE
        self.bootloader.reset()

    # ------------------------------------------------------------------
    # Events / cancellation
    # ------------------------------------------------------------------

    def _emit(
        self,
        message: str,
        level: EventLevel = EventLevel.INFO,
        phase: Optional[FlashPhase] = None,
    ) -> FlashEvent:
        event = FlashEvent(phase or self.session.phase, message, level)
        self.events.append(event)
        if level == EventLevel.ERROR:
            logger.error(message)
        else:
            logger.debug(str(event))
        if self.on_event:
            self.on_event(event)
        return event

    def _enter(self, phase: FlashPhase) -> None:
        self._check_cancelled()
        self.session.phase = phase

    def _progress(self, done: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(self.session.phase, done, total)

    def cancel(self) -> None:
        """Request cancellation; honoured before the next protocol step."""
        self.cancel_event.set()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise FlashCancelled(f"Cancelled during {self.session.phase.value}")

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def connect(self) -> int:
        """
        Open the channel, hand the UART to the bootloader, sync and identify.

        Returns:
            Target product ID
        """
        self._enter(FlashPhase.CONNECT)
        self.channel.open(self.config.baudrate)
        self._channel_open = True
        self._emit(f"Channel open at {self.config.baudrate} bps")

        self._enter(FlashPhase.PASSTHROUGH)
        self._emit("MSP: enable serial passthrough")
        self.framer.send_passthrough(lambda msg: self._emit(msg, EventLevel.TX))

        self._enter(FlashPhase.BOOTLOADER_START)
        self._emit("MSP: bootloader start")
        self.framer.send_bootloader_start(lambda msg: self._emit(msg, EventLevel.TX))

        self._enter(FlashPhase.SYNC)
        self._emit("Bootloader sync")
        self.bootloader.sync()
        self._emit("Sync OK", EventLevel.RX)

        self._enter(FlashPhase.IDENTIFY)
        self._emit("Get device ID")
        pid = self.bootloader.get_id()
        self.session.device_id = pid
        self._emit(f"PID: 0x{pid:X} ({describe_device(pid)})", EventLevel.RX)
        return pid

    def plan(self, image: MemoryImage) -> Tuple[int, int]:
        """
        Work out the page range for ``image`` without touching the target.

        Raises:
            ImageRangeError: If the image cannot be placed in flash
        """
        self._enter(FlashPhase.PARSE)
        cfg = self.config
        page_range = compute_page_range(image, cfg.flash_base, cfg.page_size)
        self.session.page_range = page_range
        self._emit(f"HEX range: 0x{image.min_address:08X} - 0x{image.max_address:08X}")
        self._emit(f"Pages: {page_range[0]} - {page_range[1]}")
        return page_range

    def erase(self, image: MemoryImage) -> None:
        """Erase every page the image touches, or the whole chip."""
        cfg = self.config
        if self.session.page_range is None:
            self.plan(image)
        start_page, end_page = self.session.page_range

        self._enter(FlashPhase.ERASE)

        if cfg.erase_strategy is EraseStrategy.MASS:
            self._emit("Mass erase")
            if not self.bootloader.mass_erase():
                raise EraseError(None)
            self.session.pages_erased = end_page - start_page + 1
            self._emit("Mass erase complete")
            self._progress(1, 1)
            return

        total = end_page - start_page + 1
        self._emit(f"Erase pages: {start_page} - {end_page}")
        for page in range(start_page, end_page + 1):
            self._check_cancelled()
            if not self.bootloader.erase_page(page):
                raise EraseError(page)
            self.session.pages_erased += 1
            self._emit(f"Erased page {page}")
            self._progress(self.session.pages_erased, total)

    def program(self, image: MemoryImage) -> None:
        """Write the image in ascending fixed-size chunks."""
        chunk_size = self.config.write_chunk

        self._enter(FlashPhase.PROGRAM)
        total = image.chunk_count(chunk_size)
        self.session.total_chunks = total
        self._emit(f"Programming {image.span} bytes in {total} chunks of {chunk_size}")

        for address, chunk in image.chunks(chunk_size):
            self._check_cancelled()
            self.session.write_cursor = address
            if not self.bootloader.write_memory(address, chunk):
                raise WriteError(address, len(chunk))
            self.session.chunks_written += 1
            written = self.session.chunks_written
            self._emit(f"Write 0x{address:08X}", EventLevel.TX)
            if written % self.config.progress_interval == 0 or written == total:
                logger.info(f"Programmed {written}/{total} chunks")
            self._progress(written, total)

    def flash(self, image: MemoryImage) -> None:
        """Erase and program ``image`` on an already connected target."""
        self.erase(image)
        self.program(image)
        self.bootloader.mark_done()
        self.session.phase = FlashPhase.DONE
        self._emit("Flash completed", EventLevel.SUCCESS)

    def run(self, image: MemoryImage) -> None:
        """
        Full pipeline: plan, connect, erase, program. The channel is always closed.

        Each call starts a fresh session, so a failed flash can simply be run
        again from the top.

        Raises:
            FlasherError: First failure encountered; an error event naming
                the failing phase is emitted before it propagates.
        """
        self._new_session()
        self._execute(image)

    def _execute(self, image: MemoryImage) -> None:
        try:
            if self.session.page_range is None:
                self.plan(image)
            self.connect()
            self.flash(image)
        except FlasherError as exc:
            self._fail(exc)
            raise
        finally:
            self.close()

    def _fail(self, exc: Exception) -> None:
        failed_phase = self.session.phase
        if self.bootloader.failure_reason is None:
            self.bootloader.mark_failed(str(exc))
        self.session.phase = FlashPhase.FAILED
        self._emit(f"{failed_phase.value} failed: {exc}", EventLevel.ERROR, phase=failed_phase)
        self._failed_phase = failed_phase

    def close(self) -> None:
        """Release the channel. The target is left as is."""
        if self._channel_open:
            self._channel_open = False
            self.channel.close()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def start_flash(self, hex_text: str) -> OperationResult:
        """
        Parse ``hex_text`` and flash it.

        HEX errors and images that do not fit in flash are reported before
        the channel is touched. Engine errors never escape; they end up in
        the returned result.
        """
        self._new_session()
        try:
            self.session.phase = FlashPhase.PARSE
            image = parse_hex(hex_text, verify_checksums=self.config.verify_checksums)
            self.plan(image)
        except FlasherError as exc:
            self._fail(exc)
            result = OperationResult.failure(operation="flash", error=str(exc))
            result.metadata["failed_phase"] = self._failed_phase.value
            result.metadata["error_type"] = type(exc).__name__
            result.events = list(self.events)
            return result

        region = f"0x{image.min_address:08X}-0x{image.max_address:08X}"
        try:
            self._execute(image)
        except FlasherError as exc:
            result = OperationResult.failure(
                operation="flash",
                error=str(exc),
                region=region,
                bytes_len=len(image),
            )
            result.metadata["failed_phase"] = self._failed_phase.value
            result.metadata["error_type"] = type(exc).__name__
        else:
            result = OperationResult.success(
                operation="flash",
                region=region,
                bytes_len=len(image),
            )
            result.hashes["sha256"] = hashlib.sha256(image.to_bytes()).hexdigest()

        if self.session.device_id is not None:
            pid = self.session.device_id
            result.device = f"0x{pid:X} {describe_device(pid)}"
        result.metadata["pages_erased"] = self.session.pages_erased
        result.metadata["chunks_written"] = self.session.chunks_written
        if self.session.page_range is not None:
            result.metadata["page_range"] = self.session.page_range
        result.events = list(self.events)
        return result
