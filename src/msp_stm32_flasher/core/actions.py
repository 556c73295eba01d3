"""
Core workflow actions for MSP STM32 Flasher.

This module exposes pure-ish functions that the CLI (or any other front end)
can call. Each returns an OperationResult and never raises for engine errors.
"""

import hashlib
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from msp_stm32_flasher.errors import FlasherError
from msp_stm32_flasher.intel_hex import parse_hex
from msp_stm32_flasher.protocol.serial_transport import ByteChannel, SerialChannel
from msp_stm32_flasher.protocol.stm32_bootloader import describe_device

from .config import FlashConfig
from .events import EventCallback, ProgressCallback
from .orchestrator import FlashOrchestrator, compute_page_range
from .results import OperationResult

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "msp_stm32_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _read_hex_text(hex_path: str) -> str:
    path = Path(hex_path)
    if not path.exists():
        raise FileNotFoundError(f"HEX file not found: {hex_path}")
    return path.read_text(encoding="ascii", errors="replace")


def inspect_hex(
    hex_path: str,
    config: Optional[FlashConfig] = None,
) -> OperationResult:
    """
    Parse a HEX file and describe the flash plan without touching hardware.

    Returns:
        OperationResult with:
            - region: covered address range
            - bytes_len: number of data bytes in the file
            - hashes["sha256"]: hash of the flattened image (gaps = 0xFF)
            - metadata: span, page_range, page_count, chunk_size, chunk_count
    """
    config = config or FlashConfig()
    try:
        config.validate()
        image = parse_hex(_read_hex_text(hex_path), verify_checksums=config.verify_checksums)
        start_page, end_page = compute_page_range(image, config.flash_base, config.page_size)
    except (FlasherError, OSError, ValueError) as e:
        return OperationResult.failure(operation="inspect_hex", error=str(e))

    result = OperationResult.success(
        operation="inspect_hex",
        region=f"0x{image.min_address:08X}-0x{image.max_address:08X}",
        bytes_len=len(image),
    )
    result.hashes["sha256"] = hashlib.sha256(image.to_bytes()).hexdigest()
    result.metadata.update({
        "min_address": image.min_address,
        "max_address": image.max_address,
        "span": image.span,
        "page_range": (start_page, end_page),
        "page_count": end_page - start_page + 1,
        "erase_strategy": config.erase_strategy.value,
        "chunk_size": config.write_chunk,
        "chunk_count": image.chunk_count(config.write_chunk),
    })

    holes = image.span - len(image)
    if holes:
        result.add_warning(f"{holes} byte(s) inside the range are not in the file and will be written as 0xFF")
    return result


def identify_target(
    port: str,
    config: Optional[FlashConfig] = None,
    channel: Optional[ByteChannel] = None,
    on_event: Optional[EventCallback] = None,
) -> OperationResult:
    """
    Run the MSP handoff, sync and Get ID without erasing anything.

    Returns:
        OperationResult with device and metadata["pid"] on success
    """
    with _capture_logs() as logs:
        orchestrator = FlashOrchestrator(
            channel or SerialChannel(port),
            config,
            on_event=on_event,
        )
        try:
            pid = orchestrator.connect()
        except FlasherError as e:
            logger.error(f"identify failed: {e}")
            result = OperationResult.failure(operation="identify", error=str(e))
            result.metadata["failed_phase"] = orchestrator.session.phase.value
        else:
            result = OperationResult.success(
                operation="identify",
                device=f"0x{pid:X} {describe_device(pid)}",
            )
            result.metadata["pid"] = pid
            result.metadata["family"] = describe_device(pid)
        finally:
            orchestrator.close()

        result.events = list(orchestrator.events)
        result.logs = logs
        return result


def flash_hex_file(
    port: str,
    hex_path: str,
    config: Optional[FlashConfig] = None,
    channel: Optional[ByteChannel] = None,
    on_event: Optional[EventCallback] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    dry_run: bool = False,
) -> OperationResult:
    """
    Flash an Intel HEX file through the MSP passthrough.

    Args:
        port: Serial port path (ignored when ``channel`` is given)
        hex_path: Path to the Intel HEX file
        config: Session configuration (defaults to FlashConfig())
        channel: Pre-built ByteChannel, mainly for tests
        on_event: Callback for each FlashEvent
        on_progress: Callback(phase, done, total)
        cancel_event: Set from another thread to cancel
        dry_run: Parse and plan only, no serial traffic

    Returns:
        OperationResult; metadata["failed_phase"] is set on failure
    """
    if dry_run:
        result = inspect_hex(hex_path, config)
        result.operation = "flash"
        if result.ok:
            result.add_warning("Dry run - nothing was written")
        return result

    with _capture_logs() as logs:
        try:
            hex_text = _read_hex_text(hex_path)
        except OSError as e:
            result = OperationResult.failure(operation="flash", error=str(e))
            result.logs = logs
            return result

        orchestrator = FlashOrchestrator(
            channel or SerialChannel(port),
            config,
            on_event=on_event,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        result = orchestrator.start_flash(hex_text)
        result.logs = logs
        return result
