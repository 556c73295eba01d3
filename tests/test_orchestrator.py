"""End-to-end tests for the flash pipeline against a scripted channel."""

import pytest

from msp_stm32_flasher.core.config import EraseStrategy, FlashConfig
from msp_stm32_flasher.core.events import EventLevel, FlashPhase
from msp_stm32_flasher.core.orchestrator import (
    EraseError,
    FlashCancelled,
    FlashOrchestrator,
    ImageRangeError,
    WriteError,
    compute_page_range,
)
from msp_stm32_flasher.intel_hex import MemoryImage, parse_hex
from msp_stm32_flasher.protocol.msp import build_bootloader_start_frame, build_passthrough_frame
from msp_stm32_flasher.protocol.stm32_bootloader import ACK, NACK, BootloaderState, SyncError

ERASE_CMD = b"\x44\xBB"
WRITE_CMD = b"\x31\xCE"
FLASH_BASE = 0x08000000


def _config(**kwargs) -> FlashConfig:
    defaults = dict(settle_delay=0, sync_retry_delay=0)
    defaults.update(kwargs)
    return FlashConfig(**defaults)


def _image(size: int, start: int = FLASH_BASE) -> MemoryImage:
    return MemoryImage({start + i: i & 0xFF for i in range(size)})


def _orchestrator(channel, no_sleep, **kwargs) -> FlashOrchestrator:
    config = kwargs.pop("config", None) or _config()
    return FlashOrchestrator(channel, config, sleep=no_sleep, **kwargs)


class TestPageRange:
    """Page range math."""

    def test_single_page_image(self):
        image = _image(2048)
        assert image.max_address == 0x080007FF
        assert compute_page_range(image) == (0, 0)

    def test_two_page_image(self):
        assert compute_page_range(_image(4096)) == (0, 1)

    def test_offset_image(self):
        image = _image(10, start=FLASH_BASE + 2048 * 5 + 2040)
        assert compute_page_range(image) == (5, 6)

    def test_image_below_flash_base(self):
        with pytest.raises(ImageRangeError):
            compute_page_range(_image(16, start=0x07FFFFF0))

    def test_custom_page_size(self):
        assert compute_page_range(_image(4096), page_size=1024) == (0, 3)


class TestFullFlash:
    """Happy path with an always-ACK target."""

    def test_two_page_flash(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)
        image = _image(4096)

        orchestrator.run(image)

        chunk = orchestrator.config.write_chunk
        assert channel.sent[0] == build_passthrough_frame()
        assert channel.sent[1] == build_bootloader_start_frame()
        assert channel.sent[2] == b"\x7F"
        assert channel.count(ERASE_CMD) == 2
        assert channel.count(WRITE_CMD) == 4096 // chunk

        # Nothing is sent after the final data block
        last_addr = FLASH_BASE + 4096 - chunk
        last_chunk = image.read(last_addr, chunk)
        payload = bytes([chunk - 1]) + last_chunk
        checksum = 0
        for byte in payload:
            checksum ^= byte
        assert channel.sent[-1] == payload + bytes([checksum])

        assert channel.baudrate == 115200
        assert channel.closed
        assert orchestrator.events[-1].level == EventLevel.SUCCESS
        assert orchestrator.session.phase == FlashPhase.DONE
        assert orchestrator.session.pages_erased == 2
        assert orchestrator.session.chunks_written == 4096 // chunk
        assert orchestrator.session.page_range == (0, 1)
        assert orchestrator.bootloader.state == BootloaderState.DONE

    def test_256_byte_chunks(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep, config=_config(write_chunk=256))

        orchestrator.run(_image(4096))

        assert channel.count(WRITE_CMD) == 16

    def test_one_event_per_page_and_chunk(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)

        orchestrator.run(_image(4096))

        erase_events = [e for e in orchestrator.events if e.message.startswith("Erased page")]
        write_events = [
            e for e in orchestrator.events
            if e.phase == FlashPhase.PROGRAM and e.level == EventLevel.TX
        ]
        assert len(erase_events) == 2
        assert len(write_events) == 4096 // orchestrator.config.write_chunk
        tx_msp = [e for e in orchestrator.events if e.message.startswith("MSP TX")]
        assert len(tx_msp) == 2

    def test_progress_callback(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        calls = []
        orchestrator = _orchestrator(
            channel, no_sleep, on_progress=lambda phase, done, total: calls.append((phase, done, total))
        )

        orchestrator.run(_image(4096))

        erase_calls = [c for c in calls if c[0] == FlashPhase.ERASE]
        program_calls = [c for c in calls if c[0] == FlashPhase.PROGRAM]
        assert erase_calls == [(FlashPhase.ERASE, 1, 2), (FlashPhase.ERASE, 2, 2)]
        assert program_calls[-1] == (FlashPhase.PROGRAM, 128, 128)

    def test_gaps_are_written_as_erased_bytes(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep, config=_config(write_chunk=4))
        image = MemoryImage({FLASH_BASE: 0x01, FLASH_BASE + 5: 0x06})

        orchestrator.run(image)

        data_blocks = [s for s in channel.sent if len(s) == 6 and s[0] == 0x03]
        assert data_blocks[0][1:5] == b"\x01\xFF\xFF\xFF"
        # Final chunk stops at the last image byte
        assert channel.sent[-1][:3] == bytes([0x01, 0xFF, 0x06])

    def test_mass_erase_strategy(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        config = _config(erase_strategy=EraseStrategy.MASS, mass_erase_timeout=5.0)
        orchestrator = _orchestrator(channel, no_sleep, config=config)

        orchestrator.run(_image(4096))

        assert channel.count(ERASE_CMD) == 1
        assert b"\xFF\xFF\x00" in channel.sent
        assert 5.0 in channel.timeouts

    def test_msp_settle_delay_applied(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep, config=_config(settle_delay=1.0))

        orchestrator.connect()

        assert no_sleep.calls == [1.0, 1.0]


class TestFailures:
    """Fail-fast behaviour."""

    def test_nack_on_second_erase_aborts(self, fake_channel_cls, no_sleep):
        def responder(channel):
            if channel.sent[-1] == ERASE_CMD and channel.count(ERASE_CMD) == 2:
                return NACK
            return ACK

        channel = fake_channel_cls(responder=responder)
        orchestrator = _orchestrator(channel, no_sleep)

        with pytest.raises(EraseError) as ei:
            orchestrator.run(_image(4096))

        assert ei.value.page == 1
        assert channel.count(ERASE_CMD) == 2
        assert channel.count(WRITE_CMD) == 0
        assert channel.closed
        assert orchestrator.events[-1].level == EventLevel.ERROR
        assert orchestrator.events[-1].phase == FlashPhase.ERASE
        assert orchestrator.bootloader.state == BootloaderState.FAILED

    def test_write_nack_aborts(self, fake_channel_cls, no_sleep):
        def responder(channel):
            if channel.sent[-1] == WRITE_CMD and channel.count(WRITE_CMD) == 3:
                return NACK
            return ACK

        channel = fake_channel_cls(responder=responder)
        orchestrator = _orchestrator(channel, no_sleep)

        with pytest.raises(WriteError) as ei:
            orchestrator.run(_image(4096))

        assert ei.value.address == FLASH_BASE + 2 * orchestrator.config.write_chunk
        assert channel.count(WRITE_CMD) == 3
        assert channel.sent[-1] == WRITE_CMD

    def test_sync_failure(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls(responses=[])
        orchestrator = _orchestrator(channel, no_sleep)

        with pytest.raises(SyncError):
            orchestrator.run(_image(16))

        assert channel.count(b"\x7F") == 5
        assert channel.count(ERASE_CMD) == 0
        assert channel.closed
        assert orchestrator.events[-1].phase == FlashPhase.SYNC

    def test_cancel_between_pages(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)

        def on_event(event):
            if event.message == "Erased page 0":
                orchestrator.cancel()

        orchestrator.on_event = on_event

        with pytest.raises(FlashCancelled):
            orchestrator.run(_image(3 * 2048))

        assert channel.count(ERASE_CMD) == 1
        assert channel.count(WRITE_CMD) == 0
        assert channel.closed
        assert orchestrator.events[-1].level == EventLevel.ERROR

    def test_cancel_before_start_never_opens(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)
        orchestrator.cancel()

        with pytest.raises(FlashCancelled):
            orchestrator.run(_image(16))

        assert channel.open_calls == 0
        assert channel.sent == []

    def test_image_below_flash_base_rejected_before_connecting(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)

        with pytest.raises(ImageRangeError):
            orchestrator.run(_image(16, start=0x07FFFFF0))

        assert channel.open_calls == 0
        assert channel.sent == []
        assert orchestrator.events[-1].phase == FlashPhase.PARSE

    def test_plain_timeout_error_from_channel(self, fake_channel_cls, no_sleep):
        class BuiltinTimeoutChannel(fake_channel_cls):
            def receive(self, timeout):
                self.timeouts.append(timeout)
                raise TimeoutError("read timed out")

        channel = BuiltinTimeoutChannel()
        orchestrator = _orchestrator(channel, no_sleep)

        result = orchestrator.start_flash(
            ":020000040800F2\n:0400000001020304F2\n:00000001FF\n"
        )

        assert not result.ok
        assert result.metadata["failed_phase"] == "sync"
        assert channel.count(b"\x7F") == 5
        assert channel.closed


class TestStartFlash:
    """Result-returning entry point."""

    def test_success_result(self, fake_channel_cls, no_sleep, hex_writer):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)
        data = bytes(range(256)) * 8

        result = orchestrator.start_flash(hex_writer(data, FLASH_BASE))

        assert result.ok
        assert result.region == "0x08000000-0x080007FF"
        assert result.bytes_len == 2048
        assert result.metadata["pages_erased"] == 1
        assert result.metadata["chunks_written"] == 2048 // 32
        assert "sha256" in result.hashes
        assert result.events[-1].level == EventLevel.SUCCESS

    def test_bad_hex_never_touches_channel(self, fake_channel_cls, no_sleep):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)

        result = orchestrator.start_flash(":0400000001020304F1\n")

        assert not result.ok
        assert result.metadata["failed_phase"] == "parse"
        assert channel.open_calls == 0
        assert channel.sent == []
        assert result.events[-1].level == EventLevel.ERROR

    def test_erase_failure_result(self, fake_channel_cls, no_sleep, hex_writer):
        def responder(channel):
            if channel.sent[-1] == ERASE_CMD and channel.count(ERASE_CMD) == 2:
                return NACK
            return ACK

        channel = fake_channel_cls(responder=responder)
        orchestrator = _orchestrator(channel, no_sleep)

        result = orchestrator.start_flash(hex_writer(bytes(4096), FLASH_BASE))

        assert not result.ok
        assert result.metadata["failed_phase"] == "erase"
        assert result.metadata["error_type"] == "EraseError"
        assert "page 1" in result.errors[0]
        assert result.events[-1].level == EventLevel.ERROR

    def test_identified_device_reported(self, fake_channel_cls, no_sleep, hex_writer):
        script = [ACK, ACK, 0x01, 0x04, 0x10, ACK]
        state = {"i": 0}

        def responder(channel):
            if state["i"] < len(script):
                state["i"] += 1
                return script[state["i"] - 1]
            return ACK

        channel = fake_channel_cls(responder=responder)
        orchestrator = _orchestrator(channel, no_sleep)

        result = orchestrator.start_flash(hex_writer(bytes(64), FLASH_BASE))

        assert result.ok
        assert result.device.startswith("0x410")

    def test_image_below_flash_base_never_touches_channel(self, fake_channel_cls, no_sleep, hex_writer):
        channel = fake_channel_cls()
        orchestrator = _orchestrator(channel, no_sleep)

        result = orchestrator.start_flash(hex_writer(bytes(16), 0x07FFFFF0))

        assert not result.ok
        assert result.metadata["failed_phase"] == "parse"
        assert result.metadata["error_type"] == "ImageRangeError"
        assert channel.open_calls == 0
        assert channel.sent == []
        assert result.events[-1].level == EventLevel.ERROR
        assert result.events[-1].phase == FlashPhase.PARSE

    def test_repeated_flash_starts_fresh(self, fake_channel_cls, no_sleep, hex_writer):
        channel = fake_channel_cls()
        progress = []
        orchestrator = _orchestrator(
            channel, no_sleep, on_progress=lambda phase, done, total: progress.append((phase, done, total))
        )
        hex_text = hex_writer(bytes(4096), FLASH_BASE)

        first = orchestrator.start_flash(hex_text)
        progress.clear()
        second = orchestrator.start_flash(hex_text)

        assert first.ok and second.ok
        assert second.metadata["pages_erased"] == 2
        assert second.metadata["chunks_written"] == 128
        assert len(second.events) == len(first.events)
        assert [p for p in progress if p[0] == FlashPhase.ERASE] == [
            (FlashPhase.ERASE, 1, 2),
            (FlashPhase.ERASE, 2, 2),
        ]
        assert all(done <= total for _, done, total in progress)

    def test_retry_after_failure_succeeds(self, fake_channel_cls, no_sleep, hex_writer):
        state = {"refuse": True}

        def responder(channel):
            if state["refuse"] and channel.sent[-1] == ERASE_CMD and channel.count(ERASE_CMD) == 2:
                state["refuse"] = False
                return NACK
            return ACK

        channel = fake_channel_cls(responder=responder)
        orchestrator = _orchestrator(channel, no_sleep)
        hex_text = hex_writer(bytes(4096), FLASH_BASE)

        failed = orchestrator.start_flash(hex_text)
        retried = orchestrator.start_flash(hex_text)

        assert not failed.ok
        assert retried.ok, retried.errors
        assert "failed_phase" not in retried.metadata
        assert retried.metadata["pages_erased"] == 2
        assert not any(e.level == EventLevel.ERROR for e in retried.events)
        assert orchestrator.bootloader.state == BootloaderState.DONE
        assert orchestrator.bootloader.failure_reason is None
        assert channel.open_calls == 2

    def test_config_validation(self, fake_channel_cls):
        with pytest.raises(ValueError):
            FlashOrchestrator(fake_channel_cls(), FlashConfig(write_chunk=300))


def test_parse_then_flash_preserves_bytes(fake_channel_cls, no_sleep, hex_writer):
    data = bytes((i * 7) & 0xFF for i in range(100))
    image = parse_hex(hex_writer(data, FLASH_BASE + 0x40))
    channel = fake_channel_cls()

    _orchestrator(channel, no_sleep, config=_config(write_chunk=100)).run(image)

    assert channel.sent[-2] == bytes([0x08, 0x00, 0x00, 0x40, 0x48])
    assert channel.sent[-1][1:-1] == data
