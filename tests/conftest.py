"""Shared fixtures: an in-memory ByteChannel and an Intel HEX writer."""

from collections import deque
from typing import Callable, List, Optional, Sequence

import pytest

from msp_stm32_flasher.protocol.serial_transport import ChannelTimeoutError
from msp_stm32_flasher.protocol.stm32_bootloader import ACK


class FakeChannel:
    """
    Scripted ByteChannel.

    Responses come from ``responses`` (in order) when given, otherwise from
    ``responder(channel)``. A ``None`` response simulates a read timeout.
    """

    def __init__(
        self,
        responses: Optional[Sequence[Optional[int]]] = None,
        responder: Optional[Callable[["FakeChannel"], Optional[int]]] = None,
    ):
        self.responses = deque(responses) if responses is not None else None
        self.responder = responder or (lambda channel: ACK)
        self.sent: List[bytes] = []
        self.timeouts: List[float] = []
        self.baudrate: Optional[int] = None
        self.open_calls = 0
        self.closed = False

    def open(self, baudrate: int) -> None:
        self.open_calls += 1
        self.baudrate = baudrate

    def send(self, data: bytes) -> None:
        self.sent.append(bytes(data))

    def receive(self, timeout: float) -> int:
        self.timeouts.append(timeout)
        if self.responses is not None:
            value = self.responses.popleft() if self.responses else None
        else:
            value = self.responder(self)
        if value is None:
            raise ChannelTimeoutError(f"No response within {timeout}s")
        return value

    def close(self) -> None:
        self.closed = True

    def count(self, frame: bytes) -> int:
        return sum(1 for sent in self.sent if sent == frame)


def hex_record(record_type: int, offset: int, payload: bytes) -> str:
    body = bytes([len(payload), (offset >> 8) & 0xFF, offset & 0xFF, record_type]) + bytes(payload)
    checksum = (-sum(body)) & 0xFF
    return ":" + (body + bytes([checksum])).hex().upper()


def make_hex(data: bytes, start_address: int, record_len: int = 16, newline: str = "\n") -> str:
    """Encode ``data`` at ``start_address`` as Intel HEX with type 04 records."""
    lines = []
    upper = None
    for i in range(0, len(data), record_len):
        address = start_address + i
        if address >> 16 != upper:
            upper = address >> 16
            lines.append(hex_record(0x04, 0, bytes([(upper >> 8) & 0xFF, upper & 0xFF])))
        lines.append(hex_record(0x00, address & 0xFFFF, data[i:i + record_len]))
    lines.append(":00000001FF")
    return newline.join(lines) + newline


@pytest.fixture
def fake_channel_cls():
    return FakeChannel


@pytest.fixture
def hex_writer():
    return make_hex


@pytest.fixture
def record_writer():
    return hex_record


@pytest.fixture
def no_sleep():
    calls = []

    def sleep(seconds: float) -> None:
        calls.append(seconds)

    sleep.calls = calls
    return sleep
