"""
Serial Byte Channel

Handles low-level serial communication with the flight controller that
bridges its UART to the STM32 ROM bootloader.

This module provides:
- The ByteChannel contract the protocol layers are written against
- A pyserial-backed implementation with per-read timeouts
"""

import logging
from typing import Optional, Protocol

import serial

from msp_stm32_flasher.errors import FlasherError

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200


class TransportError(FlasherError):
    """Base exception for transport layer errors"""
    pass


class ChannelTimeoutError(TransportError, TimeoutError):
    """No byte arrived within the read timeout"""
    pass


class ByteChannel(Protocol):
    """
    Minimal byte transport used by the MSP and bootloader layers.

    Timeouts are in seconds. ``receive`` must raise TimeoutError (ChannelTimeoutError
    here) when nothing arrives in time; a pending read never outlives its
    timeout.
    """

    def open(self, baudrate: int) -> None:
        ...

    def send(self, data: bytes) -> None:
        ...

    def receive(self, timeout: float) -> int:
        ...

    def close(self) -> None:
        ...


class SerialChannel:
    """
    ByteChannel over a local serial port.

    Example:
        channel = SerialChannel(port="/dev/ttyACM0")
        channel.open(115200)
        channel.send(b"\\x7f")
        ack = channel.receive(timeout=0.5)
        channel.close()
    """

    def __init__(
        self,
        port: str,
        write_timeout: float = 2.0,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyACM0", "COM3")
            write_timeout: Write timeout in seconds (default 2.0)
        """
        self.port = port
        self.write_timeout = write_timeout
        self.baudrate: Optional[int] = None
        self.ser: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def open(self, baudrate: int = DEFAULT_BAUDRATE) -> None:
        """
        Open serial port at 8N1 without flow control.

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=baudrate,
                bytesize=8,
                parity='N',
                stopbits=1,
                timeout=1.0,
                write_timeout=self.write_timeout,
                rtscts=False,
                dsrdtr=False,
            )
            self.baudrate = baudrate

            # Clear any junk in buffer
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()

            logger.debug(f"Opened {self.port} at {baudrate} bps")
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def send(self, data: bytes) -> None:
        """
        Send raw bytes.

        Raises:
            TransportError: If write fails
        """
        if not self.is_open:
            raise TransportError("Serial port not open")

        try:
            written = self.ser.write(data)
            if written != len(data):
                raise TransportError(
                    f"Incomplete write: sent {written}/{len(data)} bytes"
                )
            self.ser.flush()
            logger.debug(f">>> {bytes(data).hex().upper()}")
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")

    def receive(self, timeout: float) -> int:
        """
        Receive a single byte.

        The pyserial read timeout bounds the read itself, so no stale read
        can complete after the caller has given up.

        Raises:
            ChannelTimeoutError: If nothing arrives within ``timeout`` seconds
            TransportError: If the read fails
        """
        if not self.is_open:
            raise TransportError("Serial port not open")

        try:
            self.ser.timeout = timeout
            data = self.ser.read(1)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")

        if len(data) == 0:
            raise ChannelTimeoutError(f"No response within {timeout:.3f}s")

        logger.debug(f"<<< {data.hex().upper()}")
        return data[0]


def list_serial_ports() -> list:
    """Return ``(device, description)`` pairs for every visible port."""
    import serial.tools.list_ports

    return [
        (p.device, p.description or "-")
        for p in serial.tools.list_ports.comports()
    ]
