"""Wire protocol layer - serial channel, MSP framing and STM32 bootloader."""

from .serial_transport import (
    ByteChannel,
    SerialChannel,
    TransportError,
    ChannelTimeoutError,
    list_serial_ports,
)
from .checksums import xor_checksum, crc8_d5, command_frame, with_xor_checksum
from .msp import (
    MspFramer,
    MSP_HEADER,
    build_passthrough_frame,
    build_bootloader_start_frame,
)
from .stm32_bootloader import (
    BootloaderClient,
    BootloaderState,
    BootloaderError,
    SyncError,
    UnexpectedResponseError,
    ResponseTimeoutError,
    IdError,
    InvalidChunkError,
    ACK,
    NACK,
    CHIP_IDS,
    describe_device,
)

__all__ = [
    # Transport
    "ByteChannel",
    "SerialChannel",
    "TransportError",
    "ChannelTimeoutError",
    "list_serial_ports",
    # Checksums
    "xor_checksum",
    "crc8_d5",
    "command_frame",
    "with_xor_checksum",
    # MSP
    "MspFramer",
    "MSP_HEADER",
    "build_passthrough_frame",
    "build_bootloader_start_frame",
    # STM32 bootloader
    "BootloaderClient",
    "BootloaderState",
    "BootloaderError",
    "SyncError",
    "UnexpectedResponseError",
    "ResponseTimeoutError",
    "IdError",
    "InvalidChunkError",
    "ACK",
    "NACK",
    "CHIP_IDS",
    "describe_device",
]
