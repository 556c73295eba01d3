"""
MSP STM32 Flasher - program STM32 targets through a flight controller

Hands the controller UART to the STM32 ROM bootloader over MSP, then
erases and programs flash from an Intel HEX image.
"""

__version__ = "0.1.0"

from msp_stm32_flasher.errors import FlasherError
from msp_stm32_flasher.intel_hex import MemoryImage, parse_hex, FormatError, ChecksumError
from msp_stm32_flasher.protocol import SerialChannel, BootloaderClient, MspFramer
from msp_stm32_flasher.core import FlashConfig, FlashOrchestrator, OperationResult

__all__ = [
    "FlasherError",
    "MemoryImage",
    "parse_hex",
    "FormatError",
    "ChecksumError",
    "SerialChannel",
    "BootloaderClient",
    "MspFramer",
    "FlashConfig",
    "FlashOrchestrator",
    "OperationResult",
    "__version__",
]
