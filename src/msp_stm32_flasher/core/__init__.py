"""
Core module for MSP STM32 Flasher.

This module provides the single source of truth for:
- Session configuration (config.py)
- Option parsing (parsing.py)
- Event stream types (events.py)
- Result objects (results.py)
- The flash pipeline (orchestrator.py)
- Workflow entry points used by the CLI (actions.py)
"""

from .config import FlashConfig, EraseStrategy, FLASH_BASE, PAGE_SIZE, WRITE_CHUNK
from .parsing import parse_int, parse_erase_strategy
from .events import FlashEvent, FlashPhase, EventLevel
from .results import OperationResult
from .orchestrator import (
    FlashOrchestrator,
    FlashSession,
    FlashError,
    EraseError,
    WriteError,
    ImageRangeError,
    FlashCancelled,
    compute_page_range,
)
from .actions import inspect_hex, identify_target, flash_hex_file

__all__ = [
    # Config
    "FlashConfig",
    "EraseStrategy",
    "FLASH_BASE",
    "PAGE_SIZE",
    "WRITE_CHUNK",
    # Parsing
    "parse_int",
    "parse_erase_strategy",
    # Events / results
    "FlashEvent",
    "FlashPhase",
    "EventLevel",
    "OperationResult",
    # Orchestration
    "FlashOrchestrator",
    "FlashSession",
    "FlashError",
    "EraseError",
    "WriteError",
    "ImageRangeError",
    "FlashCancelled",
    "compute_page_range",
    # Actions
    "inspect_hex",
    "identify_target",
    "flash_hex_file",
]
