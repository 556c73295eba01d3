"""
Structured progress events emitted by the flash engine.

The presentation layer (CLI, GUI) consumes these; the exact text is not
part of the contract, only the phase/level structure and that one event
is emitted per protocol step, erased page and written chunk.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict


class EventLevel(Enum):
    """Kind of event, used by UIs for styling."""
    INFO = "info"
    TX = "tx"
    RX = "rx"
    ERROR = "error"
    SUCCESS = "success"


class FlashPhase(Enum):
    """Pipeline phase a FlashSession is in."""
    IDLE = "idle"
    PARSE = "parse"
    CONNECT = "connect"
    PASSTHROUGH = "passthrough"
    BOOTLOADER_START = "bootloader_start"
    SYNC = "sync"
    IDENTIFY = "identify"
    ERASE = "erase"
    PROGRAM = "program"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FlashEvent:
    """
    One entry in the event stream.

    Attributes:
        phase: Pipeline phase that produced the event
        message: Human readable description
        level: Event kind (info/tx/rx/error/success)
    """
    phase: FlashPhase
    message: str
    level: EventLevel = EventLevel.INFO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "level": self.level.value,
        }

    def __str__(self) -> str:
        return f"[{self.phase.value}] {self.message}"


EventCallback = Callable[[FlashEvent], None]
# (phase, done, total) for the erase and program phases
ProgressCallback = Callable[[FlashPhase, int, int], None]
