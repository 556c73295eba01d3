"""
Centralized parsing helpers for numeric and enum option values.

The CLI must import these helpers rather than re-implement them.
"""

from typing import Optional

from .config import EraseStrategy, parse_erase_strategy as _parse_erase_strategy_core


def parse_int(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an integer from string, supporting multiple formats.

    Accepts:
        - Decimal: "2048"
        - Hex with 0x prefix: "0x08000000" or "0X800"
        - Hex with h suffix: "800h" or "800H"
        - None or empty for "not given"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        # Hex with 0x/0X prefix
        if value.lower().startswith("0x"):
            return int(value, 16)
        # Hex with h/H suffix
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        # Decimal
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid {label} '{value}'. Use decimal (2048), hex (0x800), or suffix (800h)."
        )


def parse_erase_strategy(value: str) -> EraseStrategy:
    """
    Parse erase strategy from user-friendly string.

    Accepts "page" or "mass" in any case.

    Raises:
        ValueError: If strategy is not recognized.
    """
    return _parse_erase_strategy_core(value)


def get_valid_erase_strategies() -> list:
    """Get list of valid erase strategy strings."""
    return [strategy.value for strategy in EraseStrategy]
