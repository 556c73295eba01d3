"""Root exception for the flasher package."""


class FlasherError(Exception):
    """Base class for every error raised by msp_stm32_flasher."""
