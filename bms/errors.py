"""
Exception types raised while converting BMS sequences.
"""

from typing import Optional


class BmsError(ValueError):
    """Base class for all conversion errors."""
    pass


class ProtocolError(BmsError):
    """The BMS stream cannot be decoded.

    Raised for unknown opcodes, voice table misuse, call stack overflow or
    underflow, channel exhaustion and similar conditions. The offset of the
    offending opcode is attached when known.
    """

    def __init__(self, message: str, offset: Optional[int] = None,
                 opcode: Optional[int] = None):
        self.message = message
        self.offset = offset
        self.opcode = opcode
        if offset is not None:
            message = f"{message} at address 0x{offset:X}"
        super().__init__(message)


class InstrumentMapError(BmsError):
    """An instrument map entry could not be understood."""
    pass


class ConfigError(BmsError):
    """The YAML configuration file is invalid."""
    pass
