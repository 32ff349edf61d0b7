"""
Error taxonomy for SPC snapshot conversion.

Fatal conditions (CorruptSnapshot, UnsupportedOpcode) are raised and abort the
conversion of a single file. Expected or recoverable conditions
(EmulationTimeout, EncodingOverflow) are never raised by the core; instances
are collected as diagnostics on the conversion result instead.
"""

from typing import Optional


class ConversionError(Exception):
    """Base class for all conversion errors.

    Carries the emulated cycle and memory address where the condition was
    detected, when they are known.
    """

    def __init__(self, message: str, cycle: Optional[int] = None,
                 address: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.cycle = cycle
        self.address = address

    def location(self) -> str:
        """Human-readable location suffix (empty if unknown)."""
        parts = []
        if self.address is not None:
            parts.append(f"address ${self.address:04X}")
        if self.cycle is not None:
            parts.append(f"cycle {self.cycle}")
        return ', '.join(parts)

    def __str__(self) -> str:
        loc = self.location()
        if loc:
            return f"{self.message} ({loc})"
        return self.message


class CorruptSnapshot(ConversionError):
    """Snapshot image has the wrong size or layout. Raised before emulation."""


class UnsupportedOpcode(ConversionError):
    """The processor fetched an instruction it cannot execute."""

    def __init__(self, opcode: int, address: int, cycle: int, reason: str = "undecodable opcode"):
        super().__init__(f"{reason} {opcode:02X}", cycle=cycle, address=address)
        self.opcode = opcode


class EmulationTimeout(ConversionError):
    """The emulated-duration bound was reached.

    This is a normal termination: the timeline produced up to the bound is
    valid. Stored as a diagnostic, never raised by the core.
    """


class EncodingOverflow(ConversionError):
    """A value did not fit its encodable range and was clamped."""

    def __init__(self, field_name: str, value: int, clamped: int, cycle: Optional[int] = None):
        super().__init__(f"{field_name} {value} out of range, clamped to {clamped}", cycle=cycle)
        self.field_name = field_name
        self.value = value
        self.clamped = clamped
