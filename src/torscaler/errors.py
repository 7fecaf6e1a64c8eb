"""Exception types raised by the scaling engine."""

from __future__ import annotations

from typing import Optional


class TorScalerError(Exception):
    """Base class for all errors raised by torscaler."""


class FormatError(TorScalerError, ValueError):
    """A consensus document is malformed or holds an out-of-range value."""

    def __init__(
        self,
        message: str,
        *,
        line_number: Optional[int] = None,
        source: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.line_number = line_number
        self.source = source

    def __str__(self) -> str:
        location = ""
        if self.source:
            location = f"{self.source}"
        if self.line_number is not None:
            location = f"{location}:{self.line_number}" if location else f"line {self.line_number}"
        return f"{location}: {self.message}" if location else self.message


class InsufficientDataError(TorScalerError):
    """Not enough distinct historical points to fit a growth curve."""

    def __init__(self, message: str, *, quantity: Optional[str] = None) -> None:
        super().__init__(message)
        self.quantity = quantity


class InvalidTargetError(TorScalerError):
    """A fitted model evaluates to a value that violates a document invariant."""

    def __init__(self, message: str, *, target: object = None) -> None:
        super().__init__(message)
        self.target = target
