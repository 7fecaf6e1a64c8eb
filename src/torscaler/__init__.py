"""Scale Tor consensus documents to a different network size."""

from .errors import FormatError, InsufficientDataError, InvalidTargetError, TorScalerError

__version__ = "0.3.0"

__all__ = [
    "FormatError",
    "InsufficientDataError",
    "InvalidTargetError",
    "TorScalerError",
    "__version__",
]
