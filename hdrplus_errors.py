# hdrplus_errors.py
# Error classes for the burst pipeline and a helper that classifies low-level failures.

from typing import Optional, Type


# ============================================================
# Error classification
# ============================================================

class BurstError(Exception):
    """Base exception for all burst-merge errors."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ResourceExhaustedError(BurstError):
    """Buffer allocation failed (host or device memory)."""
    pass


class FatalError(BurstError):
    """Non-recoverable errors; the same input reproduces them."""
    pass


class ConfigurationError(FatalError, ValueError):
    """Invalid configuration."""
    pass


class InvalidBurstError(FatalError, ValueError):
    """Validation failure for the input burst."""
    pass


class UnsupportedDimensionsError(FatalError):
    """Image is too small (or malformed) for the configured tile geometry."""
    pass


class PipelineFailedError(BurstError):
    """The burst could not be merged. No partial output is produced."""

    def __str__(self) -> str:
        base = super().__str__()
        if self.stage:
            return f"[{self.stage}] {base}"
        return base


_MEMORY_INDICATORS = (
    "out of memory",
    "cuda out of memory",
    "memory allocation failed",
    "can't allocate memory",
    "defaultcpuallocator",
)


def classify_error(error: BaseException) -> Type[BurstError]:
    """Map an exception raised inside a stage to the error class it represents.

    Memory failures become ResourceExhaustedError, burst errors keep their own class,
    everything else is treated as fatal.
    """
    if isinstance(error, BurstError):
        return type(error)
    if isinstance(error, MemoryError):
        return ResourceExhaustedError
    text = str(error).lower()
    if any(ind in text for ind in _MEMORY_INDICATORS):
        return ResourceExhaustedError
    return FatalError
