"""
Error taxonomy for the overdub engine.

Components raise these; the LoopEngine facade catches them at its boundary,
records the message as ``last_error`` and returns a failure indicator.
"""


class LoopEngineError(Exception):
    """Base class for every recoverable engine failure."""


class InvalidDuration(LoopEngineError):
    """Loop duration is non-positive or above the configured maximum."""


class AllocationError(LoopEngineError):
    """The sample store for a loop could not be reserved."""


class NoActiveBuffer(LoopEngineError):
    """An operation needed a loop buffer but none has been initialized."""


class CaptureUnavailable(LoopEngineError):
    """The capture collaborator could not start or stop."""


class DecodeError(LoopEngineError):
    """Captured bytes could not be decoded to PCM."""


class InvalidPosition(LoopEngineError):
    """Start position outside [0, duration) or a non-positive span."""


class AlreadyActive(LoopEngineError):
    """A start/stop was requested from a state that does not allow it."""


class EmptyBufferError(LoopEngineError):
    """Export was requested with no loop buffer."""
