"""Exception taxonomy for model loading, compilation, and execution.

Every error raised across a public boundary derives from GenRuntimeError
so callers can catch the whole family at once. Backends raise
BackendError; the Model/State layer wraps it into the error that names
the phase that failed (load, compile, evaluate).
"""


class GenRuntimeError(Exception):
    """Base class for all runtime errors."""


class ConfigurationError(GenRuntimeError):
    """Invalid or conflicting configuration, detected before any backend call."""


class BackendError(GenRuntimeError):
    """Raised by an execution backend. Carries the backend's diagnostic text."""

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class CompileError(GenRuntimeError):
    """Ahead-of-time compilation failed. No artifact is published."""


class LoadError(GenRuntimeError):
    """Opening a session on a (compiled or original) graph failed."""


class EvaluationError(GenRuntimeError):
    """A State step failed. The State is terminated afterwards."""
