"""Process-wide runtime environment.

Initialized exactly once, before any model is created. Settings that
used to be read from environment variables (verbosity) are passed here
and handed to every backend constructed afterwards.

    from genrt.env import init_environment
    init_environment(verbose=True)
"""

import logging
from dataclasses import dataclass

from .backends import ExecutionBackend, create_backend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Environment:
    verbose: bool = False

    def create_backend(self, provider: str) -> ExecutionBackend:
        return create_backend(provider, verbose=self.verbose)


_ENVIRONMENT: Environment | None = None


def init_environment(verbose: bool = False) -> Environment:
    """Initialize the process environment.

    Calling again with the same settings returns the existing environment;
    different settings raise RuntimeError, since backends created earlier
    already carry the first ones.
    """
    global _ENVIRONMENT
    requested = Environment(verbose=verbose)
    if _ENVIRONMENT is not None:
        if _ENVIRONMENT != requested:
            raise RuntimeError(
                f"Environment already initialized with {_ENVIRONMENT}; "
                f"cannot re-initialize with {requested}")
        return _ENVIRONMENT
    _ENVIRONMENT = requested
    logger.debug("Initialized environment: %s", requested)
    return _ENVIRONMENT


def get_environment() -> Environment:
    """The process environment, initialized with defaults on first use."""
    if _ENVIRONMENT is None:
        return init_environment()
    return _ENVIRONMENT


def _reset_environment() -> None:
    """Forget the environment. Test helper."""
    global _ENVIRONMENT
    _ENVIRONMENT = None
