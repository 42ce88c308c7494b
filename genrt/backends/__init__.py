"""Backend registry.

Backends register a factory under a name; session options pick one by
provider name. Provider aliases map the names used in configuration
documents ("cpu") onto registered backends.

    from genrt.backends import create_backend
    backend = create_backend("cpu", verbose=True)
"""

from typing import Callable

from ..errors import ConfigurationError
from .base import (  # noqa: F401
    CompatibilityVerdict,
    CompileDirectives,
    CompileFlags,
    Device,
    ExecutionBackend,
    Session,
    TensorSpec,
)
from .numpy_backend import NumpyBackend

BackendFactory = Callable[..., ExecutionBackend]

BACKENDS: dict[str, BackendFactory] = {
    "numpy": NumpyBackend,
}

PROVIDER_ALIASES: dict[str, str] = {
    "cpu": "numpy",
}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Register a backend factory. Replaces any previous registration."""
    BACKENDS[name] = factory


def resolve_provider(provider: str) -> str:
    """Map a provider name from configuration to a registered backend name."""
    name = PROVIDER_ALIASES.get(provider.lower(), provider)
    if name not in BACKENDS:
        raise ConfigurationError(
            f"Unknown execution provider '{provider}' "
            f"(registered: {', '.join(sorted(BACKENDS))})"
        )
    return name


def create_backend(provider: str, verbose: bool = False) -> ExecutionBackend:
    """Construct the backend registered for a provider name."""
    return BACKENDS[resolve_provider(provider)](verbose=verbose)
