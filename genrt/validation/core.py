"""Validation types, the per-phase registry, and the runner.

Submodules import from here and register their checks on import; keeping
the types apart from the checks lets config.py and compile.py import them
without importing each other.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Checkpoint a validator runs at, and the object it receives.

    CONFIG:  a Config, while a Model is being constructed
    COMPILE: a CompileRequest, right before the backend compiles
    """
    CONFIG = "config"
    COMPILE = "compile"


class Severity(Enum):
    """Ordered from most to least serious; lower value means worse."""
    ERROR = 0
    WARNING = 1
    INFO = 2

    def at_least(self, threshold: "Severity") -> bool:
        return self.value <= threshold.value


@dataclass
class ValidationResult:
    validator: str
    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.validator}: {self.message}"


class ValidationError(ConfigurationError):
    """A phase produced results at or above the failure threshold."""

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 fail_on: Severity = Severity.ERROR) -> None:
        self.phase = phase
        self.results = results
        fatal = [str(r) for r in results if r.severity.at_least(fail_on)]
        super().__init__(f"{phase.value} validation failed:\n  " + "\n  ".join(fatal))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Check = Callable[[Any], list[ValidationResult]]


@dataclass
class Validator:
    name: str
    phase: Phase
    check: Check


VALIDATORS: dict[Phase, list[Validator]] = defaultdict(list)


def register_validator(name: str, phase: Phase):
    """Register the decorated function as a check for `phase`.

        @register_validator("output_path", Phase.COMPILE)
        def check_output_path(request: CompileRequest) -> list[ValidationResult]:
            ...
    """
    def decorator(fn: Check) -> Check:
        VALIDATORS[phase].append(Validator(name, phase, fn))
        return fn
    return decorator


def run_validators(phase: Phase, target: Any, *,
                   fail_on: Severity | None = Severity.ERROR) -> list[ValidationResult]:
    """Run every check registered for `phase` against `target`.

    Warnings are logged as they are collected. Raises ValidationError when
    any result is at least as severe as `fail_on`; pass fail_on=None to
    only collect.
    """
    results: list[ValidationResult] = []
    for validator in VALIDATORS[phase]:
        results.extend(validator.check(target))

    for r in results:
        if r.severity is Severity.WARNING:
            logger.warning("%s", r)

    if fail_on is not None and any(r.severity.at_least(fail_on) for r in results):
        raise ValidationError(phase, results, fail_on)
    return results
