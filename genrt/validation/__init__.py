"""Validation framework for configuration and compile options.

Validators are tagged checks that run at specific checkpoints. Each
validator inspects an artifact (a Config or a CompileRequest) and
returns structured diagnostics.

The registry collects validators via decorator. Model construction and
the ModelCompiler run them at the appropriate points, but they work
standalone too:

    from genrt.validation import run_validators, Phase
    results = run_validators(Phase.CONFIG, config, fail_on=None)

Validators are defined in submodules:
    config.py   cross-field configuration checks
    compile.py  compile option conflicts (embed mode, thresholds, paths)

Core types live in core.py to avoid circular imports.
"""

from .core import (  # noqa: F401
    Phase,
    Severity,
    ValidationResult,
    ValidationError,
    Validator,
    VALIDATORS,
    register_validator,
    run_validators,
)
from .compile import CompileRequest, MAX_EMBEDDED_MODEL_BYTES  # noqa: F401

# Import submodules to trigger validator registration.
from . import config, compile  # noqa: F401
