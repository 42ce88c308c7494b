"""Compile option validators.

Covers the COMPILE phase. Validators receive a CompileRequest: the
options for one graph plus the facts about the source model needed to
judge them. They run before any backend call, so a conflicting option
set fails with a ConfigurationError and nothing is written.
"""

from dataclasses import dataclass
from pathlib import Path

from ..config import CompileOptions
from ..passes import OPTIMIZATION_LEVELS
from .core import Phase, Severity, ValidationResult, register_validator

# Largest model that may be written as a single embedded artifact.
MAX_EMBEDDED_MODEL_BYTES = 2**31 - 1


@dataclass
class CompileRequest:
    """One graph about to be compiled."""
    source_model_path: Path
    output_path: Path
    compile_options: CompileOptions
    model_size_bytes: int


@register_validator("embed_mode_size", Phase.COMPILE)
def validate_embed_mode_size(req: CompileRequest) -> list[ValidationResult]:
    """Embedding a model past the single-file limit is a caller error."""
    opts = req.compile_options
    if opts.ep_context_embed_mode and req.model_size_bytes > MAX_EMBEDDED_MODEL_BYTES:
        return [ValidationResult("embed_mode_size", Severity.ERROR,
            f"{req.source_model_path.name} is {req.model_size_bytes} bytes, above the "
            f"{MAX_EMBEDDED_MODEL_BYTES}-byte embed limit; set ep_context_embed_mode to false")]
    return []


@register_validator("external_initializers", Phase.COMPILE)
def validate_external_initializers(req: CompileRequest) -> list[ValidationResult]:
    """External initializer settings must agree with embed mode."""
    NAME = "external_initializers"
    opts = req.compile_options
    results = []

    if opts.ep_context_embed_mode and opts.external_initializers_file_path:
        results.append(ValidationResult(NAME, Severity.ERROR,
            "external_initializers_file_path conflicts with ep_context_embed_mode=true"))
    elif opts.ep_context_embed_mode and opts.external_initializers_size_threshold is not None:
        results.append(ValidationResult(NAME, Severity.WARNING,
            "external_initializers_size_threshold is ignored with ep_context_embed_mode=true"))

    threshold = opts.external_initializers_size_threshold
    if threshold is not None and threshold < 0:
        results.append(ValidationResult(NAME, Severity.ERROR,
            f"external_initializers_size_threshold must be >= 0, got {threshold}"))

    return results


@register_validator("optimization_level", Phase.COMPILE)
def validate_optimization_level(req: CompileRequest) -> list[ValidationResult]:
    level = req.compile_options.graph_optimization_level
    if level is not None and level not in OPTIMIZATION_LEVELS:
        return [ValidationResult("optimization_level", Severity.ERROR,
            f"graph_optimization_level {level} is not one of {OPTIMIZATION_LEVELS}")]
    return []


@register_validator("output_path", Phase.COMPILE)
def validate_output_path(req: CompileRequest) -> list[ValidationResult]:
    """The artifact must never overwrite its own source model."""
    if req.output_path.resolve() == req.source_model_path.resolve():
        return [ValidationResult("output_path", Severity.ERROR,
            f"ep_context_file_path resolves to the source model {req.source_model_path}")]
    return []
