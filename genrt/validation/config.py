"""Configuration validators.

Covers the CONFIG phase. Validators receive a parsed Config and check
the cross-field rules the parser cannot: model type vs graph layout,
pipeline id uniqueness, search limits.
"""

from collections import Counter

from ..config import MODEL_TYPES, Config
from .core import Phase, Severity, ValidationResult, register_validator


@register_validator("model_layout", Phase.CONFIG)
def validate_model_layout(config: Config) -> list[ValidationResult]:
    """The graphs a model type needs must be declared."""
    NAME = "model_layout"
    model = config.model
    decoder = model.decoder
    results = []

    if model.type not in MODEL_TYPES:
        results.append(ValidationResult(NAME, Severity.ERROR,
            f"Unknown model type '{model.type}' (expected one of {', '.join(MODEL_TYPES)})"))
        return results

    if model.type == "decoder" and not decoder.filename:
        results.append(ValidationResult(NAME, Severity.ERROR,
            "model.decoder.filename is required for a decoder model"))

    if model.type == "decoder-pipeline":
        if not decoder.pipeline:
            results.append(ValidationResult(NAME, Severity.ERROR,
                "model.decoder.pipeline must list at least one sub-graph"))
        if decoder.filename:
            results.append(ValidationResult(NAME, Severity.WARNING,
                "model.decoder.filename is ignored for decoder-pipeline models"))

    for sub in decoder.pipeline:
        if not sub.filename:
            results.append(ValidationResult(NAME, Severity.ERROR,
                f"Pipeline sub-graph '{sub.model_id}' has no filename"))
        if not (sub.run_on_prompt or sub.run_on_token_gen):
            results.append(ValidationResult(NAME, Severity.INFO,
                f"Pipeline sub-graph '{sub.model_id}' never runs"))

    return results


@register_validator("pipeline_ids", Phase.CONFIG)
def validate_pipeline_ids(config: Config) -> list[ValidationResult]:
    counts = Counter(sub.model_id for sub in config.model.decoder.pipeline)
    return [
        ValidationResult("pipeline_ids", Severity.ERROR,
            f"Pipeline sub-graph id '{model_id}' appears {n} times")
        for model_id, n in counts.items() if n > 1
    ]


@register_validator("search_limits", Phase.CONFIG)
def validate_search_limits(config: Config) -> list[ValidationResult]:
    NAME = "search_limits"
    search, model = config.search, config.model
    results = []

    if search.max_length < 0:
        results.append(ValidationResult(NAME, Severity.ERROR,
            f"search.max_length must be >= 0, got {search.max_length}"))
    if search.batch_size < 1:
        results.append(ValidationResult(NAME, Severity.ERROR,
            f"search.batch_size must be >= 1, got {search.batch_size}"))
    if model.context_length and search.max_length > model.context_length:
        results.append(ValidationResult(NAME, Severity.WARNING,
            f"search.max_length {search.max_length} exceeds context_length "
            f"{model.context_length}"))

    return results
