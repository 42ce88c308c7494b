"""Tests for the validation framework.

Each test constructs a deliberately broken configuration or compile
request and asserts the appropriate validator catches it with the right
severity.
"""

from pathlib import Path

import pytest

from genrt.config import CompileOptions, Config
from genrt.validation import (
    CompileRequest, Phase, Severity, ValidationError, ValidationResult,
    run_validators,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _errors(results: list[ValidationResult]) -> list[ValidationResult]:
    return [r for r in results if r.severity == Severity.ERROR]


def _warnings(results: list[ValidationResult]) -> list[ValidationResult]:
    return [r for r in results if r.severity == Severity.WARNING]


def _config(model: dict, search: dict | None = None) -> Config:
    document = {"model": model}
    if search is not None:
        document["search"] = search
    return Config(document, ".")


def _decoder(**extra) -> dict:
    return {"type": "decoder", "decoder": {"filename": "model.onnx"}, **extra}


def _request(size=1000, output="contexts/out.onnx", **options) -> CompileRequest:
    return CompileRequest(
        source_model_path=Path("model.onnx"),
        output_path=Path(output),
        compile_options=CompileOptions(enable_ep_context=True, **options),
        model_size_bytes=size,
    )


# ---------------------------------------------------------------------------
# Config phase
# ---------------------------------------------------------------------------

class TestConfigValidators:

    def test_valid_decoder(self):
        assert run_validators(Phase.CONFIG, _config(_decoder())) == []

    def test_unknown_model_type(self):
        results = run_validators(Phase.CONFIG, _config(_decoder(type="encoder")), fail_on=None)
        assert any(r.validator == "model_layout" for r in _errors(results))

    def test_decoder_without_filename(self):
        model = {"type": "decoder", "decoder": {}}
        results = run_validators(Phase.CONFIG, _config(model), fail_on=None)
        assert any("filename is required" in r.message for r in _errors(results))

    def test_empty_pipeline(self):
        model = {"type": "decoder-pipeline", "decoder": {"pipeline": []}}
        results = run_validators(Phase.CONFIG, _config(model), fail_on=None)
        assert any("at least one" in r.message for r in _errors(results))

    def test_pipeline_ignores_filename(self):
        model = {"type": "decoder-pipeline", "decoder": {
            "filename": "model.onnx", "pipeline": [{"a": {"filename": "a.onnx"}}]}}
        results = run_validators(Phase.CONFIG, _config(model), fail_on=None)
        assert _errors(results) == []
        assert len(_warnings(results)) == 1

    def test_sub_graph_that_never_runs(self):
        model = {"type": "decoder-pipeline", "decoder": {"pipeline": [
            {"a": {"filename": "a.onnx", "run_on_prompt": False, "run_on_token_gen": False}}]}}
        results = run_validators(Phase.CONFIG, _config(model), fail_on=None)
        assert [r.severity for r in results] == [Severity.INFO]

    def test_duplicate_pipeline_ids(self):
        model = {"type": "decoder-pipeline", "decoder": {"pipeline": [
            {"a": {"filename": "a.onnx"}}, {"a": {"filename": "b.onnx"}}]}}
        results = run_validators(Phase.CONFIG, _config(model), fail_on=None)
        assert any(r.validator == "pipeline_ids" for r in _errors(results))

    def test_search_limits(self):
        config = _config(_decoder(context_length=16),
                         {"max_length": 32, "batch_size": 0})
        results = run_validators(Phase.CONFIG, config, fail_on=None)
        assert any("batch_size" in r.message for r in _errors(results))
        assert any("context_length" in r.message for r in _warnings(results))

    def test_raises_on_error(self):
        with pytest.raises(ValidationError) as exc_info:
            run_validators(Phase.CONFIG, _config(_decoder(type="encoder")))
        assert exc_info.value.phase == Phase.CONFIG

    def test_fail_on_warning(self):
        config = _config(_decoder(context_length=16), {"max_length": 32})
        run_validators(Phase.CONFIG, config)
        with pytest.raises(ValidationError):
            run_validators(Phase.CONFIG, config, fail_on=Severity.WARNING)


# ---------------------------------------------------------------------------
# Compile phase
# ---------------------------------------------------------------------------

class TestCompileValidators:

    def test_valid_request(self):
        assert run_validators(Phase.COMPILE, _request()) == []

    def test_embed_mode_over_limit(self, monkeypatch):
        monkeypatch.setattr("genrt.validation.compile.MAX_EMBEDDED_MODEL_BYTES", 999)
        results = run_validators(Phase.COMPILE, _request(ep_context_embed_mode=True),
                                 fail_on=None)
        assert any(r.validator == "embed_mode_size" for r in _errors(results))

    def test_large_model_fine_without_embed_mode(self, monkeypatch):
        monkeypatch.setattr("genrt.validation.compile.MAX_EMBEDDED_MODEL_BYTES", 999)
        assert run_validators(Phase.COMPILE, _request()) == []

    def test_embed_with_external_file(self):
        results = run_validators(Phase.COMPILE, _request(
            ep_context_embed_mode=True, external_initializers_file_path="w.bin"), fail_on=None)
        assert any(r.validator == "external_initializers" for r in _errors(results))

    def test_embed_with_threshold_warns(self):
        results = run_validators(Phase.COMPILE, _request(
            ep_context_embed_mode=True, external_initializers_size_threshold=10), fail_on=None)
        assert _errors(results) == []
        assert len(_warnings(results)) == 1

    def test_negative_threshold(self):
        results = run_validators(Phase.COMPILE, _request(
            external_initializers_size_threshold=-1), fail_on=None)
        assert any(">= 0" in r.message for r in _errors(results))

    def test_unknown_optimization_level(self):
        results = run_validators(Phase.COMPILE, _request(graph_optimization_level=3),
                                 fail_on=None)
        assert any(r.validator == "optimization_level" for r in _errors(results))

    def test_output_is_source(self):
        results = run_validators(Phase.COMPILE, _request(output="model.onnx"), fail_on=None)
        assert any(r.validator == "output_path" for r in _errors(results))

    def test_validation_error_is_configuration_error(self):
        from genrt.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            run_validators(Phase.COMPILE, _request(graph_optimization_level=5))
