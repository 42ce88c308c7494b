"""Compiled-artifact resolution and the validity rule.

The resolver never trusts an artifact it cannot vouch for: only OPTIMAL,
or PREFER_RECOMPILATION without force_compile_if_needed, is valid.
"""

import logging

import pytest

from genrt.backends.base import CompatibilityVerdict
from genrt.builders import build_decoder_graph
from genrt.cache import CompiledArtifactResolver, default_artifact_name
from genrt.compiler import ModelCompiler
from genrt.config import CompileOptions, SessionOptions

from conftest import FakeBackend, artifact_path


def _compile(backend, model_dir, **options):
    compile_options = CompileOptions(enable_ep_context=True, **options)
    return ModelCompiler(backend).compile(
        model_dir / "model.onnx", SessionOptions(), compile_options)


class TestArtifactPath:

    def test_default_name(self, tmp_path):
        assert default_artifact_name(tmp_path / "model.onnx", "numpy") == "model_numpy_ctx.onnx"

    def test_default_suffix(self, tmp_path):
        assert default_artifact_name(tmp_path / "decoder", "numpy") == "decoder_numpy_ctx.onnx"

    def test_default_location(self, fake_backend, model_dir):
        resolver = CompiledArtifactResolver(fake_backend)
        path = resolver.artifact_path(model_dir / "model.onnx", CompileOptions(True))
        assert path == artifact_path(model_dir)

    def test_explicit_path_relative_to_base_dir(self, fake_backend, tmp_path):
        resolver = CompiledArtifactResolver(fake_backend)
        opts = CompileOptions(True, ep_context_file_path="cache/out.onnx")
        path = resolver.artifact_path(tmp_path / "sub" / "model.onnx", opts, base_dir=tmp_path)
        assert path == tmp_path / "cache" / "out.onnx"


class TestResolve:

    def test_missing_artifact_is_invalid(self, fake_backend, model_dir):
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True))
        assert not record.exists
        assert not record.valid
        assert record.verdict is None
        assert fake_backend.verdict_queries == 0

    def test_optimal_is_valid(self, fake_backend, model_dir):
        _compile(fake_backend, model_dir)
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True))
        assert record.exists and record.valid
        assert record.verdict == CompatibilityVerdict.OPTIMAL

    def test_resolving_twice_gives_same_path(self, fake_backend, model_dir):
        _compile(fake_backend, model_dir)
        resolver = CompiledArtifactResolver(fake_backend)
        first = resolver.resolve(model_dir / "model.onnx", CompileOptions(True))
        second = resolver.resolve(model_dir / "model.onnx", CompileOptions(True))
        assert first == second
        assert fake_backend.compile_calls == 1

    def test_verdict_requeried_every_resolve(self, fake_backend, model_dir):
        _compile(fake_backend, model_dir)
        resolver = CompiledArtifactResolver(fake_backend)
        resolver.resolve(model_dir / "model.onnx", CompileOptions(True))
        fake_backend.verdict = CompatibilityVerdict.NOT_SUPPORTED
        record = resolver.resolve(model_dir / "model.onnx", CompileOptions(True))
        assert fake_backend.verdict_queries == 2
        assert not record.valid

    def test_prefer_recompilation_accepted_with_warning(self, fake_backend, model_dir, caplog):
        _compile(fake_backend, model_dir)
        fake_backend.verdict = CompatibilityVerdict.PREFER_RECOMPILATION
        with caplog.at_level(logging.WARNING, logger="genrt.cache"):
            record = CompiledArtifactResolver(fake_backend).resolve(
                model_dir / "model.onnx", CompileOptions(True, force_compile_if_needed=False))
        assert record.valid
        assert any("performance may be degraded" in r.getMessage() for r in caplog.records)

    def test_prefer_recompilation_rejected_when_forced(self, fake_backend, model_dir):
        _compile(fake_backend, model_dir)
        fake_backend.verdict = CompatibilityVerdict.PREFER_RECOMPILATION
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True, force_compile_if_needed=True))
        assert record.exists
        assert not record.valid
        assert record.verdict == CompatibilityVerdict.PREFER_RECOMPILATION

    @pytest.mark.parametrize("verdict", [CompatibilityVerdict.NOT_SUPPORTED,
                                         CompatibilityVerdict.NOT_APPLICABLE])
    def test_other_verdicts_invalid(self, fake_backend, model_dir, verdict):
        _compile(fake_backend, model_dir)
        fake_backend.verdict = verdict
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True))
        assert not record.valid

    @pytest.mark.parametrize("force", [False, True])
    def test_no_compatibility_info_is_invalid(self, fake_backend, model_dir, force):
        # An artifact written by something other than this backend's compile
        path = artifact_path(model_dir)
        path.parent.mkdir()
        build_decoder_graph().save(path)
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True, force_compile_if_needed=force))
        assert record.exists
        assert not record.valid
        assert record.verdict is None
        assert fake_backend.verdict_queries == 0

    def test_artifact_from_other_backend_has_no_info(self, model_dir):
        # Compiled by "fake"; a different backend name finds nothing for itself
        _compile(FakeBackend(), model_dir, ep_context_file_path="contexts/shared.onnx")

        class OtherBackend(FakeBackend):
            name = "other"

        other = OtherBackend()
        record = CompiledArtifactResolver(other).resolve(
            model_dir / "model.onnx",
            CompileOptions(True, ep_context_file_path="contexts/shared.onnx"))
        assert record.exists and not record.valid

    def test_unreadable_artifact_is_invalid(self, fake_backend, model_dir):
        path = artifact_path(model_dir)
        path.parent.mkdir()
        path.write_text("not a graph")
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True))
        assert record.exists and not record.valid

    def test_non_object_artifact_is_invalid(self, fake_backend, model_dir):
        path = artifact_path(model_dir)
        path.parent.mkdir()
        path.write_text("[1, 2]")
        record = CompiledArtifactResolver(fake_backend).resolve(
            model_dir / "model.onnx", CompileOptions(True))
        assert record.exists and not record.valid
        assert fake_backend.compatibility_info(path) is None
