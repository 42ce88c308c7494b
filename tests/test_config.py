"""Configuration parsing, overlays, and strictness."""

import json

import pytest

from genrt.backends.base import CompileFlags
from genrt.config import CONFIG_FILENAME, Config
from genrt.errors import ConfigurationError


def _config(tmp_path, model=None, search=None):
    document = {"model": model or {"type": "decoder", "decoder": {"filename": "model.onnx"}}}
    if search is not None:
        document["search"] = search
    (tmp_path / CONFIG_FILENAME).write_text(json.dumps(document))
    return Config.load(tmp_path)


class TestLoad:

    def test_minimal(self, tmp_path):
        config = _config(tmp_path)
        assert config.config_path == tmp_path
        assert config.model.type == "decoder"
        assert config.model.decoder.filename == "model.onnx"
        assert config.model.decoder.compile_options is None
        assert config.search.batch_size == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match=CONFIG_FILENAME):
            Config.load(tmp_path)

    def test_malformed_json(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("{not json")
        with pytest.raises(ConfigurationError, match="Malformed"):
            Config.load(tmp_path)

    def test_missing_model_section(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("{}")
        with pytest.raises(ConfigurationError, match="model"):
            Config.load(tmp_path)

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigurationError, match="filenme"):
            _config(tmp_path, {"type": "decoder", "decoder": {"filenme": "m.onnx"}})

    def test_wrong_type(self, tmp_path):
        model = {"type": "decoder", "decoder": {
            "filename": "m.onnx", "compile_options": {"enable_ep_context": "yes"}}}
        with pytest.raises(ConfigurationError, match="enable_ep_context"):
            _config(tmp_path, model)

    def test_bool_not_accepted_as_int(self, tmp_path):
        model = {"type": "decoder", "decoder": {
            "filename": "m.onnx", "compile_options": {"graph_optimization_level": True}}}
        with pytest.raises(ConfigurationError, match="integer"):
            _config(tmp_path, model)

    def test_eos_scalar_becomes_list(self, tmp_path):
        config = _config(tmp_path, {"type": "decoder", "eos_token_id": 7,
                                    "decoder": {"filename": "m.onnx"}})
        assert config.model.eos_token_id == [7]


class TestCompileOptions:

    def _options(self, tmp_path, **options):
        model = {"type": "decoder", "decoder": {"filename": "m.onnx",
                                                "compile_options": options}}
        return _config(tmp_path, model).model.decoder.compile_options

    def test_defaults(self, tmp_path):
        opts = self._options(tmp_path, enable_ep_context=True)
        assert opts.enabled
        assert not opts.ep_context_embed_mode
        assert not opts.force_compile_if_needed
        assert opts.flags == CompileFlags.NONE
        assert opts.graph_optimization_level is None

    def test_unset_enable_means_disabled(self, tmp_path):
        assert not self._options(tmp_path).enabled

    def test_flags_by_name(self, tmp_path):
        opts = self._options(tmp_path, flags=["error_if_output_file_exists",
                                              "ERROR_IF_NO_NODES_COMPILED"])
        assert opts.flags == (CompileFlags.ERROR_IF_OUTPUT_FILE_EXISTS
                              | CompileFlags.ERROR_IF_NO_NODES_COMPILED)

    def test_flags_by_value(self, tmp_path):
        assert self._options(tmp_path, flags=2).flags == CompileFlags.ERROR_IF_OUTPUT_FILE_EXISTS

    def test_unknown_flag(self, tmp_path):
        with pytest.raises(ConfigurationError, match="unknown flag"):
            self._options(tmp_path, flags=["error_if_slow"])


class TestSessionOptions:

    def test_provider_options(self, tmp_path):
        model = {"type": "decoder", "decoder": {"filename": "m.onnx", "session_options": {
            "provider_options": [{"cpu": {"threads": 4}}],
            "enable_graph_capture": True}}}
        opts = _config(tmp_path, model).model.decoder.session_options
        assert opts.provider == "cpu"
        assert opts.provider_options[0].options == {"threads": "4"}
        assert opts.enable_graph_capture

    def test_provider_defaults_to_cpu(self, tmp_path):
        model = {"type": "decoder", "decoder": {"filename": "m.onnx", "session_options": {}}}
        assert _config(tmp_path, model).model.decoder.session_options.provider == "cpu"

    def test_malformed_provider_entry(self, tmp_path):
        model = {"type": "decoder", "decoder": {"filename": "m.onnx", "session_options": {
            "provider_options": [{"cpu": {}, "cuda": {}}]}}}
        with pytest.raises(ConfigurationError, match="single-key"):
            _config(tmp_path, model)


class TestPipeline:

    def test_sub_graphs_in_order(self, tmp_path):
        model = {"type": "decoder-pipeline", "decoder": {"pipeline": [
            {"embeddings": {"filename": "e.onnx", "run_on_token_gen": False}},
            {"head": {"filename": "h.onnx",
                      "compile_options": {"enable_ep_context": True}}},
        ]}}
        pipeline = _config(tmp_path, model).model.decoder.pipeline
        assert [p.model_id for p in pipeline] == ["embeddings", "head"]
        assert not pipeline[0].run_on_token_gen
        assert pipeline[1].compile_options.enabled

    def test_nested_pipeline_rejected(self, tmp_path):
        model = {"type": "decoder-pipeline", "decoder": {"pipeline": [
            {"a": {"filename": "a.onnx", "pipeline": []}}]}}
        with pytest.raises(ConfigurationError, match="pipeline"):
            _config(tmp_path, model)

    def test_io_name_mapping(self, tmp_path):
        model = {"type": "decoder", "decoder": {"filename": "m.onnx",
                                                "inputs": {"input_ids": "ids"}}}
        decoder = _config(tmp_path, model).model.decoder
        assert decoder.input_name("input_ids") == "ids"
        assert decoder.output_name("logits") == "logits"


class TestOverlay:

    def test_deep_merge(self, tmp_path):
        config = _config(tmp_path)
        config.overlay('{"model": {"decoder": {"compile_options": '
                       '{"enable_ep_context": true}}}}')
        assert config.model.decoder.compile_options.enabled
        assert config.model.decoder.filename == "model.onnx"

    def test_invalid_overlay_rolls_back(self, tmp_path):
        config = _config(tmp_path)
        with pytest.raises(ConfigurationError):
            config.overlay('{"model": {"decoder": {"bogus": 1}}}')
        assert config.model.decoder.filename == "model.onnx"
        assert "bogus" not in config.to_dict()["model"]["decoder"]

    def test_malformed_overlay(self, tmp_path):
        config = _config(tmp_path)
        with pytest.raises(ConfigurationError, match="Malformed"):
            config.overlay("{")
        with pytest.raises(ConfigurationError, match="object"):
            config.overlay("[]")
