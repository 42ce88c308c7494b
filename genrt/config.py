"""Model configuration: the genai_config.json document as dataclasses.

The document lives in the model directory. Paths inside it (graph
filenames, ep_context_file_path) are relative to that directory.

    config = Config.load("models/tiny")
    config.overlay('{"model": {"decoder": {"compile_options": '
                   '{"enable_ep_context": true}}}}')

Parsing is strict about types and unknown keys: a typo in an option name
raises ConfigurationError instead of being ignored.
"""

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backends.base import CompileFlags
from .errors import ConfigurationError

CONFIG_FILENAME = "genai_config.json"

DEFAULT_PROVIDER = "cpu"

MODEL_TYPES = ("decoder", "decoder-pipeline")


def _check_keys(section: str, d: dict, allowed: set[str]) -> None:
    unknown = set(d) - allowed
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in {section}: {', '.join(sorted(unknown))}")


def _typed(section: str, d: dict, key: str, kind: type | tuple, default: Any = None) -> Any:
    if key not in d or d[key] is None:
        return default
    value = d[key]
    # bool is an int subclass; keep "true" out of int fields and 1 out of bool fields
    if kind is int and isinstance(value, bool):
        raise ConfigurationError(f"{section}.{key} must be an integer, got {value!r}")
    if not isinstance(value, kind):
        raise ConfigurationError(
            f"{section}.{key} has type {type(value).__name__}, expected "
            f"{kind.__name__ if isinstance(kind, type) else '/'.join(k.__name__ for k in kind)}")
    return value


def _parse_flags(section: str, value: Any) -> CompileFlags:
    if value is None:
        return CompileFlags.NONE
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return CompileFlags(value)
        except ValueError as e:
            raise ConfigurationError(f"{section}.flags: {e}") from e
    if isinstance(value, list):
        flags = CompileFlags.NONE
        for name in value:
            try:
                flags |= CompileFlags[str(name).upper()]
            except KeyError:
                raise ConfigurationError(f"{section}.flags: unknown flag {name!r}") from None
        return flags
    raise ConfigurationError(f"{section}.flags must be an integer or a list of flag names")


@dataclass
class CompileOptions:
    """Per-graph ahead-of-time compilation settings.

    ep_context_embed_mode must stay False for models too large to embed in
    one file; the compile validators reject the combination rather than
    correcting it.
    """
    enable_ep_context: bool | None = None
    graph_optimization_level: int | None = None
    ep_context_file_path: str | None = None
    ep_context_embed_mode: bool = False
    force_compile_if_needed: bool = False
    flags: CompileFlags = CompileFlags.NONE
    external_initializers_file_path: str | None = None
    external_initializers_size_threshold: int | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.enable_ep_context)

    @classmethod
    def from_dict(cls, d: dict, section: str = "compile_options") -> "CompileOptions":
        _check_keys(section, d, {
            "enable_ep_context", "graph_optimization_level", "ep_context_file_path",
            "ep_context_embed_mode", "force_compile_if_needed", "flags",
            "external_initializers_file_path", "external_initializers_size_threshold",
        })
        return cls(
            enable_ep_context=_typed(section, d, "enable_ep_context", bool),
            graph_optimization_level=_typed(section, d, "graph_optimization_level", int),
            ep_context_file_path=_typed(section, d, "ep_context_file_path", str),
            ep_context_embed_mode=_typed(section, d, "ep_context_embed_mode", bool, False),
            force_compile_if_needed=_typed(section, d, "force_compile_if_needed", bool, False),
            flags=_parse_flags(section, d.get("flags")),
            external_initializers_file_path=_typed(section, d, "external_initializers_file_path", str),
            external_initializers_size_threshold=_typed(
                section, d, "external_initializers_size_threshold", int),
        )


@dataclass
class ProviderOptions:
    """One execution provider entry: name plus string options."""
    name: str
    options: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionOptions:
    """Session-level options for opening and running a graph."""
    provider_options: list[ProviderOptions] = field(default_factory=list)
    graph_optimization_level: int | None = None
    enable_graph_capture: bool = False
    log_severity_level: int | None = None
    log_id: str | None = None

    @property
    def provider(self) -> str:
        """The first configured provider, or the CPU default."""
        if self.provider_options:
            return self.provider_options[0].name
        return DEFAULT_PROVIDER

    @classmethod
    def from_dict(cls, d: dict, section: str = "session_options") -> "SessionOptions":
        _check_keys(section, d, {
            "provider_options", "graph_optimization_level", "enable_graph_capture",
            "log_severity_level", "log_id",
        })
        providers = []
        for entry in _typed(section, d, "provider_options", list, []):
            if not isinstance(entry, dict) or len(entry) != 1:
                raise ConfigurationError(
                    f"{section}.provider_options entries must be single-key objects")
            name, opts = next(iter(entry.items()))
            if not isinstance(opts, dict):
                raise ConfigurationError(f"{section}.provider_options.{name} must be an object")
            providers.append(ProviderOptions(name, {k: str(v) for k, v in opts.items()}))
        return cls(
            provider_options=providers,
            graph_optimization_level=_typed(section, d, "graph_optimization_level", int),
            enable_graph_capture=_typed(section, d, "enable_graph_capture", bool, False),
            log_severity_level=_typed(section, d, "log_severity_level", int),
            log_id=_typed(section, d, "log_id", str),
        )


@dataclass
class GraphConfig:
    """One graph file of a model: the decoder, or a pipeline sub-graph.

    inputs/outputs map logical names ("input_ids", "logits") to the tensor
    names the graph declares. run_on_prompt/run_on_token_gen only matter
    for pipeline sub-graphs.
    """
    model_id: str
    filename: str = ""
    session_options: SessionOptions | None = None
    compile_options: CompileOptions | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    run_on_prompt: bool = True
    run_on_token_gen: bool = True
    pipeline: list["GraphConfig"] = field(default_factory=list)

    def input_name(self, logical: str) -> str:
        return self.inputs.get(logical, logical)

    def output_name(self, logical: str) -> str:
        return self.outputs.get(logical, logical)

    @classmethod
    def from_dict(cls, model_id: str, d: dict, section: str,
                  allow_pipeline: bool = False) -> "GraphConfig":
        allowed = {"filename", "session_options", "compile_options", "inputs",
                   "outputs", "run_on_prompt", "run_on_token_gen"}
        if allow_pipeline:
            allowed.add("pipeline")
        _check_keys(section, d, allowed)

        session_options = compile_options = None
        if d.get("session_options") is not None:
            session_options = SessionOptions.from_dict(
                d["session_options"], f"{section}.session_options")
        if d.get("compile_options") is not None:
            compile_options = CompileOptions.from_dict(
                d["compile_options"], f"{section}.compile_options")

        pipeline = []
        for entry in _typed(section, d, "pipeline", list, []):
            if not isinstance(entry, dict) or len(entry) != 1:
                raise ConfigurationError(f"{section}.pipeline entries must be single-key objects")
            sub_id, sub = next(iter(entry.items()))
            pipeline.append(cls.from_dict(sub_id, sub, f"{section}.pipeline.{sub_id}"))

        return cls(
            model_id=model_id,
            filename=_typed(section, d, "filename", str, ""),
            session_options=session_options,
            compile_options=compile_options,
            inputs=dict(_typed(section, d, "inputs", dict, {})),
            outputs=dict(_typed(section, d, "outputs", dict, {})),
            run_on_prompt=_typed(section, d, "run_on_prompt", bool, True),
            run_on_token_gen=_typed(section, d, "run_on_token_gen", bool, True),
            pipeline=pipeline,
        )


@dataclass
class ModelConfig:
    type: str
    decoder: GraphConfig
    vocab_size: int = 0
    context_length: int = 0
    bos_token_id: int = 0
    eos_token_id: list[int] = field(default_factory=list)
    pad_token_id: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        _check_keys("model", d, {"type", "decoder", "vocab_size", "context_length",
                                 "bos_token_id", "eos_token_id", "pad_token_id"})
        if "decoder" not in d:
            raise ConfigurationError("model.decoder is required")
        eos = d.get("eos_token_id", [])
        if isinstance(eos, int) and not isinstance(eos, bool):
            eos = [eos]
        if not isinstance(eos, list) or not all(isinstance(t, int) for t in eos):
            raise ConfigurationError("model.eos_token_id must be an integer or a list of integers")
        return cls(
            type=_typed("model", d, "type", str, "decoder"),
            decoder=GraphConfig.from_dict("decoder", d["decoder"], "model.decoder",
                                          allow_pipeline=True),
            vocab_size=_typed("model", d, "vocab_size", int, 0),
            context_length=_typed("model", d, "context_length", int, 0),
            bos_token_id=_typed("model", d, "bos_token_id", int, 0),
            eos_token_id=eos,
            pad_token_id=_typed("model", d, "pad_token_id", int, 0),
        )


@dataclass
class SearchConfig:
    max_length: int = 0
    batch_size: int = 1

    @classmethod
    def from_dict(cls, d: dict) -> "SearchConfig":
        _check_keys("search", d, {"max_length", "batch_size"})
        return cls(
            max_length=_typed("search", d, "max_length", int, 0),
            batch_size=_typed("search", d, "batch_size", int, 1),
        )


class Config:
    """Parsed configuration plus the raw document it came from.

    Attributes:
        config_path: The model directory. Relative paths resolve here.
        model: Model section.
        search: Search defaults (max_length, batch_size).
    """

    def __init__(self, document: dict, config_path: str | Path) -> None:
        self.config_path = Path(config_path)
        self._document = copy.deepcopy(document)
        self._parse()

    @classmethod
    def load(cls, model_dir: str | Path) -> "Config":
        """Read genai_config.json from a model directory."""
        model_dir = Path(model_dir)
        path = model_dir / CONFIG_FILENAME
        try:
            with open(path) as f:
                document = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"No {CONFIG_FILENAME} in {model_dir}") from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed {path}: {e}") from e
        return cls(document, model_dir)

    def overlay(self, json_text: str) -> None:
        """Deep-merge a JSON document over the current configuration."""
        try:
            patch = json.loads(json_text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed config overlay: {e}") from e
        if not isinstance(patch, dict):
            raise ConfigurationError("Config overlay must be a JSON object")
        merged = copy.deepcopy(self._document)
        _deep_merge(merged, patch)
        previous = self._document
        self._document = merged
        try:
            self._parse()
        except ConfigurationError:
            self._document = previous
            self._parse()
            raise

    def to_dict(self) -> dict:
        return copy.deepcopy(self._document)

    def _parse(self) -> None:
        d = self._document
        if not isinstance(d, dict) or "model" not in d:
            raise ConfigurationError("Configuration must have a 'model' section")
        _check_keys("config", d, {"model", "search"})
        self.model = ModelConfig.from_dict(d["model"])
        self.search = SearchConfig.from_dict(d.get("search", {}))


def _deep_merge(base: dict, patch: dict) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
