"""Models: the graphs of one configuration, opened and ready to step.

A Model owns its backend sessions and the compile/cache orchestration
for every graph it declares. Construction either opens the original
graph files or, when compilation is enabled, a compiled artifact that
the resolver has just validated for the current devices. An artifact
that fails validation is recompiled, never opened.

    config = Config.load("models/tiny")
    model = create_model(config)
    state = model.create_state(GeneratorParams.from_config(config))

Variants:
    DecoderModel: one decoder graph (`type: "decoder"`).
    PipelineModel: ordered sub-graphs (`type: "decoder-pipeline"`);
                   the first sub-graph is the primary one.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import numpy as np

from .backends.base import ExecutionBackend, Session
from .cache import CompiledArtifactResolver
from .compiler import ModelCompiler, PipelineModelRecord
from .config import CompileOptions, Config, GraphConfig, SessionOptions
from .env import get_environment
from .errors import BackendError, ConfigurationError, LoadError
from .session_info import SessionInfo
from .state import DecoderState, PipelineState, State
from .tokenizer import Tokenizer, TokenizerFactory
from .validation import Phase, run_validators

logger = logging.getLogger(__name__)


class Model(ABC):
    """Base class for model variants.

    Attributes:
        config: The configuration the model was built from.
        base_dir: Model directory; graph filenames resolve against it.
        backend: Execution backend chosen by the primary session options.
        session_info: Inputs/outputs of every opened graph.
        pipeline: One record per sub-graph beyond the primary one.
    """

    def __init__(self, config: Config, backend: ExecutionBackend | None = None,
                 tokenizer_factory: TokenizerFactory | None = None,
                 model_data: dict[str, bytes] | None = None) -> None:
        self.config = config
        self.base_dir = Path(config.config_path).absolute()
        self.backend = backend or get_environment().create_backend(
            self.primary_session_options().provider)
        self.resolver = CompiledArtifactResolver(self.backend)
        self.compiler = ModelCompiler(self.backend, self.resolver)
        self.session_info = SessionInfo()
        self.pipeline: list[PipelineModelRecord] = []
        self._sessions: list[Session] = []
        self._tokenizer_factory = tokenizer_factory
        # In-memory graph buffers keyed by filename, compiled without re-reading disk
        self._model_data = dict(model_data or {})

    @abstractmethod
    def primary_session_options(self) -> SessionOptions:
        """Session options of the primary graph; they choose the backend."""
        ...

    @abstractmethod
    def create_state(self, params: Any) -> State:
        ...

    # ------------------------------------------------------------------
    # Compile / cache orchestration
    # ------------------------------------------------------------------

    def ensure_compiled_or_original(self, model_id: str, model_filename: str,
                                    session_options: SessionOptions, is_primary: bool,
                                    compile_options: CompileOptions | None) -> str:
        """Path of the graph to open for `model_id`.

        Returns model_filename unchanged when compilation is not enabled.
        Otherwise returns a compiled artifact that is valid for the current
        devices, compiling it first if the cached one is missing or stale.
        For the primary graph, every pipeline sub-graph is then brought up
        to date with its own compile options; the primary session options
        only supply backend-level directives.

        Raises:
            ConfigurationError: Conflicting compile options.
            CompileError: Compilation failed. Never falls back to the
                uncompiled graph.
        """
        path = model_filename
        if compile_options is not None and compile_options.enabled:
            source = self.base_dir / model_filename
            compiled = self.compiler.resolve_or_compile(
                source, session_options, compile_options, self.base_dir,
                model_bytes=self._model_data.get(model_filename))
            logger.info("Using compiled model for '%s': %s", model_id, compiled)
            path = str(compiled)

        if is_primary:
            others = [r for r in self.pipeline if r.model_id != model_id]
            self.compiler.compile_pipeline(others, session_options, self.base_dir,
                                           model_data=self._model_data)
        return path

    def create_session(self, path: str | Path, session_options: SessionOptions) -> Session:
        """Open a graph relative to the model directory and record its I/O."""
        full = self.base_dir / path
        try:
            session = self.backend.open_session(full, session_options)
        except BackendError as e:
            raise LoadError(f"Cannot open {full}: {e}") from e
        self._sessions.append(session)
        self.session_info.add(session)
        logger.info("Opened %s on %s", full, self.backend.name)
        return session

    def get_session_options(self, model_id: str) -> SessionOptions:
        for record in self.pipeline:
            if record.model_id == model_id:
                return record.session_options
        if model_id == self.primary_model_id:
            return self.primary_session_options()
        raise KeyError(f"Model has no graph named '{model_id}'")

    def get_pipeline_compiled_model_path(self, model_id: str) -> str:
        """Compiled path of a pipeline sub-graph, "" if it was not compiled."""
        for record in self.pipeline:
            if record.model_id == model_id:
                return record.compiled_model_path
        return ""

    @property
    def pipeline_compiled_model_paths(self) -> dict[str, str]:
        return {r.model_id: r.compiled_model_path
                for r in self.pipeline if r.compiled_model_path}

    @property
    def primary_model_id(self) -> str:
        return "decoder"

    # ------------------------------------------------------------------
    # Helpers for callers
    # ------------------------------------------------------------------

    def create_tokenizer(self) -> Tokenizer:
        if self._tokenizer_factory is None:
            raise ConfigurationError("Model was created without a tokenizer factory")
        return self._tokenizer_factory(self.config)

    @staticmethod
    def expand_inputs(array: np.ndarray, num_beams: int) -> np.ndarray:
        """Repeat each batch row num_beams times along the first axis."""
        if num_beams == 1:
            return array
        return np.repeat(array, num_beams, axis=0)

    def close(self) -> None:
        for session in self._sessions:
            session.close()
        self._sessions.clear()

    def __enter__(self) -> "Model":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class DecoderModel(Model):
    """A model with a single decoder graph."""

    def __init__(self, config: Config, backend: ExecutionBackend | None = None,
                 tokenizer_factory: TokenizerFactory | None = None,
                 model_data: dict[str, bytes] | None = None) -> None:
        self.graph_config = config.model.decoder
        super().__init__(config, backend, tokenizer_factory, model_data)

        options = self.primary_session_options()
        path = self.ensure_compiled_or_original(
            "decoder", self.graph_config.filename, options, True,
            self.graph_config.compile_options)
        self.session = self.create_session(path, options)

    def primary_session_options(self) -> SessionOptions:
        return self.graph_config.session_options or SessionOptions()

    def create_state(self, params: Any) -> DecoderState:
        return DecoderState(self, params)


class PipelineModel(Model):
    """A model made of sub-graphs run in order on every step."""

    def __init__(self, config: Config, backend: ExecutionBackend | None = None,
                 tokenizer_factory: TokenizerFactory | None = None,
                 model_data: dict[str, bytes] | None = None) -> None:
        self.graph_config = config.model.decoder
        if not self.graph_config.pipeline:
            raise ConfigurationError("decoder-pipeline model declares no sub-graphs")
        self.primary = self.graph_config.pipeline[0]
        super().__init__(config, backend, tokenizer_factory, model_data)

        self.pipeline = [
            PipelineModelRecord(
                model_id=sub.model_id,
                filename=sub.filename,
                session_options=self._options_for(sub),
                compile_options=sub.compile_options,
            )
            for sub in self.graph_config.pipeline[1:]
        ]

        options = self.primary_session_options()
        path = self.ensure_compiled_or_original(
            self.primary.model_id, self.primary.filename, options, True,
            self.primary.compile_options)
        self.sessions: dict[str, Session] = {
            self.primary.model_id: self.create_session(path, options)}

        for record in self.pipeline:
            record.session = self.create_session(
                record.compiled_model_path or record.filename, record.session_options)
            self.sessions[record.model_id] = record.session

    @property
    def primary_model_id(self) -> str:
        return self.primary.model_id

    def primary_session_options(self) -> SessionOptions:
        return self._options_for(self.primary)

    def _options_for(self, sub: GraphConfig) -> SessionOptions:
        return sub.session_options or self.graph_config.session_options or SessionOptions()

    def create_state(self, params: Any) -> PipelineState:
        return PipelineState(self, params)


MODEL_VARIANTS: dict[str, type[Model]] = {
    "decoder": DecoderModel,
    "decoder-pipeline": PipelineModel,
}


def create_model(config: Config | str | Path, backend: ExecutionBackend | None = None,
                 tokenizer_factory: TokenizerFactory | None = None,
                 model_data: dict[str, bytes] | None = None) -> Model:
    """Validate a configuration and build the Model variant it names.

    Args:
        config: A Config, or a model directory holding genai_config.json.
        backend: Backend to use instead of the one the session options name.
        tokenizer_factory: Builds the tokenizer for create_tokenizer().
        model_data: Graph files already in memory, keyed by filename. Used
            as compile input instead of re-reading the file.
    """
    if not isinstance(config, Config):
        config = Config.load(config)
    run_validators(Phase.CONFIG, config)
    variant = MODEL_VARIANTS.get(config.model.type)
    if variant is None:
        raise ConfigurationError(f"Unsupported model type '{config.model.type}'")
    return variant(config, backend=backend, tokenizer_factory=tokenizer_factory,
                   model_data=model_data)
