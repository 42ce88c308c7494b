"""Ahead-of-time compilation of model graphs.

ModelCompiler turns CompileOptions into backend compile directives, runs
the compile, and publishes the artifact. It is only called after the
resolver reported the artifact missing or invalid.

Publishing is atomic per file: the backend writes into a private
temporary directory next to the destination, then side files and
finally the artifact itself are moved into place with os.replace. A
reader that sees the artifact therefore also sees its external weights,
and a failed compile leaves nothing behind. Two processes compiling the
same artifact still both do the work; the last one to publish wins.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .backends.base import CompileDirectives, CompileFlags, ExecutionBackend, Session
from .cache import CompiledArtifactResolver
from .config import CompileOptions, SessionOptions
from .errors import BackendError, CompileError
from .validation import CompileRequest, Phase, run_validators

logger = logging.getLogger(__name__)

DEFAULT_OPTIMIZATION_LEVEL = 99
DEFAULT_EXTERNAL_INITIALIZERS_THRESHOLD = 1024


@dataclass
class PipelineModelRecord:
    """A named sub-graph of a Model beyond the primary one.

    compiled_model_path stays "" until a compile (or a valid cached
    artifact) provides one; it only ever names a file that existed when it
    was set. session is owned by the record once opened.
    """
    model_id: str
    filename: str
    session_options: SessionOptions
    compile_options: CompileOptions | None = None
    compiled_model_path: str = ""
    session: Session | None = None


def model_size_bytes(source_model_path: Path) -> int:
    """Size of a graph file plus its default external data file."""
    size = source_model_path.stat().st_size
    data = source_model_path.with_name(source_model_path.name + ".data")
    if data.is_file():
        size += data.stat().st_size
    return size


class ModelCompiler:
    """Compiles graphs for one backend and publishes the artifacts."""

    def __init__(self, backend: ExecutionBackend,
                 resolver: CompiledArtifactResolver | None = None) -> None:
        self.backend = backend
        self.resolver = resolver or CompiledArtifactResolver(backend)

    def compile(
        self,
        source_model_path: str | Path,
        session_options: SessionOptions,
        compile_options: CompileOptions,
        output_path: str | Path | None = None,
        *,
        model_bytes: bytes | None = None,
        base_dir: str | Path | None = None,
        is_primary: bool = False,
        pipeline: Iterable[PipelineModelRecord] = (),
    ) -> Path:
        """Compile one graph and return the published artifact path.

        Args:
            source_model_path: The uncompiled graph file.
            session_options: Options backend-level directives are derived
                from (provider options, default optimization level).
            compile_options: The graph's own compile options.
            output_path: Artifact location. Defaults to the resolver's
                candidate path.
            model_bytes: The serialized graph, when the caller already holds
                it in memory. Compiled instead of re-reading the file.
            base_dir: Model directory that relative paths resolve against.
            is_primary: Also bring every record in `pipeline` up to date.
            pipeline: Pipeline sub-graphs of the same model.

        Raises:
            ConfigurationError: Conflicting compile options.
            CompileError: The backend failed, or the output can't be written.
        """
        source = Path(source_model_path)
        output = Path(output_path) if output_path is not None else \
            self.resolver.artifact_path(source, compile_options, base_dir)

        if model_bytes is None and not source.is_file():
            raise CompileError(f"Source model not found: {source}")
        size = len(model_bytes) if model_bytes is not None else model_size_bytes(source)

        run_validators(Phase.COMPILE, CompileRequest(
            source_model_path=source,
            output_path=output,
            compile_options=compile_options,
            model_size_bytes=size,
        ))

        if compile_options.flags & CompileFlags.ERROR_IF_OUTPUT_FILE_EXISTS and output.exists():
            raise CompileError(f"Compiled model already exists: {output}")

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CompileError(f"Cannot create output directory {output.parent}: {e}") from e

        staging = Path(tempfile.mkdtemp(prefix=".compile-", dir=output.parent))
        try:
            directives = self._directives(source, session_options, compile_options,
                                          staging / output.name, model_bytes)
            try:
                self.backend.compile(directives)
            except BackendError as e:
                raise CompileError(f"Compiling {source.name} failed: {e}") from e
            except OSError as e:
                raise CompileError(f"Compiling {source.name} failed writing output: {e}") from e
            self._publish(staging, output)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Compiled %s for %s -> %s", source.name, self.backend.name, output)

        if is_primary:
            self.compile_pipeline(pipeline, session_options, base_dir)
        return output

    def compile_pipeline(self, records: Iterable[PipelineModelRecord],
                         primary_session_options: SessionOptions,
                         base_dir: str | Path | None = None,
                         model_data: Mapping[str, bytes] | None = None) -> None:
        """Resolve, and compile where needed, every pipeline sub-graph.

        Each record uses its own compile options; backend directives come
        from the primary session options. Records with compilation disabled
        keep an empty compiled path.
        `model_data` holds in-memory graphs by filename; they are compiled
        instead of the file of the same name.
        """
        for record in records:
            opts = record.compile_options
            if opts is None or not opts.enabled:
                continue
            source = Path(base_dir or ".") / record.filename
            path = self.resolve_or_compile(source, primary_session_options, opts, base_dir,
                                           model_bytes=(model_data or {}).get(record.filename))
            record.compiled_model_path = str(path)

    def resolve_or_compile(self, source_model_path: Path, session_options: SessionOptions,
                           compile_options: CompileOptions,
                           base_dir: str | Path | None = None,
                           model_bytes: bytes | None = None) -> Path:
        """Return a valid artifact path, compiling only if the cache misses."""
        record = self.resolver.resolve(source_model_path, compile_options, base_dir)
        if record.valid:
            return record.path
        return self.compile(source_model_path, session_options, compile_options,
                            record.path, model_bytes=model_bytes, base_dir=base_dir)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _directives(self, source: Path, session_options: SessionOptions,
                    compile_options: CompileOptions, output: Path,
                    model_bytes: bytes | None) -> CompileDirectives:
        level = compile_options.graph_optimization_level
        if level is None:
            level = session_options.graph_optimization_level
        if level is None:
            level = DEFAULT_OPTIMIZATION_LEVEL

        threshold = compile_options.external_initializers_size_threshold
        if threshold is None:
            threshold = DEFAULT_EXTERNAL_INITIALIZERS_THRESHOLD

        provider_options: dict[str, str] = {}
        for entry in session_options.provider_options:
            if entry.name == self.backend.name or entry.name == session_options.provider:
                provider_options.update(entry.options)
                break

        return CompileDirectives(
            output_path=output,
            input_model_path=None if model_bytes is not None else source,
            input_model_bytes=model_bytes,
            input_model_base_dir=source.parent,
            graph_optimization_level=level,
            embed_mode=compile_options.ep_context_embed_mode,
            external_initializers_file_path=compile_options.external_initializers_file_path,
            external_initializers_size_threshold=threshold,
            flags=compile_options.flags,
            provider_options=provider_options,
        )

    @staticmethod
    def _publish(staging: Path, output: Path) -> None:
        """Move staged files into place, the artifact itself last."""
        artifact = staging / output.name
        if not artifact.is_file():
            raise CompileError(f"Backend produced no artifact at {artifact}")
        try:
            for path in sorted(staging.rglob("*")):
                if path == artifact or not path.is_file():
                    continue
                target = output.parent / path.relative_to(staging)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(path, target)
            os.replace(artifact, output)
        except OSError as e:
            raise CompileError(f"Cannot publish compiled model {output}: {e}") from e
