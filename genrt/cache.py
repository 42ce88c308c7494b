"""Compiled-artifact resolution: where a compiled model lives and whether
it can be used as-is.

The resolver is consulted on every model load. It never remembers a
verdict between calls: driver/toolkit versions and the visible device
set can change between runs, so each load asks the backend again.

Validity rule (no exceptions):
    OPTIMAL                                    -> valid
    PREFER_RECOMPILATION, not force_compile    -> valid, degraded-performance warning
    PREFER_RECOMPILATION, force_compile        -> invalid
    anything else, or no compatibility info    -> invalid

An invalid or missing artifact is recompiled by the caller; it is never
opened.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from .backends.base import CompatibilityVerdict, ExecutionBackend
from .config import CompileOptions

logger = logging.getLogger(__name__)

CONTEXTS_DIR = "contexts"
DEFAULT_MODEL_SUFFIX = ".onnx"


@dataclass(frozen=True)
class CompiledArtifactRecord:
    """Outcome of one resolution. Recomputed on every load, never persisted.

    verdict is None when the artifact is missing or declares no
    compatibility info for the backend.
    """
    path: Path
    exists: bool
    valid: bool
    verdict: CompatibilityVerdict | None = None


def default_artifact_name(source_model_path: Path, backend_name: str) -> str:
    """`<stem>_<backend>_ctx<suffix>` for a source model."""
    suffix = source_model_path.suffix or DEFAULT_MODEL_SUFFIX
    return f"{source_model_path.stem}_{backend_name}_ctx{suffix}"


class CompiledArtifactResolver:
    """Maps a source model + compile options to its compiled counterpart."""

    def __init__(self, backend: ExecutionBackend) -> None:
        self.backend = backend

    def artifact_path(self, source_model_path: str | Path, options: CompileOptions,
                      base_dir: str | Path | None = None) -> Path:
        """Candidate location of the compiled artifact.

        ep_context_file_path, when set, is relative to base_dir (the model
        directory; defaults to the source model's directory). Otherwise the
        artifact goes to `contexts/<stem>_<backend>_ctx<suffix>`.
        """
        source = Path(source_model_path)
        base = Path(base_dir) if base_dir is not None else source.parent
        if options.ep_context_file_path:
            return base / options.ep_context_file_path
        return base / CONTEXTS_DIR / default_artifact_name(source, self.backend.name)

    def resolve(self, source_model_path: str | Path, options: CompileOptions,
                base_dir: str | Path | None = None) -> CompiledArtifactRecord:
        path = self.artifact_path(source_model_path, options, base_dir)
        if not path.is_file():
            logger.info("No compiled artifact at %s", path)
            return CompiledArtifactRecord(path=path, exists=False, valid=False)

        valid, verdict = self.validate(path, options.force_compile_if_needed)
        return CompiledArtifactRecord(path=path, exists=True, valid=valid, verdict=verdict)

    def validate(self, artifact_path: Path,
                 force_compile_if_needed: bool) -> tuple[bool, CompatibilityVerdict | None]:
        """Apply the validity rule to an existing artifact.

        Returns (valid, verdict); verdict is None when the artifact carries
        no compatibility info for this backend.
        """
        info = self.backend.compatibility_info(artifact_path)
        if not info:
            logger.info("%s declares no compatibility info for %s; recompiling",
                        artifact_path, self.backend.name)
            return False, None

        verdict = self.backend.get_compatibility(info, self.backend.devices())

        if verdict == CompatibilityVerdict.OPTIMAL:
            logger.debug("%s is optimal for %s", artifact_path, self.backend.name)
            return True, verdict

        if verdict == CompatibilityVerdict.PREFER_RECOMPILATION:
            if force_compile_if_needed:
                logger.info("%s prefers recompilation and force_compile_if_needed is set; "
                            "recompiling", artifact_path)
                return False, verdict
            logger.warning("Using compiled model %s although %s prefers recompilation; "
                           "performance may be degraded (set force_compile_if_needed "
                           "to recompile)", artifact_path, self.backend.name)
            return True, verdict

        logger.info("%s is not usable on the current devices (%s); recompiling",
                    artifact_path, verdict.name)
        return False, verdict
