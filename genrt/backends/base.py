"""Execution backend capability surface.

A backend is the opaque tensor engine behind a Model: it opens sessions,
evaluates them, compiles graphs ahead of time, and judges whether a
compiled artifact still suits the devices it can see. The core only
talks to backends through this interface, which keeps the cache and
compile logic testable against a fake backend with canned verdicts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from pathlib import Path
from typing import Any

import numpy as np


class CompatibilityVerdict(Enum):
    """Backend judgment of a compiled artifact against the active devices."""
    NOT_APPLICABLE       = "not_applicable"
    OPTIMAL              = "optimal"
    PREFER_RECOMPILATION = "prefer_recompilation"
    NOT_SUPPORTED        = "not_supported"


class CompileFlags(IntFlag):
    """Behavior switches for a compile call."""
    NONE                        = 0
    ERROR_IF_NO_NODES_COMPILED  = 1
    ERROR_IF_OUTPUT_FILE_EXISTS = 2


@dataclass(frozen=True)
class Device:
    """A device a backend can execute on."""
    kind: str                # "cpu", "gpu", ...
    vendor: str = ""
    name: str = ""
    driver_version: str = ""


@dataclass(frozen=True)
class TensorSpec:
    """Declared element type and shape of a named session input/output."""
    dtype: str
    shape: tuple[int | str, ...]


@dataclass
class CompileDirectives:
    """Everything a backend needs for one compile call.

    Exactly one of input_model_path / input_model_bytes is set; external
    weights of an in-memory model resolve against input_model_base_dir. Relative
    external_initializers_file_path values are relative to output_path's
    directory.
    """
    output_path: Path
    input_model_path: Path | None = None
    input_model_bytes: bytes | None = None
    input_model_base_dir: Path | None = None
    graph_optimization_level: int = 99
    embed_mode: bool = False
    external_initializers_file_path: str | None = None
    external_initializers_size_threshold: int = 1024
    flags: CompileFlags = CompileFlags.NONE
    provider_options: dict[str, str] = field(default_factory=dict)


class Session(ABC):
    """An opened graph, exclusively owned by the Model or pipeline record
    that opened it."""

    path: Path

    @property
    @abstractmethod
    def input_specs(self) -> dict[str, TensorSpec]:
        ...

    @property
    @abstractmethod
    def output_specs(self) -> dict[str, TensorSpec]:
        ...

    def close(self) -> None:
        """Release backend resources held by the session."""


class ExecutionBackend(ABC):
    """Base class for execution backends.

    Attributes:
        name: Registry name, used in default artifact file names.
        version: Toolkit version recorded in compiled artifacts.
    """
    name: str = ""
    version: str = ""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    @abstractmethod
    def devices(self) -> list[Device]:
        """Devices currently available to this backend."""
        ...

    @abstractmethod
    def open_session(self, path: Path, options: Any) -> Session:
        """Open a graph file for evaluation. Raises BackendError on failure."""
        ...

    @abstractmethod
    def compile(self, directives: CompileDirectives) -> Path:
        """Compile a graph ahead of time and write the artifact.

        Writes to directives.output_path (plus any side files) and returns
        that path. Raises BackendError on failure.
        """
        ...

    @abstractmethod
    def compatibility_info(self, artifact_path: Path) -> str | None:
        """Compatibility info this backend declared in a compiled artifact.

        None when the artifact carries no info for this backend.
        """
        ...

    @abstractmethod
    def get_compatibility(self, info: str, devices: list[Device]) -> CompatibilityVerdict:
        """Judge declared compatibility info against a device set. Pure."""
        ...

    @abstractmethod
    def evaluate(self, session: Session, inputs: dict[str, np.ndarray],
                 run_options: dict[str, str] | None = None,
                 capture: bool = False) -> dict[str, np.ndarray]:
        """Run the session once. Raises BackendError on failure.

        capture=True asks the backend to record the execution path and
        reuse it for later calls on the same session.
        """
        ...
