"""Numpy backend: evaluates graphs with the numpy evaluators in ops.py.

Compilation runs the optimization pipeline for the requested level and
writes the optimized graph as an artifact stamped with compatibility
info: the backend's kernel ABI, the numpy version and the machine
architecture it was compiled on. An artifact from another architecture
or kernel ABI is unusable; one from another numpy release still runs
but should be rebuilt.
"""

import json
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from ..errors import BackendError
from ..ir import Graph, Node, read_metadata
from ..ops import OP_REGISTRY, NumpyEvaluator
from ..passes import PassResult, optimize
from .base import (
    CompatibilityVerdict, CompileDirectives, CompileFlags, Device,
    ExecutionBackend, Session, TensorSpec,
)

logger = logging.getLogger(__name__)

# Bumped whenever evaluator semantics change in a way that invalidates
# previously compiled artifacts.
KERNEL_ABI = 1

METADATA_PREFIX = "ep_compatibility_info."


def _numpy_release(version: str) -> str:
    """Major.minor part of a numpy version string."""
    return ".".join(version.split(".")[:2])


@dataclass
class _Step:
    node: Node
    evaluator: NumpyEvaluator


class NumpySession(Session):
    """A loaded graph plus, after the first captured run, its fixed program."""

    def __init__(self, path: Path, graph: Graph) -> None:
        self.path = path
        self.graph = graph
        self.program: list[_Step] | None = None

    @property
    def input_specs(self) -> dict[str, TensorSpec]:
        return {name: TensorSpec(self.graph.tensors[name].dtype, self.graph.tensors[name].shape)
                for name in self.graph.inputs}

    @property
    def output_specs(self) -> dict[str, TensorSpec]:
        return {name: TensorSpec(self.graph.tensors[name].dtype, self.graph.tensors[name].shape)
                for name in self.graph.outputs}

    def close(self) -> None:
        self.program = None


class NumpyBackend(ExecutionBackend):
    """Backend that dispatches every node to a numpy evaluator."""
    name = "numpy"
    version = f"{KERNEL_ABI}+numpy{np.__version__}"

    def devices(self) -> list[Device]:
        return [Device(kind="cpu", vendor=platform.processor(),
                       name=platform.machine(), driver_version=np.__version__)]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def open_session(self, path: Path, options: Any) -> NumpySession:
        graph = self._load_graph(Path(path))
        logger.debug("Opened %s: %s", path, graph.summary().splitlines()[0])
        return NumpySession(Path(path), graph)

    def evaluate(self, session: NumpySession, inputs: dict[str, np.ndarray],
                 run_options: dict[str, str] | None = None,
                 capture: bool = False) -> dict[str, np.ndarray]:
        graph = session.graph
        values: dict[str, np.ndarray] = {}
        for name in graph.inputs:
            if name not in inputs:
                raise BackendError(self.name, f"Missing input tensor: '{name}'")
            values[name] = self._check_input(graph, name, inputs[name])
        for name in graph.constants:
            values[name] = graph.tensors[name].buffer

        program = session.program
        if program is None:
            program = self._build_program(graph)
            if capture:
                session.program = program
                logger.debug("Captured %d-step program for %s", len(program), session.path)

        tag = (run_options or {}).get("log_tag", "")
        for step in program:
            node = step.node
            args = [values[name] for name in node.inputs]
            try:
                values[node.output] = step.evaluator(args, node.attrs)
            except (ValueError, IndexError, TypeError, FloatingPointError) as e:
                raise BackendError(self.name, f"{node.op.name} (node {node.id}) failed: {e}") from e
            if self.verbose:
                logger.debug("%s[%d] %s -> %s %s", tag, node.id, node.op.name,
                             node.output, values[node.output].shape)

        return {name: values[name] for name in graph.outputs}

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(self, directives: CompileDirectives) -> Path:
        output = Path(directives.output_path)
        if directives.flags & CompileFlags.ERROR_IF_OUTPUT_FILE_EXISTS and output.exists():
            raise BackendError(self.name, f"Output file already exists: {output}")

        if directives.input_model_bytes is not None:
            try:
                graph = Graph.from_bytes(directives.input_model_bytes,
                                         base_dir=directives.input_model_base_dir)
            except (ValueError, KeyError) as e:
                raise BackendError(self.name, f"Cannot parse model buffer: {e}") from e
            graph_errors = graph.validate()
            if graph_errors:
                raise BackendError(self.name, "Invalid graph: " + "; ".join(graph_errors))
        else:
            graph = self._load_graph(Path(directives.input_model_path))

        if directives.flags & CompileFlags.ERROR_IF_NO_NODES_COMPILED and not graph.nodes:
            raise BackendError(self.name, "No nodes were compiled")

        n_before = len(graph.nodes)
        log: list[PassResult] = []
        try:
            optimize(graph, directives.graph_optimization_level, log=log)
        except ValueError as e:
            raise BackendError(self.name, str(e)) from e
        for entry in log:
            logger.debug("%s", entry)

        graph.metadata[METADATA_PREFIX + self.name] = self.compatibility_stamp()
        graph.metadata["ep_context.backend_version"] = self.version
        graph.metadata["ep_context.optimization_level"] = str(directives.graph_optimization_level)
        graph.metadata["ep_context.embed_mode"] = "1" if directives.embed_mode else "0"

        output.parent.mkdir(parents=True, exist_ok=True)
        graph.save(output,
                   embed_weights=directives.embed_mode,
                   external_data_path=directives.external_initializers_file_path,
                   size_threshold=directives.external_initializers_size_threshold)
        logger.info("Compiled %d -> %d nodes into %s", n_before, len(graph.nodes), output)
        return output

    # ------------------------------------------------------------------
    # Compatibility
    # ------------------------------------------------------------------

    def compatibility_stamp(self) -> str:
        """The compatibility info written into artifacts compiled here."""
        return json.dumps({
            "backend": self.name,
            "kernel_abi": KERNEL_ABI,
            "numpy": _numpy_release(np.__version__),
            "machine": platform.machine(),
        }, sort_keys=True)

    def compatibility_info(self, artifact_path: Path) -> str | None:
        try:
            metadata = read_metadata(artifact_path)
        except (OSError, ValueError) as e:
            logger.info("Cannot read compatibility info from %s: %s", artifact_path, e)
            return None
        return metadata.get(METADATA_PREFIX + self.name) or None

    def get_compatibility(self, info: str, devices: list[Device]) -> CompatibilityVerdict:
        try:
            stamp = json.loads(info)
        except ValueError:
            return CompatibilityVerdict.NOT_SUPPORTED
        if not isinstance(stamp, dict) or stamp.get("backend") != self.name:
            return CompatibilityVerdict.NOT_SUPPORTED
        if stamp.get("kernel_abi") != KERNEL_ABI:
            return CompatibilityVerdict.NOT_SUPPORTED

        cpus = [d for d in devices if d.kind == "cpu" and d.name == stamp.get("machine")]
        if not cpus:
            return CompatibilityVerdict.NOT_SUPPORTED
        if any(_numpy_release(d.driver_version) != stamp.get("numpy") for d in cpus):
            return CompatibilityVerdict.PREFER_RECOMPILATION
        return CompatibilityVerdict.OPTIMAL

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_graph(self, path: Path) -> Graph:
        try:
            graph = Graph.load(path)
        except (OSError, ValueError, KeyError) as e:
            raise BackendError(self.name, f"Cannot load graph {path}: {e}") from e
        errors = graph.validate()
        if errors:
            raise BackendError(self.name, f"Invalid graph {path}: " + "; ".join(errors))
        return graph

    def _build_program(self, graph: Graph) -> list[_Step]:
        program = []
        for node in graph:
            op_def = OP_REGISTRY.get(node.op)
            if op_def is None:
                raise BackendError(self.name, f"No evaluator for {node.op.name}")
            expected = op_def.n_inputs - (1 if "scalar" in node.attrs else 0)
            if len(node.inputs) != expected:
                raise BackendError(self.name,
                    f"{node.op.name} (node {node.id}) takes {expected} inputs, "
                    f"got {len(node.inputs)}")
            program.append(_Step(node, op_def.evaluator))
        return program

    def _check_input(self, graph: Graph, name: str, value: np.ndarray) -> np.ndarray:
        info = graph.tensors[name]
        value = np.asarray(value)
        if value.ndim != len(info.shape):
            raise BackendError(self.name,
                f"Input '{name}' has rank {value.ndim}, expected {len(info.shape)}")
        for actual, declared in zip(value.shape, info.shape):
            if isinstance(declared, int) and declared != actual:
                raise BackendError(self.name,
                    f"Input '{name}' has shape {value.shape}, expected {info.shape}")
        return value.astype(info.dtype, copy=False)
