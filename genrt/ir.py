"""Graph IR and the graph file format.

A Graph is a set of single-output nodes wired by tensor name; each node
lists the tensors it reads. Tensors without a producer are either inputs,
bound per evaluation, or constants, which carry the weights. Dims may be
symbolic strings ("batch", "seq") so one graph serves every step of
generation.

Source models and compiled artifacts are both stored as one JSON document:
topology, a string metadata map, and weights, either base64-embedded or
placed in a side data file and located by byte offset.
"""

import base64
import json
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import numpy as np


FORMAT_NAME = "genrt-graph"
FORMAT_VERSION = 1

Dim = int | str


class OpType(Enum):
    """Operations a graph node can perform.

    Numbered in bands of ten by family: unary (1x), binary (2x),
    reductions (3x), matmul (4x), lookups (5x), normalization (6x), and
    fused ops (7x), which only appear in compiled artifacts.
    """
    RELU = 10
    EXP = 11
    TANH = 12
    GELU = 13            # tanh approximation
    SILU = 14

    ADD = 20             # attrs["scalar"] replaces the second input
    SUB = 21
    MUL = 22
    DIV = 23

    SOFTMAX = 30         # attrs["axis"]

    MATMUL = 40          # attrs["transpose_b"]

    EMBEDDING = 50       # [ids, table]

    LAYERNORM = 60       # [x, gamma, beta], attrs["eps"]
    RMSNORM = 61         # [x, weight], attrs["eps"]

    MATMUL_ADD = 70      # [a, b, bias]
    FUSED_BIAS_RELU = 71 # [x, bias]


@dataclass
class TensorInfo:
    """Name, shape and dtype of a graph tensor.

    Only constants carry a `buffer`; inputs and intermediates are bound
    when a session evaluates the graph.
    """
    name: str
    shape: tuple[Dim, ...]
    dtype: str = "float32"
    buffer: np.ndarray | None = None

    @property
    def is_symbolic(self) -> bool:
        return not all(isinstance(d, int) for d in self.shape)

    @property
    def nbytes(self) -> int:
        """Bytes held by the buffer, or implied by a fully static shape."""
        if self.buffer is not None:
            return int(self.buffer.nbytes)
        if self.is_symbolic:
            return 0
        return np.dtype(self.dtype).itemsize * int(np.prod(self.shape, dtype=np.int64))


@dataclass
class Node:
    id: int
    op: OpType
    inputs: list[str]
    output: str
    attrs: dict[str, Any] = field(default_factory=dict)


class Graph:
    """Nodes keyed by id, tensors keyed by name, plus the role lists.

    `inputs` are bound by the caller, `constants` carry weights, and
    `outputs` are returned from evaluation. `metadata` is a string map
    saved with the graph; compiled artifacts keep their backend's
    compatibility stamp in it.
    """

    def __init__(self) -> None:
        self.nodes: dict[int, Node] = {}
        self.tensors: dict[str, TensorInfo] = {}
        self.inputs: list[str] = []
        self.outputs: list[str] = []
        self.constants: list[str] = []
        self.metadata: dict[str, str] = {}

        self._producer: dict[str, int] = {}
        self._consumers: dict[str, list[int]] = defaultdict(list)
        self._next_id = 0
        self._order: list[Node] | None = None

    def _touch(self) -> None:
        self._order = None

    # --- Building ---

    def add_tensor(self, name: str, shape: tuple[Dim, ...], dtype: str = "float32") -> TensorInfo:
        if name in self.tensors:
            raise ValueError(f"Duplicate tensor name: {name}")
        self.tensors[name] = info = TensorInfo(name, tuple(shape), dtype)
        return info

    def add_input(self, name: str, shape: tuple[Dim, ...], dtype: str = "float32") -> TensorInfo:
        self.inputs.append(name)
        return self.add_tensor(name, shape, dtype)

    def add_constant(self, name: str, value: np.ndarray) -> TensorInfo:
        info = self.add_tensor(name, value.shape, str(value.dtype))
        info.buffer = value
        self.constants.append(name)
        return info

    def add_node(self, op: OpType, inputs: list[str], output: str,
                 attrs: dict[str, Any] | None = None) -> Node:
        """Append a node reading `inputs` and writing `output`.

        Every tensor it touches must already be registered.
        """
        unknown = [t for t in [*inputs, output] if t not in self.tensors]
        if unknown:
            raise ValueError(f"{op.name}: tensor '{unknown[0]}' not registered")

        node = Node(self._next_id, op, list(inputs), output, dict(attrs or {}))
        self._next_id += 1
        self.nodes[node.id] = node
        self._producer[output] = node.id
        for name in node.inputs:
            self._consumers[name].append(node.id)
        self._touch()
        return node

    # --- Connectivity ---

    def producer(self, tensor_name: str) -> Node | None:
        """Node writing `tensor_name`; None for inputs and constants."""
        nid = self._producer.get(tensor_name)
        return None if nid is None else self.nodes[nid]

    def consumers(self, tensor_name: str) -> list[Node]:
        return [self.nodes[nid] for nid in self._consumers.get(tensor_name, ())]

    def _toposort(self) -> list[Node]:
        """Kahn's algorithm. Nodes on a cycle are left out of the result."""
        waiting = {nid: sum(t in self._producer for t in node.inputs)
                   for nid, node in self.nodes.items()}
        ready = deque(nid for nid, n in waiting.items() if n == 0)
        order: list[Node] = []
        while ready:
            node = self.nodes[ready.popleft()]
            order.append(node)
            for nid in self._consumers.get(node.output, ()):
                waiting[nid] -= 1
                if not waiting[nid]:
                    ready.append(nid)
        return order

    def __iter__(self) -> Iterator[Node]:
        """Nodes in execution order."""
        order = self._order
        if order is None:
            order = self._toposort()
            if len(order) < len(self.nodes):
                raise ValueError("Graph has a cycle")
        return iter(order)

    # --- Summary ---

    def weight_bytes(self) -> int:
        return sum(self.tensors[name].nbytes for name in self.constants)

    def summary(self) -> str:
        """Multi-line overview: counts, op histogram, input and output signatures."""
        def signature(names: list[str]) -> str:
            parts = []
            for name in names:
                t = self.tensors[name]
                parts.append(f"{name} [{'x'.join(map(str, t.shape))}] {t.dtype}")
            return ", ".join(parts)

        ops = Counter(node.op.name for node in self.nodes.values())
        lines = [
            f"Graph: {len(self.nodes)} nodes, {len(self.tensors)} tensors "
            f"({len(self.inputs)} inputs, {len(self.constants)} constants, "
            f"{len(self.outputs)} outputs, {self.weight_bytes()} weight bytes)",
            "  Ops:     " + ", ".join(f"{op}: {n}" for op, n in ops.most_common()),
        ]
        if self.inputs:
            lines.append("  Inputs:  " + signature(self.inputs))
        if self.outputs:
            lines.append("  Outputs: " + signature(self.outputs))
        return "\n".join(lines)

    # --- Serialization ---

    def to_dict(self) -> dict:
        """Serialize graph structure to a plain dict (no weight data).

        Nodes are emitted in topological order for determinism.
        """
        nodes = [{
            "id": node.id,
            "op": node.op.name,
            "inputs": node.inputs,
            "output": node.output,
            "attrs": node.attrs,
        } for node in self._toposort()]

        tensors = {
            name: {"shape": list(info.shape), "dtype": info.dtype}
            for name, info in self.tensors.items()
        }

        return {
            "format": FORMAT_NAME,
            "version": FORMAT_VERSION,
            "metadata": dict(self.metadata),
            "nodes": nodes,
            "tensors": tensors,
            "inputs": self.inputs,
            "constants": self.constants,
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Graph":
        """Reconstruct a Graph from a dict. Constants have buffer=None."""
        if not isinstance(d, dict) or d.get("format") != FORMAT_NAME:
            found = d.get("format") if isinstance(d, dict) else type(d).__name__
            raise ValueError(f"Not a {FORMAT_NAME} document (found {found!r})")
        if d.get("version", 0) > FORMAT_VERSION:
            raise ValueError(f"Unsupported graph format version {d['version']}")

        graph = cls()
        for name, info in d["tensors"].items():
            graph.add_tensor(name, tuple(info["shape"]), info["dtype"])

        graph.inputs = list(d["inputs"])
        graph.constants = list(d["constants"])
        graph.outputs = list(d["outputs"])
        graph.metadata = dict(d.get("metadata", {}))

        for node_d in d["nodes"]:
            graph.add_node(OpType[node_d["op"]], node_d["inputs"], node_d["output"],
                           node_d.get("attrs"))
        return graph

    def to_bytes(self) -> bytes:
        """Serialize to a self-contained document with all weights embedded."""
        d = self.to_dict()
        d["weights"] = {
            name: {"data": _encode(self.tensors[name].buffer)}
            for name in self.constants
            if self.tensors[name].buffer is not None
        }
        return json.dumps(d, default=_json_default).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes, base_dir: str | Path | None = None) -> "Graph":
        """Parse a serialized graph. External weight files resolve against base_dir."""
        d = json.loads(data.decode("utf-8"))
        graph = cls.from_dict(d)
        graph._load_weights(d.get("weights", {}), Path(base_dir or "."))
        return graph

    def save(self, path: str | Path, embed_weights: bool = True,
             external_data_path: str | None = None,
             size_threshold: int = 0) -> list[Path]:
        """Write the graph to `path`.

        With embed_weights=False, every constant of at least `size_threshold`
        bytes goes to an external data file (default `<name>.data` next to
        `path`; `external_data_path` is relative to path's directory). Small
        constants stay embedded.

        Returns the list of files written, data file first.
        """
        path = Path(path)
        d = self.to_dict()

        data_rel = external_data_path or f"{path.name}.data"
        manifest: dict[str, dict] = {}
        blobs: list[bytes] = []
        offset = 0
        for name in self.constants:
            buf = self.tensors[name].buffer
            if buf is None:
                continue
            if embed_weights or buf.nbytes < size_threshold:
                manifest[name] = {"data": _encode(buf)}
                continue
            raw = np.ascontiguousarray(buf).tobytes()
            manifest[name] = {"file": data_rel, "offset": offset, "size": len(raw)}
            blobs.append(raw)
            offset += len(raw)
        d["weights"] = manifest

        written: list[Path] = []
        if blobs:
            data_path = path.parent / data_rel
            data_path.parent.mkdir(parents=True, exist_ok=True)
            with open(data_path, "wb") as f:
                for blob in blobs:
                    f.write(blob)
            written.append(data_path)

        with open(path, "w") as f:
            json.dump(d, f, indent=1, default=_json_default)
        written.append(path)
        return written

    @classmethod
    def load(cls, path: str | Path) -> "Graph":
        """Load a graph and its weights from `path`."""
        path = Path(path)
        return cls.from_bytes(path.read_bytes(), base_dir=path.parent)

    def _load_weights(self, manifest: dict[str, dict], base_dir: Path) -> None:
        files: dict[str, bytes] = {}
        for name, entry in manifest.items():
            info = self.tensors.get(name)
            if info is None:
                continue
            dtype = np.dtype(info.dtype)
            if "data" in entry:
                raw = base64.b64decode(entry["data"])
                info.buffer = np.frombuffer(raw, dtype=dtype).reshape(info.shape).copy()
                continue
            rel = entry["file"]
            if rel not in files:
                data_path = base_dir / rel
                if not data_path.exists():
                    raise FileNotFoundError(f"External data file missing: {data_path}")
                files[rel] = data_path.read_bytes()
            info.buffer = np.frombuffer(files[rel], dtype=dtype,
                                        offset=entry["offset"],
                                        count=entry["size"] // dtype.itemsize,
                                        ).reshape(info.shape).copy()

    # --- Validation ---

    def validate(self) -> list[str]:
        """Check the graph is loadable and cache its topological order.

        Returns a list of problems; an empty list means the graph can be
        opened by a backend.
        """
        problems = []
        known = self.tensors.keys()

        for node in self.nodes.values():
            missing = [t for t in node.inputs + [node.output] if t not in known]
            if missing:
                problems.append(f"{node.op.name} node {node.id} uses unknown tensors {missing}")

        for role, names in (("input", self.inputs), ("constant", self.constants),
                            ("output", self.outputs)):
            problems += [f"Unknown {role} tensor '{n}'" for n in names if n not in known]

        for name in self.inputs + self.constants:
            if name in self._producer:
                problems.append(f"'{name}' is a graph {'input' if name in self.inputs else 'constant'} "
                                f"but node {self._producer[name]} writes it")
        problems += [f"Output '{n}' has no producer node" for n in self.outputs
                     if n not in self._producer and n not in self.inputs]
        problems += [f"Constant '{n}' has no data" for n in self.constants
                     if n in known and self.tensors[n].buffer is None]

        order = self._toposort()
        if len(order) != len(self.nodes):
            reached = {n.id for n in order}
            problems.append(f"Cycle through nodes {sorted(set(self.nodes) - reached)}")
        elif not problems:
            self._order = order
        return problems

    # --- Mutation ---

    def remove_node(self, node_id: int) -> None:
        """Unlink a node. Its output tensor stays registered until remove_tensor."""
        node = self.nodes.pop(node_id)
        if self._producer.get(node.output) == node_id:
            del self._producer[node.output]
        for name in set(node.inputs):
            readers = self._consumers.get(name)
            if readers:
                self._consumers[name] = [nid for nid in readers if nid != node_id]
        self._touch()

    def remove_tensor(self, name: str) -> None:
        self.tensors.pop(name, None)
        self._consumers.pop(name, None)
        self._producer.pop(name, None)
        self._touch()


def read_metadata(path: str | Path) -> dict[str, str]:
    """Read only the metadata map of a graph file (weights are not decoded)."""
    with open(path) as f:
        d = json.load(f)
    if not isinstance(d, dict) or d.get("format") != FORMAT_NAME:
        raise ValueError(f"{path} is not a {FORMAT_NAME} document")
    metadata = d.get("metadata", {})
    if not isinstance(metadata, dict):
        raise ValueError(f"{path} has a malformed metadata map")
    return {str(k): str(v) for k, v in metadata.items()}


def _encode(buf: np.ndarray) -> str:
    return base64.b64encode(np.ascontiguousarray(buf).tobytes()).decode("ascii")


def _json_default(obj):
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, tuple):
        return list(obj)
    raise TypeError(f"Not JSON serializable: {type(obj)}")
