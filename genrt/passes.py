"""Graph rewrites applied while compiling a model.

Each pass takes a Graph, rewrites it in place, and reports whether it
changed anything. The graph optimization level picks what runs:

    0   nothing; the artifact holds the source graph
    1   dead code elimination
    2   level 1 plus bias/activation and matmul/bias fusion
    99  level 2 repeated until a full sweep changes nothing
"""

from dataclasses import dataclass
from typing import Callable

from .ir import Graph, OpType

Pass = Callable[[Graph], bool]

OPTIMIZATION_LEVELS = (0, 1, 2, 99)


@dataclass
class PassResult:
    """One pass application, kept for compile logs."""
    name: str
    changed: bool
    nodes_before: int
    nodes_after: int

    def __str__(self) -> str:
        if not self.changed:
            return f"[pass] {self.name}: no changes"
        return (f"[pass] {self.name}: {self.nodes_before} -> {self.nodes_after} nodes "
                f"({self.nodes_after - self.nodes_before:+d})")


def _sweep(graph: Graph, passes: list[Pass], log: list[PassResult] | None) -> bool:
    """Apply each pass once; True if any of them changed the graph."""
    any_changed = False
    for p in passes:
        before = len(graph.nodes)
        changed = p(graph)
        any_changed |= changed
        if log is not None:
            log.append(PassResult(p.__name__, changed, before, len(graph.nodes)))
    return any_changed


def run_until_stable(graph: Graph, passes: list[Pass],
                     max_iterations: int = 10,
                     log: list[PassResult] | None = None) -> int:
    """Sweep until nothing changes. Returns the number of sweeps made."""
    for sweep in range(1, max_iterations + 1):
        if not _sweep(graph, passes, log):
            return sweep
    return max_iterations


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------

def eliminate_dead_code(graph: Graph) -> bool:
    """Drop nodes and constants nothing reads, walking back from the outputs."""
    live = set(graph.outputs)
    keep: set[int] = set()
    for node in reversed(list(graph)):
        if node.output in live:
            keep.add(node.id)
            live.update(node.inputs)

    dead_nodes = [nid for nid in graph.nodes if nid not in keep]
    for nid in dead_nodes:
        output = graph.nodes[nid].output
        graph.remove_node(nid)
        graph.remove_tensor(output)

    dead_constants = [name for name in graph.constants if name not in live]
    for name in dead_constants:
        graph.constants.remove(name)
        graph.remove_tensor(name)

    return bool(dead_nodes or dead_constants)


def _sole_consumer(graph: Graph, tensor: str, op: OpType):
    """Return the only consumer of `tensor` if it has the given op, else None."""
    consumers = graph.consumers(tensor)
    if len(consumers) != 1 or consumers[0].op != op:
        return None
    if tensor in graph.outputs:
        return None
    return consumers[0]


def _replace_with(graph: Graph, first, second, op: OpType, inputs: list[str],
                  attrs: dict) -> None:
    """Replace the chain first -> second with a single node writing second.output."""
    graph.remove_node(second.id)
    graph.remove_node(first.id)
    graph.remove_tensor(first.output)
    graph.add_node(op, inputs, second.output, attrs)


def fuse_matmul_add(graph: Graph) -> bool:
    """MATMUL followed by ADD of a constant bias → MATMUL_ADD."""
    changed = False
    for node in list(graph):
        if node.id not in graph.nodes or node.op != OpType.MATMUL:
            continue
        add = _sole_consumer(graph, node.output, OpType.ADD)
        if add is None or "scalar" in add.attrs:
            continue
        bias = add.inputs[1] if add.inputs[0] == node.output else add.inputs[0]
        if bias not in graph.constants:
            continue
        _replace_with(graph, node, add, OpType.MATMUL_ADD,
                      node.inputs[:2] + [bias], dict(node.attrs))
        changed = True
    return changed


def fuse_bias_relu(graph: Graph) -> bool:
    """ADD of a constant bias followed by RELU → FUSED_BIAS_RELU."""
    changed = False
    for node in list(graph):
        if node.id not in graph.nodes or node.op != OpType.ADD or "scalar" in node.attrs:
            continue
        relu = _sole_consumer(graph, node.output, OpType.RELU)
        if relu is None or node.inputs[1] not in graph.constants:
            continue
        _replace_with(graph, node, relu, OpType.FUSED_BIAS_RELU,
                      list(node.inputs), {})
        changed = True
    return changed


EXTENDED_PIPELINE: list[Pass] = [eliminate_dead_code, fuse_bias_relu, fuse_matmul_add]


def optimize(graph: Graph, level: int,
             log: list[PassResult] | None = None) -> None:
    """Run the pass pipeline selected by a graph optimization level."""
    if level not in OPTIMIZATION_LEVELS:
        raise ValueError(f"Unknown graph optimization level {level} "
                         f"(expected one of {OPTIMIZATION_LEVELS})")
    if level == 1:
        _sweep(graph, [eliminate_dead_code], log)
    elif level == 2:
        _sweep(graph, EXTENDED_PIPELINE, log)
    elif level == 99:
        run_until_stable(graph, EXTENDED_PIPELINE, log=log)
