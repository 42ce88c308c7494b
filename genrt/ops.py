"""Op definitions: per-op metadata unified in one place.

Each OpDef describes what the runtime needs to know about an op on the
Python side: how to evaluate it with numpy and how many inputs it takes.
Evaluators follow the return-a-new-array contract, so output shapes
follow the inputs and symbolic dims need no planning step.

Adding a new op: define an OpDef and add it to OP_REGISTRY.
"""

from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from .ir import OpType


# Numpy evaluator: (inputs, attrs) -> output array
NumpyEvaluator = Callable[[list[np.ndarray], dict[str, Any]], np.ndarray]


@dataclass
class OpDef:
    """Python-side definition of an op type.

    Fields:
        evaluator: Numpy implementation.
        n_inputs: Expected input count, checked when a graph is opened.
    """
    evaluator: NumpyEvaluator
    n_inputs: int


def _eval_matmul(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    b = np.swapaxes(ins[1], -2, -1) if attrs.get("transpose_b") else ins[1]
    return np.matmul(ins[0], b)


def _eval_softmax(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x = ins[0]
    axis = attrs.get("axis", -1)
    shifted = x - np.max(x, axis=axis, keepdims=True)
    e = np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def _eval_gelu(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x = ins[0]
    inner = 0.7978845608 * (x + 0.044715 * np.power(x, 3))
    return 0.5 * x * (1.0 + np.tanh(inner))


def _eval_layernorm(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x, gamma, beta = ins[0], ins[1], ins[2]
    eps = attrs.get("eps", 1e-5)
    mean = np.mean(x, axis=-1, keepdims=True)
    var = np.var(x, axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + eps) * gamma + beta


def _eval_rmsnorm(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x, weight = ins[0], ins[1]
    eps = attrs.get("eps", 1e-5)
    rms = np.sqrt(np.mean(x ** 2, axis=-1, keepdims=True) + eps)
    return (x / rms) * weight


def _eval_embedding(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    ids, table = ins[0], ins[1]
    return table[ids.astype(np.intp)]


def _eval_matmul_add(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    return _eval_matmul(ins[:2], attrs) + ins[2]


def _binary(fn: Callable) -> NumpyEvaluator:
    def evaluate(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
        rhs = attrs["scalar"] if "scalar" in attrs else ins[1]
        return fn(ins[0], rhs)
    return evaluate


OP_REGISTRY: dict[OpType, OpDef] = {
    OpType.RELU: OpDef(lambda ins, a: np.maximum(ins[0], 0), 1),
    OpType.EXP: OpDef(lambda ins, a: np.exp(ins[0]), 1),
    OpType.TANH: OpDef(lambda ins, a: np.tanh(ins[0]), 1),
    OpType.GELU: OpDef(_eval_gelu, 1),
    OpType.SILU: OpDef(lambda ins, a: ins[0] / (1.0 + np.exp(-ins[0])), 1),

    OpType.ADD: OpDef(_binary(np.add), 2),
    OpType.SUB: OpDef(_binary(np.subtract), 2),
    OpType.MUL: OpDef(_binary(np.multiply), 2),
    OpType.DIV: OpDef(_binary(np.divide), 2),

    OpType.SOFTMAX: OpDef(_eval_softmax, 1),
    OpType.MATMUL: OpDef(_eval_matmul, 2),
    OpType.EMBEDDING: OpDef(_eval_embedding, 2),
    OpType.LAYERNORM: OpDef(_eval_layernorm, 3),
    OpType.RMSNORM: OpDef(_eval_rmsnorm, 2),

    OpType.MATMUL_ADD: OpDef(_eval_matmul_add, 3),
    OpType.FUSED_BIAS_RELU: OpDef(lambda ins, a: np.maximum(ins[0] + ins[1], 0), 2),
}
