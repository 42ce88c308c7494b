"""OpDef registry tests: every op type has a numpy evaluator."""

import numpy as np
import pytest

from genrt.ir import OpType
from genrt.ops import OP_REGISTRY


# ---------------------------------------------------------------------------
# Registry coverage
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("op", list(OpType), ids=[op.name for op in OpType])
def test_op_registered(op):
    assert op in OP_REGISTRY, f"{op.name} missing from OP_REGISTRY"


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------

class TestEvaluators:

    def test_add(self):
        a = np.array([1.0, 2.0], dtype=np.float32)
        out = OP_REGISTRY[OpType.ADD].evaluator([a, a], {})
        np.testing.assert_array_equal(out, [2.0, 4.0])

    def test_binary_scalar(self):
        a = np.array([1.0, 2.0], dtype=np.float32)
        out = OP_REGISTRY[OpType.MUL].evaluator([a], {"scalar": 3.0})
        np.testing.assert_array_equal(out, [3.0, 6.0])

    @pytest.mark.parametrize("op,expected", [
        (OpType.EXP, np.exp([0.0, 1.0, -2.0])),
        (OpType.SILU, np.array([0.0, 1.0, -2.0]) / (1.0 + np.exp(-np.array([0.0, 1.0, -2.0])))),
        (OpType.TANH, np.tanh([0.0, 1.0, -2.0])),
        (OpType.RELU, [0.0, 1.0, 0.0]),
    ])
    def test_unary(self, op, expected):
        x = np.array([0.0, 1.0, -2.0])
        np.testing.assert_allclose(OP_REGISTRY[op].evaluator([x], {}), expected, rtol=1e-6)

    def test_sub_and_div(self):
        a = np.array([6.0, 8.0])
        b = np.array([2.0, 4.0])
        np.testing.assert_array_equal(OP_REGISTRY[OpType.SUB].evaluator([a, b], {}), [4.0, 4.0])
        np.testing.assert_array_equal(OP_REGISTRY[OpType.DIV].evaluator([a, b], {}), [3.0, 2.0])
        np.testing.assert_array_equal(OP_REGISTRY[OpType.DIV].evaluator([a], {"scalar": 2.0}),
                                      [3.0, 4.0])

    def test_matmul_transpose_b(self):
        a = np.arange(6, dtype=np.float32).reshape(2, 3)
        b = np.arange(12, dtype=np.float32).reshape(4, 3)
        out = OP_REGISTRY[OpType.MATMUL].evaluator([a, b], {"transpose_b": True})
        np.testing.assert_allclose(out, a @ b.T)

    def test_softmax_rows_sum_to_one(self):
        x = np.random.default_rng(0).standard_normal((3, 5)).astype(np.float32)
        out = OP_REGISTRY[OpType.SOFTMAX].evaluator([x], {})
        np.testing.assert_allclose(out.sum(axis=-1), np.ones(3), rtol=1e-6)

    def test_embedding_gathers_rows(self):
        table = np.arange(12, dtype=np.float32).reshape(4, 3)
        out = OP_REGISTRY[OpType.EMBEDDING].evaluator([np.array([[2, 0]]), table], {})
        np.testing.assert_array_equal(out, [[table[2], table[0]]])

    def test_layernorm(self):
        x = np.random.default_rng(1).standard_normal((2, 8)).astype(np.float32)
        out = OP_REGISTRY[OpType.LAYERNORM].evaluator(
            [x, np.ones(8, np.float32), np.zeros(8, np.float32)], {})
        np.testing.assert_allclose(out.mean(axis=-1), 0, atol=1e-5)

    def test_rmsnorm(self):
        x = np.full((1, 4), 2.0, dtype=np.float32)
        out = OP_REGISTRY[OpType.RMSNORM].evaluator([x, np.ones(4, np.float32)], {"eps": 0.0})
        np.testing.assert_allclose(out, np.ones((1, 4)))

    def test_fused_matches_unfused(self):
        rng = np.random.default_rng(2)
        a, w = rng.standard_normal((2, 4)), rng.standard_normal((4, 4))
        bias = rng.standard_normal(4)
        fused = OP_REGISTRY[OpType.MATMUL_ADD].evaluator([a, w, bias], {})
        np.testing.assert_allclose(fused, a @ w + bias)
        relu = OP_REGISTRY[OpType.FUSED_BIAS_RELU].evaluator([a, bias], {})
        np.testing.assert_allclose(relu, np.maximum(a + bias, 0))
