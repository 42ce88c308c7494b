"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically; fixtures defined here are
available to all test files in this directory without explicit imports.
"""

import json
from pathlib import Path

import numpy as np
import pytest

from genrt.backends.base import CompatibilityVerdict
from genrt.backends.numpy_backend import NumpyBackend, NumpySession
from genrt.builders import write_decoder_model, write_pipeline_model
from genrt.config import CONFIG_FILENAME, Config
from genrt.env import _reset_environment
from genrt.errors import BackendError
from genrt.tokenizer import Tokenizer


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeBackend(NumpyBackend):
    """NumpyBackend with a canned compatibility verdict and call counters.

    Compiles and evaluates for real, so artifacts on disk are genuine;
    only the verdict is scripted. fail_evaluate_at=N makes the N-th
    evaluate call (1-based) and every later one raise BackendError.
    """
    name = "fake"

    def __init__(self, verdict=CompatibilityVerdict.OPTIMAL, verbose=False):
        super().__init__(verbose=verbose)
        self.verdict = verdict
        self.compile_calls = 0
        self.evaluate_calls = 0
        self.verdict_queries = 0
        self.evaluated: list[Path] = []
        self.fail_compile = False
        self.fail_evaluate_at: int | None = None

    def compile(self, directives):
        self.compile_calls += 1
        if self.fail_compile:
            raise BackendError(self.name, "simulated compile failure")
        return super().compile(directives)

    def get_compatibility(self, info, devices):
        self.verdict_queries += 1
        return self.verdict

    def evaluate(self, session, inputs, run_options=None, capture=False):
        self.evaluate_calls += 1
        self.evaluated.append(session.path)
        if self.fail_evaluate_at is not None and self.evaluate_calls >= self.fail_evaluate_at:
            raise BackendError(self.name, "simulated device loss")
        return super().evaluate(session, inputs, run_options, capture)


class CharTokenizer(Tokenizer):
    """Maps lowercase letters onto token ids 1..26."""

    def encode(self, text):
        return [ord(c) - ord("a") + 1 for c in text if c.isalpha()]

    def decode(self, tokens):
        return "".join(chr(ord("a") + t - 1) for t in tokens if 1 <= t <= 26)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fresh_environment():
    _reset_environment()
    yield
    _reset_environment()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def np_backend():
    return NumpyBackend()


@pytest.fixture
def model_dir(tmp_path):
    """A decoder model directory with compilation enabled, embed mode off."""
    return write_decoder_model(
        tmp_path / "model",
        compile_options={"enable_ep_context": True, "ep_context_embed_mode": False},
        max_length=12,
    )


@pytest.fixture
def plain_model_dir(tmp_path):
    """A decoder model directory without compile options."""
    return write_decoder_model(tmp_path / "plain", max_length=12)


@pytest.fixture
def pipeline_dir(tmp_path):
    """A two-graph pipeline model; only the head sub-graph compiles."""
    return write_pipeline_model(
        tmp_path / "pipeline",
        compile_options={"head": {"enable_ep_context": True}},
        max_length=12,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def artifact_path(model_dir, backend_name="fake", stem="model"):
    return Path(model_dir) / "contexts" / f"{stem}_{backend_name}_ctx.onnx"


def listing(root) -> dict[str, float]:
    """Every file under root mapped to its mtime."""
    return {str(p.relative_to(root)): p.stat().st_mtime_ns
            for p in Path(root).rglob("*") if p.is_file()}


def set_compile_options(model_dir, **options) -> Config:
    """Rewrite the decoder compile options in a model directory's config."""
    path = Path(model_dir) / CONFIG_FILENAME
    with open(path) as f:
        document = json.load(f)
    document["model"]["decoder"]["compile_options"] = options
    with open(path, "w") as f:
        json.dump(document, f)
    return Config.load(model_dir)


def run_graph(graph, inputs, backend=None):
    """Evaluate an in-memory graph once."""
    backend = backend or NumpyBackend()
    graph.validate()
    return backend.evaluate(NumpySession(Path("<memory>"), graph), inputs)


def prompt(batch=1, length=3, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(1, 20, size=(batch, length)).astype(np.int64)
