"""Execution state: one generation run bound to a model's sessions.

A State owns the named input/output buffers of one run and advances
the graph one step at a time:

    Created -> (inputs bound) -> Running (step, step, ...) -> Finalized | Rewound

The first step may ask the backend to capture the execution path
(`enable_graph_capture`); later steps reuse it. A failed evaluation
terminates the State: every later step raises EvaluationError without
touching the backend again.

States are not thread-safe. Serialize calls on one State; separate
States of the same Model may run on separate threads if the backend
allows it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from .backends.base import Session
from .config import GraphConfig, SessionOptions
from .errors import BackendError, EvaluationError

logger = logging.getLogger(__name__)


class State(ABC):
    """Base class for execution states.

    Attributes:
        model: The Model whose sessions this State evaluates.
        params: Generation parameters, fixed for the State's lifetime.
        inputs: Buffers bound for the most recent step, by tensor name.
        outputs: Buffers produced by the most recent step, by tensor name.
        first_run: True until a step has completed.
        session_terminated: Set once an evaluation fails.
    """

    def __init__(self, model, params: Any) -> None:
        self.model = model
        self.params = params
        self.inputs: dict[str, np.ndarray] = {}
        self.outputs: dict[str, np.ndarray] = {}
        self.run_options: dict[str, str] = {}
        self.first_run = True
        self.session_terminated = False

    @abstractmethod
    def step(self, total_length: int, next_tokens: np.ndarray,
             next_indices: np.ndarray | None = None) -> np.ndarray:
        """Advance by one evaluation and return last-position logits.

        Args:
            total_length: Sequence length once next_tokens are appended.
            next_tokens: New tokens, (batch, n) or flat (batch * n,).
            next_indices: Optional row order to apply to the history first
                (beam reordering).

        Returns:
            Float logits of shape (batch, vocab). Valid until the next step.
        """
        ...

    def rewind_to(self, index: int) -> None:
        """Discard history after `index`. No-op unless a variant keeps history."""

    def finalize(self, current_length: int) -> None:
        """Release per-run resources. No-op by default."""

    def clear_io(self) -> None:
        """Drop all bound buffers. The State stays usable for a new prompt."""
        self.inputs.clear()
        self.outputs.clear()

    def get_input(self, name: str) -> np.ndarray | None:
        return self.inputs.get(name)

    def get_output(self, name: str) -> np.ndarray | None:
        return self.outputs.get(name)

    def set_run_option(self, key: str, value: str) -> None:
        self.run_options[key] = value

    def set_run_options(self, options: dict[str, str]) -> None:
        for key, value in options.items():
            self.set_run_option(key, value)

    def dump_inputs(self) -> None:
        _dump("input", self.inputs)

    def dump_outputs(self) -> None:
        _dump("output", self.outputs)

    def _run(self, session: Session, inputs: dict[str, np.ndarray],
             session_options: SessionOptions) -> dict[str, np.ndarray]:
        """Evaluate one session, terminating the State on failure."""
        if self.session_terminated:
            raise EvaluationError(
                "State was terminated by an earlier evaluation failure")
        capture = self.first_run and session_options.enable_graph_capture
        try:
            return self.model.backend.evaluate(session, inputs, self.run_options, capture=capture)
        except BackendError as e:
            self.session_terminated = True
            logger.error("Evaluation of %s failed; terminating state: %s", session.path, e)
            raise EvaluationError(str(e)) from e


class DecoderState(State):
    """State of a decoder that recomputes over the full token history.

    The history is the (batch, length) int64 array of every token fed so
    far; rewind_to truncates it and next_indices reorders its rows.
    """

    def __init__(self, model, params: Any) -> None:
        super().__init__(model, params)
        batch = getattr(params, "batch_size", 1)
        self.tokens = np.zeros((batch, 0), dtype=np.int64)

    def step(self, total_length: int, next_tokens: np.ndarray,
             next_indices: np.ndarray | None = None) -> np.ndarray:
        if self.session_terminated:
            raise EvaluationError(
                "State was terminated by an earlier evaluation failure")
        is_prompt = self.tokens.shape[1] == 0
        tokens = self._append(total_length, next_tokens, next_indices)
        self._evaluate(tokens, is_prompt)
        self.first_run = False
        return self._logits()

    def rewind_to(self, index: int) -> None:
        if index < 0 or index > self.tokens.shape[1]:
            raise ValueError(
                f"Cannot rewind to {index}: history holds {self.tokens.shape[1]} tokens")
        self.tokens = self.tokens[:, :index]
        self.outputs.clear()

    def clear_io(self) -> None:
        super().clear_io()
        self.tokens = np.zeros((self.tokens.shape[0], 0), dtype=np.int64)

    # ------------------------------------------------------------------

    def _append(self, total_length: int, next_tokens: np.ndarray,
                next_indices: np.ndarray | None) -> np.ndarray:
        batch = self.tokens.shape[0]
        new = np.asarray(next_tokens, dtype=np.int64).reshape(batch, -1)
        history = self.tokens
        if next_indices is not None:
            history = history[np.asarray(next_indices, dtype=np.intp)]
        if history.shape[1] + new.shape[1] != total_length:
            raise ValueError(
                f"total_length {total_length} does not match history "
                f"{history.shape[1]} + {new.shape[1]} new tokens")
        self.tokens = np.concatenate([history, new], axis=1)
        return self.tokens

    def _bind(self, graph: GraphConfig, session: Session,
              tokens: np.ndarray, available: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        """Inputs for one session: token-derived tensors, then earlier outputs."""
        derived = {
            graph.input_name("input_ids"): lambda: tokens,
            graph.input_name("attention_mask"): lambda: np.ones_like(tokens),
            graph.input_name("position_ids"): lambda: np.broadcast_to(
                np.arange(tokens.shape[1], dtype=np.int64), tokens.shape).copy(),
        }
        inputs = {}
        for name in session.input_specs:
            if name in derived:
                inputs[name] = derived[name]()
            elif name in available:
                inputs[name] = available[name]
            else:
                raise EvaluationError(f"No value bound for input '{name}' of {session.path}")
        return inputs

    def _evaluate(self, tokens: np.ndarray, is_prompt: bool) -> None:
        graph = self.model.graph_config
        session = self.model.session
        self.inputs = self._bind(graph, session, tokens, {})
        self.outputs = self._run(session, self.inputs, self.model.primary_session_options())

    def _logits(self) -> np.ndarray:
        name = self.model.graph_config.output_name("logits")
        if name not in self.outputs:
            raise EvaluationError(f"Model produced no '{name}' output")
        logits = self.outputs[name]
        if logits.ndim == 3:
            logits = logits[:, -1, :]
        return logits.astype(np.float32, copy=False)


class PipelineState(DecoderState):
    """State of a pipeline model: sub-graphs run in order every step.

    Outputs of earlier sub-graphs feed later ones by tensor name. A
    sub-graph with run_on_prompt (or run_on_token_gen) false is skipped
    for that phase; its outputs from the last time it ran stay bound.
    """

    def _evaluate(self, tokens: np.ndarray, is_prompt: bool) -> None:
        values = dict(self.outputs)
        self.inputs = {}
        for sub in self.model.graph_config.pipeline:
            runs = sub.run_on_prompt if is_prompt else sub.run_on_token_gen
            if not runs:
                logger.debug("Skipping sub-graph '%s' (%s)", sub.model_id,
                             "prompt" if is_prompt else "token generation")
                continue
            session = self.model.sessions[sub.model_id]
            inputs = self._bind(sub, session, tokens, values)
            self.inputs.update(inputs)
            outputs = self._run(session, inputs, self.model.get_session_options(sub.model_id))
            values.update(outputs)
        self.outputs = values


def _dump(kind: str, buffers: dict[str, np.ndarray]) -> None:
    for name, value in buffers.items():
        logger.debug("%s %s: shape=%s dtype=%s", kind, name, value.shape, value.dtype)
