"""Token-by-token generation driver.

    params = GeneratorParams.from_config(model.config)
    generator = Generator(model, params)
    generator.append_tokens(prompt_ids)
    while not generator.is_done():
        generator.generate_next_token()

Next tokens are chosen greedily (argmax over the logits); sampling and
beam search are left to callers that read the logits themselves.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from .config import Config
from .errors import EvaluationError

logger = logging.getLogger(__name__)


@dataclass
class GeneratorParams:
    """Generation parameters, fixed once a Generator is created.

    max_length of 0 means no limit beyond the EOS tokens.
    """
    max_length: int = 0
    batch_size: int = 1
    eos_token_ids: list[int] = field(default_factory=list)
    pad_token_id: int = 0

    @classmethod
    def from_config(cls, config: Config) -> "GeneratorParams":
        model, search = config.model, config.search
        return cls(
            max_length=search.max_length or model.context_length,
            batch_size=search.batch_size,
            eos_token_ids=list(model.eos_token_id),
            pad_token_id=model.pad_token_id,
        )


class Generator:
    """Feeds tokens into a model State and collects the sequences."""

    def __init__(self, model, params: GeneratorParams) -> None:
        self.model = model
        self.params = params
        self.state = model.create_state(params)
        self.sequences = np.zeros((params.batch_size, 0), dtype=np.int64)
        # Tokens appended but not yet fed to the State
        self._pending = np.zeros((params.batch_size, 0), dtype=np.int64)
        self._finished = np.zeros(params.batch_size, dtype=bool)
        self._terminated = False

    def append_tokens(self, tokens: np.ndarray) -> None:
        tokens = np.asarray(tokens, dtype=np.int64)
        if tokens.ndim == 1:
            tokens = tokens.reshape(self.params.batch_size, -1)
        if tokens.shape[0] != self.params.batch_size:
            raise ValueError(
                f"Expected {self.params.batch_size} rows of tokens, got {tokens.shape[0]}")
        length = self.sequences.shape[1] + tokens.shape[1]
        if self.params.max_length and length > self.params.max_length:
            raise ValueError(f"Sequence length {length} exceeds max_length {self.params.max_length}")
        self.sequences = np.concatenate([self.sequences, tokens], axis=1)
        self._pending = np.concatenate([self._pending, tokens], axis=1)

    def generate_next_token(self) -> None:
        """Run one step and append the greedy choice for every row.

        Raises:
            EvaluationError: The step failed. The generator is done afterwards.
        """
        if self.is_done():
            raise RuntimeError("Generation is already done")
        if self._pending.shape[1] == 0:
            raise RuntimeError("append_tokens() must be called before the first step")

        try:
            logits = self.state.step(self.sequences.shape[1], self._pending)
        except EvaluationError:
            self._terminated = True
            raise

        next_tokens = np.argmax(logits, axis=-1).astype(np.int64)
        next_tokens[self._finished] = self.params.pad_token_id
        if self.params.eos_token_ids:
            self._finished |= np.isin(next_tokens, self.params.eos_token_ids)

        self._pending = next_tokens[:, None]
        self.sequences = np.concatenate([self.sequences, self._pending], axis=1)

    def is_done(self) -> bool:
        if self._terminated or bool(self._finished.all()):
            return True
        return bool(self.params.max_length) and self.sequences.shape[1] >= self.params.max_length

    def get_next_tokens(self) -> np.ndarray:
        return self.sequences[:, -1]

    def get_sequence(self, index: int) -> np.ndarray:
        return self.sequences[index]

    def rewind_to(self, length: int) -> None:
        """Truncate every sequence to `length` tokens."""
        if length < 0 or length > self.sequences.shape[1]:
            raise ValueError(f"Cannot rewind to {length}: sequences hold "
                             f"{self.sequences.shape[1]} tokens")
        # The last kept token becomes the input of the next step
        fed = min(max(length - 1, 0), self.sequences.shape[1] - self._pending.shape[1])
        self.sequences = self.sequences[:, :length]
        self.state.rewind_to(fed)
        self._pending = self.sequences[:, fed:]
        self._finished[:] = False
        logger.debug("Rewound generator to %d tokens", length)
