"""Tokenizer interface.

Tokenization is supplied by the caller: a Model builds its tokenizer
through a factory passed at construction, `factory(config) -> Tokenizer`.
"""

from abc import ABC, abstractmethod
from typing import Callable

import numpy as np

from .config import Config


class Tokenizer(ABC):
    """Encodes text into token ids and back."""

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        ...

    @abstractmethod
    def decode(self, tokens: list[int]) -> str:
        ...

    def encode_batch(self, texts: list[str], pad_token_id: int = 0) -> np.ndarray:
        """Encode several texts into one left-padded (batch, seq) int64 array."""
        encoded = [self.encode(t) for t in texts]
        width = max((len(e) for e in encoded), default=0)
        out = np.full((len(encoded), width), pad_token_id, dtype=np.int64)
        for row, tokens in enumerate(encoded):
            if tokens:
                out[row, width - len(tokens):] = tokens
        return out

    def decode_batch(self, sequences: np.ndarray) -> list[str]:
        return [self.decode([int(t) for t in row]) for row in sequences]


TokenizerFactory = Callable[[Config], Tokenizer]
