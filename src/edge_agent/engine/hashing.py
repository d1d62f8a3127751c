"""Deterministic embedding engine without external model files."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from hashlib import blake2b
from math import sqrt

from edge_agent.engine.base import GenerateOptions, LoadOptions
from edge_agent.errors import EmbeddingError, GenerationAborted
from edge_agent.types import StreamEvent

_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)


class HashingEmbeddingEngine:
    """Hashed bag-of-words embedding, L2-normalised.

    Used for local tests and as the default embedding role when no embedding
    model artifact is configured. Identical input always yields an identical
    vector. Inputs longer than ``max_input_tokens`` are rejected the same way
    a real model rejects input beyond its context limit.
    """

    def __init__(self, dimension: int = 256, max_input_tokens: int = 2048) -> None:
        self.dimension = dimension
        self.max_input_tokens = max_input_tokens

    async def load(self, artifact_ref: str, options: LoadOptions) -> None:
        del artifact_ref, options  # nothing to load

    def generate(self, prompt: str, options: GenerateOptions) -> AsyncIterator[StreamEvent]:
        raise GenerationAborted("HashingEmbeddingEngine does not generate text", retryable=False)

    async def embed(self, text: str) -> list[float]:
        tokens = [token.lower() for token in _WORD_PATTERN.findall(text)]
        if len(tokens) > self.max_input_tokens:
            raise EmbeddingError(
                f"input has {len(tokens)} tokens, limit is {self.max_input_tokens}"
            )
        return self._embed(tokens)

    def close(self) -> None:
        pass

    def _embed(self, tokens: list[str]) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]
