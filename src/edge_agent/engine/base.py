"""Model engine contract consumed by the runtime.

The inference engine itself is external. Anything that can load a model
artifact, stream generated output and embed text can be plugged in by
satisfying :class:`ModelEngine`.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from edge_agent.types import StreamEvent


class LoadOptions(BaseModel):
    thread_count: int = Field(default=4, ge=1)
    use_memory_mapping: bool = True
    context_length: int = Field(default=4096, ge=128)


class GenerateOptions(BaseModel):
    format: Literal["text", "json"] = "text"
    max_tokens: int = Field(default=512, ge=1)
    temperature: float = Field(default=0.2, ge=0.0)
    stop: list[str] = Field(default_factory=list)


class ModelEngine(Protocol):
    """Minimal engine contract.

    ``generate`` returns a finite, non-restartable stream. Continuing after a
    tool result is a new ``generate`` call whose prompt carries the prior
    context plus the result.
    """

    async def load(self, artifact_ref: str, options: LoadOptions) -> None:
        """Load the artifact or raise ``ModelLoadError``."""

    def generate(self, prompt: str, options: GenerateOptions) -> AsyncIterator[StreamEvent]:
        """Stream text fragments and tool invocation requests."""

    async def embed(self, text: str) -> list[float]:
        """Embed text or raise ``EmbeddingError`` when it is too long."""

    def close(self) -> None:
        """Release model resources."""
