"""GGUF model adapter via llama-cpp-python.

The dependency is optional (``pip install edge-agent[local]``); it is
imported when an engine is constructed so the rest of the runtime works
without it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import structlog

from edge_agent.engine.base import GenerateOptions, LoadOptions
from edge_agent.engine.tool_calls import ToolCallStreamParser
from edge_agent.errors import EmbeddingError, GenerationAborted, ModelLoadError
from edge_agent.types import StreamEvent

logger = structlog.get_logger(__name__)

_END = object()


class LlamaCppEngine:
    """Runs a local GGUF model for generation or embedding.

    llama.cpp calls are blocking, so loading, every streamed piece and every
    embedding run in a worker thread to keep the event loop responsive.
    """

    def __init__(self, *, embedding: bool = False) -> None:
        try:
            import llama_cpp
        except Exception as exc:  # pragma: no cover - import path is environment-dependent
            raise RuntimeError(
                "llama-cpp-python is not available. Install edge-agent[local]."
            ) from exc

        self._llama_cpp = llama_cpp
        self._embedding = embedding
        self._model: Any | None = None
        self._context_length = 0

    async def load(self, artifact_ref: str, options: LoadOptions) -> None:
        path = Path(artifact_ref)
        if not path.is_file():
            raise ModelLoadError(f"model artifact not found: {artifact_ref}", retryable=False)
        try:
            self._model = await asyncio.to_thread(
                self._llama_cpp.Llama,
                model_path=str(path),
                n_threads=options.thread_count,
                use_mmap=options.use_memory_mapping,
                n_ctx=options.context_length,
                embedding=self._embedding,
                verbose=False,
            )
        except (ValueError, RuntimeError, MemoryError) as exc:
            raise ModelLoadError(f"could not load {artifact_ref}: {exc}") from exc
        self._context_length = options.context_length
        logger.info("llama_model_loaded", path=str(path), embedding=self._embedding)

    async def generate(
        self, prompt: str, options: GenerateOptions
    ) -> AsyncIterator[StreamEvent]:
        model = self._require_model()
        kwargs: dict[str, Any] = {
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stop": options.stop or None,
            "stream": True,
        }
        if options.format == "json":
            kwargs["grammar"] = self._llama_cpp.LlamaGrammar.from_string(
                self._llama_cpp.llama_grammar.JSON_GBNF, verbose=False
            )

        try:
            pieces = await asyncio.to_thread(model.create_completion, prompt, **kwargs)
        except (ValueError, RuntimeError) as exc:
            raise GenerationAborted(str(exc)) from exc

        parser = ToolCallStreamParser()
        while True:
            try:
                chunk = await asyncio.to_thread(next, pieces, _END)
            except (ValueError, RuntimeError) as exc:
                raise GenerationAborted(str(exc)) from exc
            if chunk is _END:
                break
            text = chunk["choices"][0].get("text", "")
            for event in parser.feed(text):
                yield event
        for event in parser.finish():
            yield event

    async def embed(self, text: str) -> list[float]:
        model = self._require_model()
        try:
            token_count = len(model.tokenize(text.encode("utf-8"), add_bos=False))
        except (ValueError, RuntimeError) as exc:
            raise EmbeddingError(f"tokenization failed: {exc}") from exc
        if token_count > self._context_length:
            raise EmbeddingError(
                f"input has {token_count} tokens, context limit is {self._context_length}"
            )
        try:
            vector = await asyncio.to_thread(model.embed, text)
        except (ValueError, RuntimeError) as exc:
            raise EmbeddingError(str(exc)) from exc
        # Models without pooling return one vector per token.
        if vector and isinstance(vector[0], list):
            width = len(vector[0])
            vector = [sum(row[i] for row in vector) / len(vector) for i in range(width)]
        return [float(value) for value in vector]

    def close(self) -> None:
        if self._model is not None:
            close = getattr(self._model, "close", None)
            if close is not None:
                close()
            self._model = None

    def _require_model(self) -> Any:
        if self._model is None:
            raise ModelLoadError("model is not loaded")
        return self._model
