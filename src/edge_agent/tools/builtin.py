"""Side-effect free tools shipped with the runtime."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from edge_agent.retrieval.pipeline import RetrievalPipeline
from edge_agent.tools.registry import ToolRegistry, ToolSpec

SEARCH_TOOL = "search_documents"
NO_RESULTS = "NO_RESULTS"

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+")


class SearchToolInput(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=3, ge=1, le=10)
    source: str | None = None


class SummarizeToolInput(BaseModel):
    text: str = Field(min_length=1)
    max_sentences: int = Field(default=3, ge=1, le=10)


def register_builtin_tools(registry: ToolRegistry, retrieval: RetrievalPipeline) -> None:
    """Register the default tool set.

    Tools:
    - `search_documents`: nearest-chunk search over the local corpus, one
      `[chunk-id] score=... snippet` line per hit.
    - `summarize_text`: keeps the first sentences of a passage.
    """

    async def _search(input_data: SearchToolInput) -> str:
        metadata_filter = {"source": input_data.source} if input_data.source else None
        hits = await retrieval.retrieve(
            input_data.query, input_data.top_k, metadata_filter=metadata_filter
        )
        lines = []
        for hit in hits:
            snippet = _truncate(hit.chunk.text.replace("\n", " "), 220)
            lines.append(f"[{hit.chunk.chunk_id}] score={hit.score:.4f} {snippet}")
        return "\n".join(lines) if lines else NO_RESULTS

    def _summarize(input_data: SummarizeToolInput) -> str:
        sentences = [
            part.strip() for part in _SENTENCE_SPLIT.split(input_data.text) if part.strip()
        ]
        return " ".join(sentences[: input_data.max_sentences])

    registry.register(
        ToolSpec(
            name=SEARCH_TOOL,
            description="Search the local document corpus and return cited chunks.",
            args_schema=SearchToolInput,
            handler=_search,
            tags=["retrieval"],
        )
    )
    registry.register(
        ToolSpec(
            name="summarize_text",
            description="Summarize a text passage.",
            args_schema=SummarizeToolInput,
            handler=_summarize,
            tags=["nlp"],
        )
    )


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
