"""Shared domain models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from langchain_core.messages import BaseMessage


@dataclass(slots=True)
class ParsedDocument:
    """A parsed source document before chunking."""

    doc_id: str
    text: str
    metadata: dict[str, Any]


@dataclass(slots=True, frozen=True)
class Chunk:
    """A bounded span of source text embedded independently."""

    chunk_id: str
    doc_id: str
    text: str
    token_count: int
    metadata: dict[str, Any]


@dataclass(slots=True, frozen=True)
class EmbeddingRecord:
    """A chunk vector as stored in an embedding index."""

    record_id: str
    vector: tuple[float, ...]
    metadata: dict[str, Any]
    chunk: Chunk

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: list[float]) -> "EmbeddingRecord":
        return cls(
            record_id=chunk.chunk_id,
            vector=tuple(float(value) for value in vector),
            metadata=dict(chunk.metadata),
            chunk=chunk,
        )


@dataclass(slots=True)
class ScoredChunk:
    """A retrieval result with its similarity score."""

    chunk: Chunk
    score: float
    rank: int = 0


@dataclass(slots=True)
class RetrievedItem:
    """Application-facing retrieval result."""

    chunk_id: str
    text: str
    metadata: dict[str, Any]
    score: float

    @classmethod
    def from_scored(cls, item: ScoredChunk) -> "RetrievedItem":
        return cls(
            chunk_id=item.chunk.chunk_id,
            text=item.chunk.text,
            metadata=dict(item.chunk.metadata),
            score=item.score,
        )


@dataclass(slots=True)
class ChunkFailure:
    chunk_id: str
    error: str


@dataclass(slots=True)
class IngestReport:
    """Outcome of ingesting one document."""

    inserted_count: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    failures: list[ChunkFailure] = field(default_factory=list)


@dataclass(slots=True)
class TextFragment:
    """A piece of generated answer text."""

    text: str


@dataclass(slots=True)
class ToolInvocationRequest:
    """A structured tool call emitted by the model mid-stream."""

    name: str
    arguments: dict[str, Any]
    call_id: str = field(default_factory=lambda: f"call-{uuid.uuid4().hex[:12]}")


StreamEvent = Union[TextFragment, ToolInvocationRequest]


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool dispatch, fed back to the model as data."""

    success: bool
    payload: Any = None
    error_description: str | None = None
    error_kind: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "payload": self.payload}
        return {
            "success": False,
            "errorDescription": self.error_description,
            "errorKind": self.error_kind,
        }


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True


class AgentState(str, Enum):
    IDLE = "idle"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    AWAITING_TOOL = "awaiting_tool"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({AgentState.COMPLETED, AgentState.FAILED, AgentState.CANCELLED})


@dataclass(slots=True)
class FailureReason:
    """Typed reason attached to a failed session."""

    kind: str
    message: str
    retryable: bool = False


@dataclass(slots=True)
class AgentSession:
    """Mutable state of one user interaction."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    conversation_context: list[BaseMessage] = field(default_factory=list)
    pending_tool_calls: list[ToolInvocationRequest] = field(default_factory=list)
    state: AgentState = AgentState.IDLE
    transitions: list[AgentState] = field(default_factory=lambda: [AgentState.IDLE])
    tool_rounds: int = 0
    tool_traces: list[ToolTrace] = field(default_factory=list)
    retrieved: list[ScoredChunk] = field(default_factory=list)


@dataclass(slots=True)
class AgentOutcome:
    """Terminal result of ``AgentLoop.run``."""

    status: AgentState
    session_id: str
    final_text: str | None = None
    failure: FailureReason | None = None
    tool_rounds: int = 0
    trace_id: str | None = None
    transitions: list[AgentState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is AgentState.COMPLETED
