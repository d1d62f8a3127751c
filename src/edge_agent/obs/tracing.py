"""Run tracing and groundedness evaluation."""

from __future__ import annotations

import re
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone

from edge_agent.types import ToolTrace

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    session_id: str
    timestamp_utc: str
    question: str
    answer: str
    status: str
    failure_kind: str | None
    source_snippets: list[str]
    tool_traces: list[ToolTrace]
    tool_rounds: int
    input_tokens: int
    output_tokens: int
    latency_ms: float
    groundedness: float


class GroundednessEvaluator:
    """Scores how much of an answer is supported by its sources.

    A sentence, with citation tags like `[doc-1-chunk-0001]` removed, counts
    as grounded if some source shares at least `min_overlap` of its tokens.
    The score is the grounded fraction of sentences.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = [
            sentence.strip()
            for sentence in re.split(r"(?<=[.!?。！？])\s+", answer)
            if sentence.strip()
        ]
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0

        source_token_sets = [set(self._normalize(source)) for source in source_snippets]
        grounded = 0

        for sentence in sentences:
            clean_sentence = re.sub(r"\[[^\]]+\]", "", sentence).strip()
            sentence_tokens = set(self._normalize(clean_sentence))
            if not sentence_tokens:
                grounded += 1
                continue

            if any(
                self._overlap(sentence_tokens, source_tokens) >= self.min_overlap
                for source_tokens in source_token_sets
            ):
                grounded += 1

        return grounded / len(sentences)

    @staticmethod
    def _normalize(text: str) -> list[str]:
        return [token.lower() for token in _TOKEN_PATTERN.findall(text)]

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


class TraceStore:
    """In-memory record of finished agent sessions."""

    def __init__(
        self,
        *,
        groundedness_evaluator: GroundednessEvaluator | None = None,
        max_records: int = 1000,
    ) -> None:
        self._records: dict[str, TraceRecord] = {}
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()
        self._max_records = max_records

    def create_record(
        self,
        *,
        session_id: str,
        question: str,
        answer: str,
        status: str,
        failure_kind: str | None,
        source_snippets: list[str],
        tool_traces: list[ToolTrace],
        tool_rounds: int,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
    ) -> TraceRecord:
        trace_id = str(uuid.uuid4())
        groundedness = self._groundedness.score(answer, source_snippets) if answer else 0.0
        record = TraceRecord(
            trace_id=trace_id,
            session_id=session_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            answer=answer,
            status=status,
            failure_kind=failure_kind,
            source_snippets=source_snippets,
            tool_traces=tool_traces,
            tool_rounds=tool_rounds,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            groundedness=groundedness,
        )
        self._records[trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, object]:
        """Aggregate metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_runs": 0,
                "status_counts": {},
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_tool_rounds": 0.0,
                "avg_groundedness": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        completed = [record for record in records if record.status == "completed"]

        return {
            "total_runs": total,
            "status_counts": dict(Counter(record.status for record in records)),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_tool_rounds": sum(record.tool_rounds for record in records) / total,
            "avg_groundedness": (
                sum(record.groundedness for record in completed) / len(completed)
                if completed
                else 0.0
            ),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
        }


class Timer:
    """Simple context timer used by the agent loop."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
