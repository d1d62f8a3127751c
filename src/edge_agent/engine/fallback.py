"""Deterministic generation engine used when no model artifact is configured."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator

from edge_agent.agent.prompts import HUMAN_PREFIX, TOOL_PREFIX
from edge_agent.engine.base import GenerateOptions, LoadOptions
from edge_agent.errors import EmbeddingError
from edge_agent.tools.builtin import SEARCH_TOOL
from edge_agent.types import StreamEvent, TextFragment, ToolInvocationRequest

_SEARCH_LINE = re.compile(r"^\[(?P<cid>[^\]]+)\]\s+score=-?[0-9.]+\s+(?P<body>.+)$")
_ROLE_LINE = re.compile(r"^(System|Human|AI|Tool|Function):", flags=re.MULTILINE)

NO_EVIDENCE = "I cannot verify an answer from the indexed documents."


class ExtractiveEngine:
    """Answers from search evidence without a language model.

    It speaks the same stream protocol as a real engine: the first turn for
    a question requests the ``search_documents`` tool, and the continuation
    that carries the tool result answers with the top cited snippets. This
    keeps the whole tool loop exercised in offline environments.
    """

    def __init__(self, top_k: int = 3) -> None:
        self.top_k = top_k

    async def load(self, artifact_ref: str, options: LoadOptions) -> None:
        del artifact_ref, options

    async def generate(
        self, prompt: str, options: GenerateOptions
    ) -> AsyncIterator[StreamEvent]:
        question, tool_output = _last_turn(prompt)
        if tool_output is None:
            yield ToolInvocationRequest(
                name=SEARCH_TOOL, arguments={"query": question, "top_k": self.top_k}
            )
            return

        answer = _build_answer(tool_output, self.top_k)
        for word in answer.split(" ")[: options.max_tokens]:
            yield TextFragment(word + " ")

    async def embed(self, text: str) -> list[float]:
        raise EmbeddingError("ExtractiveEngine does not embed text")

    def close(self) -> None:
        pass


def _last_turn(prompt: str) -> tuple[str, str | None]:
    """Return the latest question and the tool result that followed it, if any."""

    marker = f"{HUMAN_PREFIX}: "
    start = prompt.rfind(f"\n{marker}")
    if start == -1:
        return "", None
    turn = prompt[start + 1 :]
    body = turn[len(marker) :]
    next_role = _ROLE_LINE.search(body)
    question = body[: next_role.start()].strip() if next_role else body.strip()

    tool_output: str | None = None
    for line in turn.splitlines():
        if line.startswith(f"{TOOL_PREFIX}: "):
            tool_output = line[len(TOOL_PREFIX) + 2 :]
    return question, tool_output


def _build_answer(tool_output: str, limit: int) -> str:
    try:
        result = json.loads(tool_output)
    except json.JSONDecodeError:
        return NO_EVIDENCE
    if not isinstance(result, dict) or not result.get("success"):
        return NO_EVIDENCE

    lines: list[str] = []
    for line in str(result.get("payload", "")).splitlines():
        match = _SEARCH_LINE.match(line.strip())
        if match:
            lines.append(f"{match.group('body').strip()} [{match.group('cid').strip()}]")
    if not lines:
        return NO_EVIDENCE
    return " ".join(lines[:limit])
