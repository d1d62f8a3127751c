"""Prompt assembly for the tool-calling model."""

from __future__ import annotations

import json
from typing import Any

from langchain_core.messages import BaseMessage, get_buffer_string
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from edge_agent.engine.tool_calls import CLOSE_TAG, OPEN_TAG
from edge_agent.types import ScoredChunk

HUMAN_PREFIX = "Human"
AI_PREFIX = "AI"
TOOL_PREFIX = "Tool"
NO_CONTEXT = "(no retrieved context)"

SYSTEM_PROMPT = """
You are an assistant running entirely on this device.

Tools you may call:
{tools}

To call a tool, reply with exactly one block and then stop:
{open_tag}{{"name": "<tool name>", "arguments": {{<arguments>}}}}{close_tag}
The tool result will be given back to you as a Tool message.

Rules:
1) Ground answers in the context below and in tool results.
2) Cite chunks you rely on like [doc-1-chunk-0003].
3) If evidence is missing, say you cannot verify.

Context:
{context}
""".strip()

PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", SYSTEM_PROMPT),
        MessagesPlaceholder(variable_name="conversation", optional=True),
    ]
)


def format_context(chunks: list[ScoredChunk]) -> str:
    if not chunks:
        return NO_CONTEXT
    return "\n".join(f"[{item.chunk.chunk_id}] {item.chunk.text}" for item in chunks)


def format_tools(descriptions: list[dict[str, Any]]) -> str:
    if not descriptions:
        return "(none)"
    lines = []
    for item in descriptions:
        function = item["function"]
        parameters = json.dumps(function.get("parameters", {}), ensure_ascii=False)
        lines.append(f"- {function['name']}: {function['description']} parameters={parameters}")
    return "\n".join(lines)


def render_prompt(
    *,
    conversation: list[BaseMessage],
    context: list[ScoredChunk],
    tools: list[dict[str, Any]],
) -> str:
    """Render the whole session as one completion prompt ending on the AI turn."""

    messages = PROMPT.format_messages(
        tools=format_tools(tools),
        context=format_context(context),
        open_tag=OPEN_TAG,
        close_tag=CLOSE_TAG,
        conversation=conversation,
    )
    transcript = get_buffer_string(messages, human_prefix=HUMAN_PREFIX, ai_prefix=AI_PREFIX)
    return f"{transcript}\n{AI_PREFIX}:"
