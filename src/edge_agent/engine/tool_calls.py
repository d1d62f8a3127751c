"""Detection of tool-call markers inside streamed model text."""

from __future__ import annotations

import json
from typing import Any

from edge_agent.types import StreamEvent, TextFragment, ToolInvocationRequest

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"


class ToolCallStreamParser:
    """Splits raw text pieces into text fragments and tool invocations.

    The model is prompted to emit calls as::

        <tool_call>{"name": "echo", "arguments": {"value": "hi"}}</tool_call>

    Markers may be split across any number of pieces. Text that could still
    be the start of a marker is held back until the next piece arrives. A
    marker whose body is not a valid call is passed through as plain text.
    """

    def __init__(self, open_tag: str = OPEN_TAG, close_tag: str = CLOSE_TAG) -> None:
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._buffer = ""
        self._inside = False

    def feed(self, piece: str) -> list[StreamEvent]:
        self._buffer += piece
        events: list[StreamEvent] = []
        while True:
            if not self._inside:
                idx = self._buffer.find(self.open_tag)
                if idx == -1:
                    held = _partial_suffix(self._buffer, self.open_tag)
                    emit = self._buffer[: len(self._buffer) - held]
                    if emit:
                        events.append(TextFragment(emit))
                    self._buffer = self._buffer[len(emit) :]
                    return events
                if idx:
                    events.append(TextFragment(self._buffer[:idx]))
                self._buffer = self._buffer[idx + len(self.open_tag) :]
                self._inside = True
            else:
                idx = self._buffer.find(self.close_tag)
                if idx == -1:
                    return events
                body = self._buffer[:idx]
                self._buffer = self._buffer[idx + len(self.close_tag) :]
                self._inside = False
                events.append(self._decode(body))

    def finish(self) -> list[StreamEvent]:
        """Flush held text at end of stream; unterminated markers become text."""

        leftover = self._buffer
        if self._inside:
            leftover = self.open_tag + leftover
        self._buffer = ""
        self._inside = False
        return [TextFragment(leftover)] if leftover else []

    def _decode(self, body: str) -> StreamEvent:
        raw = f"{self.open_tag}{body}{self.close_tag}"
        try:
            data: Any = json.loads(body)
        except json.JSONDecodeError:
            return TextFragment(raw)
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            return TextFragment(raw)

        arguments = data.get("arguments", data.get("parameters", {}))
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                return TextFragment(raw)
        if not isinstance(arguments, dict):
            return TextFragment(raw)
        return ToolInvocationRequest(name=data["name"], arguments=arguments)


def parse_text(text: str) -> list[StreamEvent]:
    parser = ToolCallStreamParser()
    return parser.feed(text) + parser.finish()


def _partial_suffix(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


def format_tool_call(request: ToolInvocationRequest) -> str:
    """Render a request back into the marker form the model emits."""
    body = json.dumps({"name": request.name, "arguments": request.arguments}, ensure_ascii=False)
    return f"{OPEN_TAG}{body}{CLOSE_TAG}"
