"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable
from typing import Any

from langchain_core.tools import StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

from edge_agent.errors import DuplicateToolError

ToolHandler = Callable[[Any], Any]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation.

    ``handler`` receives the validated ``args_schema`` instance and may be a
    plain function or a coroutine function.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1)
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    tags: list[str] = Field(default_factory=list)

    @property
    def is_async(self) -> bool:
        handler = self.handler
        return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        )

    def validate_arguments(self, payload: dict[str, Any]) -> BaseModel:
        """Validate model-emitted arguments with JSON semantics and no coercion.

        ``"5"`` is rejected for an ``int`` field. Enum values and nested
        objects are accepted in their JSON form.
        """
        return self.args_schema.model_validate_json(json.dumps(payload), strict=True)


class ToolRegistry:
    """Name to capability mapping. Entries are never replaced or removed."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def describe(self) -> list[dict[str, Any]]:
        """Function-calling schemas used to advertise tools to the model."""
        described: list[dict[str, Any]] = []
        for spec in self._tools.values():
            schema = convert_to_openai_tool(spec.args_schema)
            schema["function"]["name"] = spec.name
            schema["function"]["description"] = spec.description
            described.append(schema)
        return described

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            if spec.is_async:
                tool = StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    coroutine=_build_coroutine(spec),
                )
            else:
                tool = StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=_build_function(spec),
                )
            tools.append(tool)
        return tools


def _build_function(spec: ToolSpec) -> Callable[..., Any]:
    def _callable(**kwargs: Any) -> Any:
        return spec.handler(spec.args_schema.model_validate(kwargs))

    return _callable


def _build_coroutine(spec: ToolSpec) -> Callable[..., Any]:
    async def _callable(**kwargs: Any) -> Any:
        result = spec.handler(spec.args_schema.model_validate(kwargs))
        if inspect.isawaitable(result):
            result = await result
        return result

    return _callable
