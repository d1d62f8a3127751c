"""Resolves tool invocation requests and turns every outcome into data."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from time import perf_counter
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from edge_agent.config import RouterConfig
from edge_agent.errors import ToolExecutionError, ToolValidationError, UnknownToolError
from edge_agent.tools.registry import ToolRegistry, ToolSpec
from edge_agent.types import ToolInvocationRequest, ToolResult, ToolTrace

logger = structlog.get_logger(__name__)


class ToolRouter:
    """Dispatches tool calls against a registry.

    ``dispatch`` never raises for tool-side problems. Unknown names, schema
    violations, handler exceptions and timeouts all come back as a failed
    ``ToolResult`` so the model can react to them. Each request runs its
    handler at most once; there is no retry.
    """

    def __init__(self, registry: ToolRegistry, config: RouterConfig | None = None) -> None:
        self.registry = registry
        self.config = config or RouterConfig()
        self._observer: Callable[[ToolTrace], None] | None = None

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each dispatch."""
        self._observer = observer

    async def dispatch(
        self,
        request: ToolInvocationRequest,
        *,
        observer: Callable[[ToolTrace], None] | None = None,
    ) -> ToolResult:
        start = perf_counter()
        result = await self._dispatch(request)
        latency_ms = (perf_counter() - start) * 1000.0

        logger.info(
            "tool_dispatched",
            tool=request.name,
            call_id=request.call_id,
            success=result.success,
            error_kind=result.error_kind,
            latency_ms=round(latency_ms, 2),
        )
        trace = ToolTrace(
            name=request.name,
            input_payload=dict(request.arguments),
            output_preview=_preview(result, self.config.preview_chars),
            latency_ms=latency_ms,
            success=result.success,
        )
        for callback in (self._observer, observer):
            if callback is not None:
                callback(trace)
        return result

    async def _dispatch(self, request: ToolInvocationRequest) -> ToolResult:
        try:
            payload = await self._invoke(request)
        except UnknownToolError as exc:
            return _failure(exc, "unknown_tool")
        except ToolValidationError as exc:
            return _failure(exc, "validation")
        except ToolExecutionError as exc:
            return _failure(exc, exc.kind)
        return ToolResult(success=True, payload=_to_payload(payload))

    async def _invoke(self, request: ToolInvocationRequest) -> Any:
        spec = self.registry.get(request.name)
        if spec is None:
            raise UnknownToolError(f"unknown tool: {request.name}")

        try:
            arguments = spec.validate_arguments(request.arguments)
        except ValidationError as exc:
            raise ToolValidationError(
                f"invalid arguments for {spec.name}: {_summarize(exc)}"
            ) from exc

        timeout = self.config.timeout_seconds
        try:
            return await asyncio.wait_for(self._run(spec, arguments), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(
                f"timeout: {spec.name} exceeded {timeout:g}s", kind="timeout"
            ) from exc
        except Exception as exc:
            raise ToolExecutionError(f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    async def _run(spec: ToolSpec, arguments: BaseModel) -> Any:
        if spec.is_async:
            result = spec.handler(arguments)
        else:
            result = await asyncio.to_thread(spec.handler, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "<root>"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def _to_payload(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _preview(result: ToolResult, limit: int) -> str:
    text = json.dumps(result.as_dict(), ensure_ascii=False, default=str)
    return text[:limit]


def _failure(exc: Exception, kind: str) -> ToolResult:
    # KeyError subclasses quote str(exc); use the raw message.
    return ToolResult(success=False, error_description=str(exc.args[0]), error_kind=kind)
