"""Agent loop: retrieval, generation and sequential tool rounds."""

from __future__ import annotations

import asyncio
import json

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

from edge_agent.agent.prompts import render_prompt
from edge_agent.config import AgentConfig
from edge_agent.engine.base import GenerateOptions
from edge_agent.engine.handle import ModelHandle, ModelRegistry, ModelRole
from edge_agent.engine.tool_calls import format_tool_call
from edge_agent.errors import (
    CancellationRequested,
    DimensionMismatchError,
    EdgeAgentError,
    EmbeddingError,
    GenerationAborted,
    GenerationTimeout,
    ModelLoadError,
    ToolLoopLimitExceeded,
)
from edge_agent.obs.tracing import Timer, TraceStore, estimate_token_count
from edge_agent.retrieval.pipeline import RetrievalPipeline
from edge_agent.tools.router import ToolRouter
from edge_agent.types import (
    TERMINAL_STATES,
    AgentOutcome,
    AgentSession,
    AgentState,
    FailureReason,
    ToolInvocationRequest,
)

logger = structlog.get_logger(__name__)

_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.IDLE: frozenset({AgentState.RETRIEVING}),
    AgentState.RETRIEVING: frozenset({AgentState.GENERATING}),
    AgentState.GENERATING: frozenset({AgentState.AWAITING_TOOL, AgentState.COMPLETED}),
    AgentState.AWAITING_TOOL: frozenset({AgentState.GENERATING}),
}


class AgentLoop:
    """Drives one user query to a terminal outcome.

    The loop is an explicit state machine::

        IDLE -> RETRIEVING -> GENERATING <-> AWAITING_TOOL -> COMPLETED

    with FAILED and CANCELLED reachable from any non-terminal state. When the
    stream yields a tool invocation, the stream is closed, the call is
    dispatched through the router and a continuation prompt carrying the
    result is issued. Only one tool call is outstanding per session.

    ``run`` always returns an ``AgentOutcome``; the only exception it lets
    through is ``asyncio.CancelledError`` when the calling task is
    cancelled, after the model handle has been released.
    """

    def __init__(
        self,
        *,
        models: ModelRegistry,
        router: ToolRouter,
        retrieval: RetrievalPipeline | None = None,
        config: AgentConfig | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.models = models
        self.router = router
        self.retrieval = retrieval
        self.config = config or AgentConfig()
        self.trace_store = trace_store

    async def run(
        self,
        user_query: str,
        *,
        history: list[BaseMessage] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentOutcome:
        session = AgentSession(conversation_context=list(history or []))
        with structlog.contextvars.bound_contextvars(session_id=session.session_id):
            with Timer() as timer:
                try:
                    outcome = await self._drive(session, user_query, cancel_event)
                except asyncio.CancelledError:
                    self._transition(session, AgentState.CANCELLED)
                    raise
            outcome.trace_id = self._record(session, user_query, outcome, timer.elapsed_ms)
            logger.info(
                "agent_session_finished",
                status=outcome.status.value,
                failure=outcome.failure.kind if outcome.failure else None,
                tool_rounds=outcome.tool_rounds,
                latency_ms=round(timer.elapsed_ms, 2),
            )
        return outcome

    async def _drive(
        self,
        session: AgentSession,
        user_query: str,
        cancel_event: asyncio.Event | None,
    ) -> AgentOutcome:
        try:
            _check_cancel(cancel_event)
            self._transition(session, AgentState.RETRIEVING)
            if self.retrieval is not None and self.config.retrieval_k > 0:
                session.retrieved = await self.retrieval.retrieve(
                    user_query, self.config.retrieval_k
                )
            _check_cancel(cancel_event)

            session.conversation_context.append(HumanMessage(content=user_query))
            budget = self.config.generation_timeout_seconds
            try:
                async with asyncio.timeout(budget):
                    text = await self._generate(session, cancel_event)
            except TimeoutError as exc:
                raise GenerationTimeout(f"generation exceeded {budget:g}s") from exc
        except CancellationRequested:
            self._transition(session, AgentState.CANCELLED)
            return self._outcome(session, AgentState.CANCELLED)
        except GenerationTimeout as exc:
            return self._fail(session, "generation_timeout", str(exc), retryable=exc.retryable)
        except ToolLoopLimitExceeded as exc:
            return self._fail(session, "tool_loop_limit_exceeded", str(exc))
        except ModelLoadError as exc:
            return self._fail(session, "model_load", str(exc), retryable=exc.retryable)
        except DimensionMismatchError as exc:
            return self._fail(session, "dimension_mismatch", str(exc))
        except EmbeddingError as exc:
            return self._fail(session, "embedding", str(exc))
        except GenerationAborted as exc:
            return self._fail(session, "generation_aborted", str(exc), retryable=exc.retryable)

        self._transition(session, AgentState.COMPLETED)
        return self._outcome(session, AgentState.COMPLETED, final_text=text)

    async def _generate(
        self, session: AgentSession, cancel_event: asyncio.Event | None
    ) -> str:
        handle = await self.models.get(ModelRole.TOOL)
        tools = self.router.registry.describe()
        options = GenerateOptions(
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

        while True:
            self._transition(session, AgentState.GENERATING)
            prompt = render_prompt(
                conversation=session.conversation_context,
                context=session.retrieved,
                tools=tools,
            )
            text, request = await self._stream_round(handle, prompt, options, cancel_event)
            if request is None:
                session.conversation_context.append(AIMessage(content=text))
                return text.strip()

            session.pending_tool_calls.append(request)
            self._transition(session, AgentState.AWAITING_TOOL)
            if session.tool_rounds >= self.config.max_tool_rounds:
                raise ToolLoopLimitExceeded(
                    f"model requested more than {self.config.max_tool_rounds} tool rounds"
                )
            session.tool_rounds += 1
            result = await self.router.dispatch(request, observer=session.tool_traces.append)
            session.pending_tool_calls.remove(request)

            session.conversation_context.append(
                AIMessage(content=f"{text}{format_tool_call(request)}")
            )
            session.conversation_context.append(
                ToolMessage(
                    content=json.dumps(result.as_dict(), ensure_ascii=False, default=str),
                    tool_call_id=request.call_id,
                    name=request.name,
                )
            )
            _check_cancel(cancel_event)

    @staticmethod
    async def _stream_round(
        handle: ModelHandle,
        prompt: str,
        options: GenerateOptions,
        cancel_event: asyncio.Event | None,
    ) -> tuple[str, ToolInvocationRequest | None]:
        """Consume one stream until it ends or yields a tool invocation."""

        parts: list[str] = []
        try:
            async with handle.stream(prompt, options) as events:
                async for event in events:
                    _check_cancel(cancel_event)
                    if isinstance(event, ToolInvocationRequest):
                        return "".join(parts), event
                    parts.append(event.text)
        except EdgeAgentError:
            raise
        except Exception as exc:
            raise GenerationAborted(f"generation stream failed: {exc}") from exc
        return "".join(parts), None

    def _transition(self, session: AgentSession, state: AgentState) -> None:
        current = session.state
        if current in TERMINAL_STATES:
            raise RuntimeError(f"session already finished in state {current.value}")
        if state not in (AgentState.FAILED, AgentState.CANCELLED) and state not in _TRANSITIONS[current]:
            raise RuntimeError(f"invalid transition {current.value} -> {state.value}")
        session.state = state
        session.transitions.append(state)
        logger.debug("agent_state_changed", previous=current.value, state=state.value)

    def _fail(
        self, session: AgentSession, kind: str, message: str, *, retryable: bool = False
    ) -> AgentOutcome:
        self._transition(session, AgentState.FAILED)
        logger.warning("agent_session_failed", kind=kind, error=message)
        return self._outcome(
            session,
            AgentState.FAILED,
            failure=FailureReason(kind=kind, message=message, retryable=retryable),
        )

    @staticmethod
    def _outcome(
        session: AgentSession,
        status: AgentState,
        *,
        final_text: str | None = None,
        failure: FailureReason | None = None,
    ) -> AgentOutcome:
        return AgentOutcome(
            status=status,
            session_id=session.session_id,
            final_text=final_text,
            failure=failure,
            tool_rounds=session.tool_rounds,
            transitions=list(session.transitions),
        )

    def _record(
        self,
        session: AgentSession,
        question: str,
        outcome: AgentOutcome,
        latency_ms: float,
    ) -> str | None:
        if self.trace_store is None:
            return None
        answer = outcome.final_text or ""
        sources = [item.chunk.text for item in session.retrieved]
        sources.extend(trace.output_preview for trace in session.tool_traces)
        record = self.trace_store.create_record(
            session_id=session.session_id,
            question=question,
            answer=answer,
            status=outcome.status.value,
            failure_kind=outcome.failure.kind if outcome.failure else None,
            source_snippets=sources,
            tool_traces=list(session.tool_traces),
            tool_rounds=session.tool_rounds,
            input_tokens=estimate_token_count(question),
            output_tokens=estimate_token_count(answer),
            latency_ms=latency_ms,
        )
        return record.trace_id


def _check_cancel(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancellationRequested("session cancelled by caller")
