import asyncio
import json

from pydantic import BaseModel

from edge_agent.agent.loop import AgentLoop
from edge_agent.config import AgentConfig
from edge_agent.engine.handle import ModelRegistry, ModelRole
from edge_agent.engine.hashing import HashingEmbeddingEngine
from edge_agent.errors import EmbeddingError, ModelLoadError
from edge_agent.ingest.chunker import SlidingWindowChunker
from edge_agent.obs.tracing import TraceStore
from edge_agent.retrieval.index import EmbeddingIndex
from edge_agent.retrieval.pipeline import RetrievalPipeline
from edge_agent.tools.registry import ToolRegistry, ToolSpec
from edge_agent.tools.router import ToolRouter
from edge_agent.types import (
    AgentState,
    Chunk,
    EmbeddingRecord,
    TextFragment,
    ToolInvocationRequest,
)


class ScriptedEngine:
    """Plays back one scripted round per generate call.

    Exceptions in a script are raised mid-stream. When the script runs out
    the engine answers with ``default``.
    """

    def __init__(self, rounds=(), *, default=None, delay: float = 0.0, load_error=None) -> None:
        self.rounds = [list(events) for events in rounds]
        self.default = default if default is not None else [TextFragment("done")]
        self.delay = delay
        self.load_error = load_error
        self.prompts: list[str] = []
        self.emitted: list[int] = []

    async def load(self, artifact_ref, options) -> None:
        if self.load_error is not None:
            raise self.load_error

    async def generate(self, prompt, options):
        call = len(self.prompts)
        self.prompts.append(prompt)
        script = self.rounds.pop(0) if self.rounds else self.default
        for event in script:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(event, Exception):
                raise event
            self.emitted.append(call)
            yield event

    async def embed(self, text):
        raise NotImplementedError

    def close(self) -> None:
        pass


class EchoInput(BaseModel):
    value: str


def _router(handler=None) -> ToolRouter:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="echo",
            description="Echo a value back.",
            args_schema=EchoInput,
            handler=handler or (lambda data: {"value": data.value}),
        )
    )
    return ToolRouter(registry)


def _agent(engine: ScriptedEngine, router: ToolRouter | None = None, **config) -> AgentLoop:
    models = ModelRegistry.from_engines({ModelRole.TOOL: engine})
    return AgentLoop(
        models=models,
        router=router or _router(),
        config=AgentConfig(**config),
        trace_store=TraceStore(),
    )


def _echo_call(value: str = "hi") -> ToolInvocationRequest:
    return ToolInvocationRequest(name="echo", arguments={"value": value})


def test_echo_round_trip() -> None:
    engine = ScriptedEngine([[_echo_call()], [TextFragment("The tool said "), TextFragment("hi.")]])
    agent = _agent(engine)

    outcome = asyncio.run(agent.run("Echo hi please"))

    assert outcome.status is AgentState.COMPLETED
    assert outcome.final_text == "The tool said hi."
    assert outcome.tool_rounds == 1
    assert outcome.transitions == [
        AgentState.IDLE,
        AgentState.RETRIEVING,
        AgentState.GENERATING,
        AgentState.AWAITING_TOOL,
        AgentState.GENERATING,
        AgentState.COMPLETED,
    ]
    assert len(engine.prompts) == 2
    expected = json.dumps({"success": True, "payload": {"value": "hi"}})
    assert f"Tool: {expected}" in engine.prompts[1]
    assert "Human: Echo hi please" in engine.prompts[0]

    trace = agent.trace_store.get(outcome.trace_id)
    assert trace.status == "completed"
    assert [tool.name for tool in trace.tool_traces] == ["echo"]


def test_answer_without_tools_completes() -> None:
    engine = ScriptedEngine([[TextFragment("Plain answer.")]])

    outcome = asyncio.run(_agent(engine).run("hello"))

    assert outcome.ok
    assert outcome.final_text == "Plain answer."
    assert outcome.tool_rounds == 0
    assert AgentState.AWAITING_TOOL not in outcome.transitions


def test_unknown_tool_is_reported_back_to_the_model() -> None:
    engine = ScriptedEngine(
        [
            [ToolInvocationRequest(name="teleport", arguments={})],
            [TextFragment("That tool does not exist.")],
        ]
    )

    outcome = asyncio.run(_agent(engine).run("go"))

    assert outcome.ok
    assert '"errorKind": "unknown_tool"' in engine.prompts[1]
    assert "unknown tool: teleport" in engine.prompts[1]


def test_tool_loop_limit_stops_before_extra_dispatch() -> None:
    calls = []

    def _handler(data: EchoInput) -> dict:
        calls.append(data.value)
        return {"value": data.value}

    engine = ScriptedEngine(default=[_echo_call("again")])
    agent = _agent(engine, _router(_handler), max_tool_rounds=2)

    outcome = asyncio.run(agent.run("loop forever"))

    assert outcome.status is AgentState.FAILED
    assert outcome.failure.kind == "tool_loop_limit_exceeded"
    assert outcome.failure.retryable is False
    assert calls == ["again", "again"]
    assert outcome.tool_rounds == 2
    assert outcome.transitions[-2:] == [AgentState.AWAITING_TOOL, AgentState.FAILED]


def test_zero_tool_rounds_rejects_first_call() -> None:
    calls = []
    engine = ScriptedEngine([[_echo_call()]])
    agent = _agent(engine, _router(lambda data: calls.append(data)), max_tool_rounds=0)

    outcome = asyncio.run(agent.run("hi"))

    assert outcome.failure.kind == "tool_loop_limit_exceeded"
    assert calls == []


def test_model_load_failure_ends_session() -> None:
    engine = ScriptedEngine(load_error=ModelLoadError("tool.gguf not found", retryable=False))

    outcome = asyncio.run(_agent(engine).run("hi"))

    assert outcome.status is AgentState.FAILED
    assert outcome.failure.kind == "model_load"
    assert outcome.failure.retryable is False
    assert outcome.transitions[-1] is AgentState.FAILED


def test_stream_error_aborts_and_releases_handle() -> None:
    engine = ScriptedEngine([[TextFragment("partial"), RuntimeError("device lost")]])
    agent = _agent(engine)

    async def scenario():
        outcome = await agent.run("hi")
        handle = await agent.models.get(ModelRole.TOOL)
        return outcome, handle.busy

    outcome, busy = asyncio.run(scenario())

    assert outcome.failure.kind == "generation_aborted"
    assert outcome.failure.retryable is True
    assert "device lost" in outcome.failure.message
    assert busy is False


def test_generation_timeout() -> None:
    engine = ScriptedEngine([[TextFragment("slow")] * 10], delay=1.0)
    agent = _agent(engine, generation_timeout_seconds=0.05)

    outcome = asyncio.run(agent.run("hi"))

    assert outcome.status is AgentState.FAILED
    assert outcome.failure.kind == "generation_timeout"
    assert outcome.failure.retryable is True


def test_cancel_event_stops_after_tool_round() -> None:
    cancel = asyncio.Event()

    async def _handler(data: EchoInput) -> dict:
        cancel.set()
        return {"value": data.value}

    engine = ScriptedEngine([[_echo_call()], [TextFragment("never streamed")]])
    agent = _agent(engine, _router(_handler))

    outcome = asyncio.run(agent.run("hi", cancel_event=cancel))

    assert outcome.status is AgentState.CANCELLED
    assert outcome.final_text is None
    assert outcome.tool_rounds == 1
    assert len(engine.prompts) == 1
    assert agent.trace_store.get(outcome.trace_id).status == "cancelled"


def test_task_cancellation_releases_handle() -> None:
    engine = ScriptedEngine(default=[TextFragment("x")] * 100, delay=0.01)
    agent = _agent(engine)

    async def scenario() -> bool:
        task = asyncio.create_task(agent.run("hi"))
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        handle = await agent.models.get(ModelRole.TOOL)
        return handle.busy

    assert asyncio.run(scenario()) is False


def test_concurrent_sessions_do_not_interleave() -> None:
    engine = ScriptedEngine(default=[TextFragment("a "), TextFragment("b "), TextFragment("c")], delay=0.005)
    agent = _agent(engine)

    async def scenario():
        return await asyncio.gather(agent.run("first"), agent.run("second"), agent.run("third"))

    outcomes = asyncio.run(scenario())

    assert [outcome.final_text for outcome in outcomes] == ["a b c"] * 3
    assert engine.emitted == sorted(engine.emitted)
    assert len({outcome.session_id for outcome in outcomes}) == 3


def test_query_embedding_failure_is_typed() -> None:
    class BrokenEmbedder(HashingEmbeddingEngine):
        async def embed(self, text: str) -> list[float]:
            raise EmbeddingError("embedding model crashed")

    models = ModelRegistry.from_engines(
        {ModelRole.TOOL: ScriptedEngine(), ModelRole.EMBEDDING: BrokenEmbedder(dimension=2)}
    )
    index = EmbeddingIndex()
    chunk = Chunk(chunk_id="c", doc_id="d", text="seed", token_count=1, metadata={})
    asyncio.run(index.insert(EmbeddingRecord.from_chunk(chunk, [1.0, 0.0])))
    pipeline = RetrievalPipeline(SlidingWindowChunker(), models, index)
    agent = AgentLoop(models=models, router=_router(), retrieval=pipeline)

    outcome = asyncio.run(agent.run("hi"))

    assert outcome.failure.kind == "embedding"
    assert outcome.transitions == [AgentState.IDLE, AgentState.RETRIEVING, AgentState.FAILED]


def test_query_embedding_crash_is_typed() -> None:
    class CrashingEmbedder(HashingEmbeddingEngine):
        async def embed(self, text: str) -> list[float]:
            raise RuntimeError("embedding backend crashed")

    models = ModelRegistry.from_engines(
        {ModelRole.TOOL: ScriptedEngine(), ModelRole.EMBEDDING: CrashingEmbedder(dimension=2)}
    )
    index = EmbeddingIndex()
    chunk = Chunk(chunk_id="c", doc_id="d", text="seed", token_count=1, metadata={})
    asyncio.run(index.insert(EmbeddingRecord.from_chunk(chunk, [1.0, 0.0])))
    pipeline = RetrievalPipeline(SlidingWindowChunker(), models, index)
    agent = AgentLoop(models=models, router=_router(), retrieval=pipeline)

    outcome = asyncio.run(agent.run("hi"))

    assert outcome.status is AgentState.FAILED
    assert outcome.failure.kind == "embedding"
    assert "RuntimeError: embedding backend crashed" in outcome.failure.message
    assert outcome.transitions == [AgentState.IDLE, AgentState.RETRIEVING, AgentState.FAILED]


def test_embedding_engine_in_tool_role_fails_typed() -> None:
    models = ModelRegistry.from_engines({ModelRole.TOOL: HashingEmbeddingEngine()})
    agent = AgentLoop(models=models, router=_router())

    async def scenario():
        outcome = await agent.run("hi")
        handle = await models.get(ModelRole.TOOL)
        return outcome, handle.busy

    outcome, busy = asyncio.run(scenario())

    assert outcome.status is AgentState.FAILED
    assert outcome.failure.kind == "generation_aborted"
    assert outcome.failure.retryable is False
    assert busy is False
