import asyncio
import re

from edge_agent.agent.loop import AgentLoop
from edge_agent.engine.fallback import NO_EVIDENCE, ExtractiveEngine
from edge_agent.engine.handle import ModelRegistry, ModelRole
from edge_agent.engine.hashing import HashingEmbeddingEngine
from edge_agent.ingest.chunker import SlidingWindowChunker
from edge_agent.obs.tracing import TraceStore
from edge_agent.retrieval.index import EmbeddingIndex
from edge_agent.retrieval.pipeline import RetrievalPipeline
from edge_agent.tools.builtin import SEARCH_TOOL, register_builtin_tools
from edge_agent.tools.registry import ToolRegistry
from edge_agent.tools.router import ToolRouter
from edge_agent.types import AgentState


def _build(top_k: int = 1) -> tuple[AgentLoop, RetrievalPipeline, TraceStore]:
    models = ModelRegistry.from_engines(
        {
            ModelRole.TOOL: ExtractiveEngine(top_k=top_k),
            ModelRole.EMBEDDING: HashingEmbeddingEngine(dimension=1024),
        }
    )
    pipeline = RetrievalPipeline(SlidingWindowChunker(), models, EmbeddingIndex())
    registry = ToolRegistry()
    register_builtin_tools(registry, pipeline)
    trace_store = TraceStore()
    agent = AgentLoop(
        models=models,
        router=ToolRouter(registry),
        retrieval=pipeline,
        trace_store=trace_store,
    )
    return agent, pipeline, trace_store


def test_agent_selects_search_tool_and_returns_citations() -> None:
    agent, pipeline, trace_store = _build()

    async def scenario():
        await pipeline.ingest(
            "Company policy states all employees must encrypt customer data at rest.",
            {"source": "policy"},
            doc_id="policy-doc",
        )
        await pipeline.ingest(
            "Holiday arrangements are documented in the employee handbook.",
            {"source": "faq"},
            doc_id="faq-doc",
        )
        return await agent.run("What does policy require for customer data?")

    outcome = asyncio.run(scenario())

    assert outcome.status is AgentState.COMPLETED
    assert re.findall(r"\[([^\]]+)\]", outcome.final_text) == ["policy-doc-chunk-0000"]
    assert "encrypt customer data at rest" in outcome.final_text
    assert outcome.tool_rounds == 1

    trace = trace_store.get(outcome.trace_id)
    assert trace.groundedness >= 0.95
    assert [tool.name for tool in trace.tool_traces] == [SEARCH_TOOL]
    assert any("encrypt customer data" in source for source in trace.source_snippets)


def test_agent_without_documents_says_it_cannot_verify() -> None:
    agent, _, trace_store = _build()

    outcome = asyncio.run(agent.run("Who won the match?"))

    assert outcome.status is AgentState.COMPLETED
    assert outcome.final_text == NO_EVIDENCE
    assert trace_store.get(outcome.trace_id).tool_traces[0].success is True


def test_follow_up_question_searches_again() -> None:
    agent, pipeline, _ = _build()

    async def scenario():
        await pipeline.ingest("Backups are stored offsite every night.", doc_id="ops")
        first = await agent.run("Where are backups stored?")
        second = await agent.run("How often are backups taken?")
        return first, second

    first, second = asyncio.run(scenario())

    assert "[ops-chunk-0000]" in first.final_text
    assert "[ops-chunk-0000]" in second.final_text
    assert second.tool_rounds == 1
