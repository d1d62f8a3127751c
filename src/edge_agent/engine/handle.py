"""Per-role model handles and the registry that loads them."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from enum import Enum

import structlog

from edge_agent.engine.base import GenerateOptions, LoadOptions, ModelEngine
from edge_agent.errors import EdgeAgentError, EmbeddingError, ModelLoadError
from edge_agent.types import StreamEvent

logger = structlog.get_logger(__name__)


class ModelRole(str, Enum):
    TOOL = "tool"
    EMBEDDING = "embedding"


class ModelHandle:
    """Serializes access to one loaded engine.

    A model instance does not support overlapping generate calls, so every
    stream and every embed call holds the handle lock. ``asyncio.Lock`` wakes
    waiters in acquisition order, which gives FIFO fairness between sessions.
    """

    def __init__(self, role: ModelRole, engine: ModelEngine) -> None:
        self.role = role
        self.engine = engine
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def stream(
        self, prompt: str, options: GenerateOptions | None = None
    ) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Hold the handle for the lifetime of one generation stream.

        The lock is released on every exit path, including cancellation of
        the consuming task and early exit after a tool call.
        """

        async with self._lock:
            events = self.engine.generate(prompt, options or GenerateOptions())
            try:
                yield events
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

    async def embed(self, text: str) -> list[float]:
        async with self._lock:
            try:
                return await self.engine.embed(text)
            except EdgeAgentError:
                raise
            except Exception as exc:
                raise EmbeddingError(f"embedding failed: {type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self.engine.close()


EngineFactory = Callable[[ModelRole], ModelEngine]


class ModelRegistry:
    """Process-scoped owner of one lazily loaded handle per role.

    ``get`` loads a role on first use. Concurrent callers for the same role
    wait on a per-role load lock and then receive the handle produced by the
    first caller, so a role is never loaded twice. A failed load leaves the
    role empty so a later call can retry.
    """

    def __init__(
        self,
        factory: EngineFactory,
        artifacts: dict[ModelRole, str],
        load_options: LoadOptions | None = None,
    ) -> None:
        self._factory = factory
        self._artifacts = dict(artifacts)
        self._load_options = load_options or LoadOptions()
        self._handles: dict[ModelRole, ModelHandle] = {}
        self._load_locks: dict[ModelRole, asyncio.Lock] = {
            role: asyncio.Lock() for role in ModelRole
        }

    @classmethod
    def from_engines(cls, engines: dict[ModelRole, ModelEngine]) -> "ModelRegistry":
        """Registry over already constructed engines, loaded on first use."""
        return cls(
            factory=lambda role: engines[role],
            artifacts={role: f"memory://{role.value}" for role in engines},
        )

    def loaded(self, role: ModelRole) -> bool:
        return role in self._handles

    async def get(self, role: ModelRole) -> ModelHandle:
        handle = self._handles.get(role)
        if handle is not None:
            return handle

        async with self._load_locks[role]:
            handle = self._handles.get(role)
            if handle is not None:
                return handle

            artifact = self._artifacts.get(role)
            if artifact is None:
                raise ModelLoadError(
                    f"no model artifact configured for role '{role.value}'",
                    retryable=False,
                )

            engine = self._factory(role)
            try:
                await engine.load(artifact, self._load_options)
            except ModelLoadError:
                logger.warning("model_load_failed", role=role.value, artifact=artifact)
                raise
            except Exception as exc:
                logger.warning("model_load_failed", role=role.value, artifact=artifact)
                raise ModelLoadError(f"failed to load {artifact}: {exc}") from exc

            handle = ModelHandle(role, engine)
            self._handles[role] = handle
            logger.info("model_loaded", role=role.value, artifact=artifact)
            return handle

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()
