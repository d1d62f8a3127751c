"""Configuration models for the on-device agent runtime."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Metric(str, Enum):
    """Distance metric used by an embedding index."""

    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"


class ChunkingConfig(BaseModel):
    """Configures the fixed sliding-window chunker."""

    window_tokens: int = Field(default=256, ge=1)
    overlap_tokens: int = Field(default=32, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        if self.overlap_tokens >= self.window_tokens:
            raise ValueError("overlap_tokens must be less than window_tokens")
        return self


class RetrievalConfig(BaseModel):
    """Configures nearest-neighbour retrieval."""

    top_k: int = Field(default=4, ge=1)
    metric: Metric = Metric.COSINE


class RouterConfig(BaseModel):
    """Configures tool dispatch."""

    timeout_seconds: float = Field(default=10.0, gt=0.0)
    preview_chars: int = Field(default=320, ge=16)


class AgentConfig(BaseModel):
    """Configures agent execution limits."""

    max_tool_rounds: int = Field(default=4, ge=0)
    generation_timeout_seconds: float = Field(default=120.0, gt=0.0)
    max_tokens: int = Field(default=512, ge=1)
    retrieval_k: int = Field(default=4, ge=0)
    temperature: float = Field(default=0.2, ge=0.0)


class EngineConfig(BaseModel):
    """Locates model artifacts and sets runtime resources per role."""

    tool_model_path: str | None = None
    embedding_model_path: str | None = None
    thread_count: int = Field(default=4, ge=1)
    use_memory_mapping: bool = True
    context_length: int = Field(default=4096, ge=128)
    embedding_dimension: int = Field(default=256, ge=8)


class Settings(BaseSettings):
    """Environment-driven settings for the HTTP application.

    Nested values use a double underscore, e.g.
    ``EDGE_AGENT_AGENT__MAX_TOOL_ROUNDS=2``.
    """

    model_config = SettingsConfigDict(
        env_prefix="EDGE_AGENT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = "INFO"
    json_logs: bool = False
    engine: EngineConfig = Field(default_factory=EngineConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)


@lru_cache
def get_settings() -> Settings:
    return Settings()
