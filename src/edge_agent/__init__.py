"""On-device agent runtime: tool-calling generation loop and local retrieval."""

from .config import AgentConfig, ChunkingConfig, RetrievalConfig, RouterConfig

__all__ = ["AgentConfig", "ChunkingConfig", "RetrievalConfig", "RouterConfig"]
