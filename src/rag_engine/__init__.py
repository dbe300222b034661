"""Multi-tenant retrieval engine package."""

from .config import EmbeddingConfig, EngineSettings, RetrievalConfig, SynthesisConfig

__all__ = ["EmbeddingConfig", "EngineSettings", "RetrievalConfig", "SynthesisConfig"]
