"""Associative graph memory for conversational agents."""

from .activate import ActivationEngine
from .config import MemoryConfig, config_from_env, load_config
from .embedding import Embedder, HTTPEmbedder, cosine_similarity
from .errors import CompletionError, EmbeddingError, MnemosError, StoreUnavailable
from .extractor import EntityExtractor
from .ingest import IngestionEngine
from .llm_client import GroqLLMClient, LLMClient
from .manager import GraphMemory
from .models import (
    ActivatedNode,
    Edge,
    ExtractedEntity,
    ExtractedRelation,
    ExtractionResult,
    IngestResult,
    Message,
    Node,
    NodeType,
    SessionInfo,
    Summary,
    UnsummarizedSession,
)
from .session import SessionConfig, SessionSegmenter
from .store import GraphStore

__all__ = [
    "ActivatedNode",
    "ActivationEngine",
    "CompletionError",
    "Edge",
    "Embedder",
    "EmbeddingError",
    "EntityExtractor",
    "ExtractedEntity",
    "ExtractedRelation",
    "ExtractionResult",
    "GraphMemory",
    "GraphStore",
    "GroqLLMClient",
    "HTTPEmbedder",
    "IngestResult",
    "IngestionEngine",
    "LLMClient",
    "MemoryConfig",
    "Message",
    "MnemosError",
    "Node",
    "NodeType",
    "SessionConfig",
    "SessionInfo",
    "SessionSegmenter",
    "StoreUnavailable",
    "Summary",
    "UnsummarizedSession",
    "config_from_env",
    "cosine_similarity",
    "load_config",
]
