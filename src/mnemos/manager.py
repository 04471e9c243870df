"""Graph memory facade: the interface the agent talks to."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from groq import AsyncGroq

from .activate import ActivationEngine
from .config import MemoryConfig
from .embedding import Embedder, HTTPEmbedder
from .errors import StoreUnavailable
from .extractor import EntityExtractor
from .ingest import IngestionEngine
from .llm_client import GroqLLMClient, LLMClient
from .logging import JSONLLogger
from .models import (
    ActivatedNode,
    IngestResult,
    Message,
    Node,
    NodeType,
    SessionInfo,
    UnsummarizedSession,
)
from .session import SessionConfig, SessionSegmenter
from .store import GraphStore, utcnow

logger = logging.getLogger(__name__)


class GraphMemory:
    """Orchestrates the graph memory: ingestion, activation, and sessions.

    The engines share one GraphStore and never call each other. This class
    only wires them together and adds prompt formatting and bookkeeping.
    """

    def __init__(
        self,
        store: GraphStore,
        ingestion: IngestionEngine,
        activation: ActivationEngine,
        sessions: SessionSegmenter,
    ) -> None:
        self.store = store
        self.ingestion = ingestion
        self.activation = activation
        self.sessions = sessions

    @classmethod
    def from_config(
        cls,
        config: MemoryConfig,
        llm: LLMClient | None = None,
        embedder: Embedder | None = None,
        event_log: JSONLLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> GraphMemory:
        """Build a memory with all collaborators constructed from config.

        Raises:
            StoreUnavailable: If the database cannot be opened.
        """
        if config.db_path is None:
            raise StoreUnavailable("No database path configured")
        store = GraphStore(config.db_path, clock=clock)
        store.init_db()

        if llm is None:
            llm = GroqLLMClient(
                AsyncGroq(api_key=config.groq_api_key),
                model=config.extraction_model,
            )
        if embedder is None:
            embedder = HTTPEmbedder(
                api_key=config.embedding_api_key,
                base_url=config.embedding_base_url,
                model=config.embedding_model,
                timeout=config.embedding_timeout,
            )
        if event_log is None:
            event_log = JSONLLogger(log_dir=config.log_dir)

        extractor = EntityExtractor(llm, timeout=config.extraction_timeout)
        return cls(
            store=store,
            ingestion=IngestionEngine(
                store,
                extractor,
                embedder,
                event_log=event_log,
                embedding_timeout=config.embedding_timeout,
                reembed_on_merge=config.reembed_on_merge,
            ),
            activation=ActivationEngine(
                store,
                embedder,
                event_log=event_log,
                clock=clock,
                embedding_timeout=config.embedding_timeout,
            ),
            sessions=SessionSegmenter(
                store,
                SessionConfig(gap_threshold_minutes=config.session_gap_minutes),
                clock=clock,
                event_log=event_log,
            ),
        )

    async def ingest(self, messages: list[dict[str, Any]]) -> IngestResult:
        return await self.ingestion.ingest(messages)

    async def activate(
        self, query: str, top_k: int = 20, max_hops: int = 3
    ) -> list[ActivatedNode]:
        return await self.activation.activate(query, top_k=top_k, max_hops=max_hops)

    async def detect_session(self) -> SessionInfo:
        return await self.sessions.detect_session()

    async def get_unsummarized_previous_session(
        self, covers_until: datetime | None = None
    ) -> UnsummarizedSession | None:
        return await self.sessions.get_unsummarized_previous_session(covers_until)

    async def get_messages_since(self, session_start: datetime, limit: int = 50) -> list[Message]:
        return await self.sessions.get_messages_since(session_start, limit=limit)

    async def track_tool_use(self, tool_name: str) -> None:
        """Touch the node for a tool, creating it on first use.

        Tool nodes carry no embedding, so they only surface through edges
        or as core nodes. Failures are logged and ignored.
        """
        if not tool_name:
            return
        try:
            existing = await asyncio.to_thread(self.store.find_by_label, tool_name, NodeType.TOOL)
            if existing is not None:
                if existing.id is not None:
                    await asyncio.to_thread(self.store.touch, existing.id)
            else:
                await asyncio.to_thread(
                    self.store.create_node, Node(type=NodeType.TOOL, label=tool_name)
                )
        except StoreUnavailable as e:
            logger.debug("Could not track tool use for %s: %s", tool_name, e)

    async def decay(self) -> int:
        """Decay idle non-core nodes. Returns how many were decayed."""
        try:
            return await asyncio.to_thread(self.store.decay_strengths)
        except StoreUnavailable as e:
            logger.warning("Strength decay skipped: %s", e)
            return 0

    def format_for_prompt(self, nodes: list[ActivatedNode]) -> str:
        """Format activated nodes as a block for injection into the system prompt.

        Args:
            nodes: Activation results, in rank order.

        Returns:
            XML-formatted memory block, or empty string if no nodes.
        """
        if not nodes:
            return ""

        lines = []
        for node in nodes:
            line = f"- [{node.type.value}] {node.label}"
            if node.body:
                body = node.body.replace("\n", "; ")
                line += f": {body}"
            if node.connections:
                line += f" (via {', '.join(node.connections)})"
            lines.append(line)
        content = "\n".join(lines)

        return f"""<memory>
What you remember:
{content}
</memory>"""

    def close(self) -> None:
        self.store.close()
