"""Ingestion: turn extracted entities and relations into graph nodes and edges."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .embedding import Embedder
from .errors import EmbeddingError, StoreUnavailable
from .extractor import EntityExtractor
from .logging import JSONLLogger, get_logger
from .models import ExtractedEntity, ExtractedRelation, IngestResult, Node, NodeType
from .store import GraphStore

logger = logging.getLogger(__name__)

ENTITY_MERGE_THRESHOLD = 0.92
ENDPOINT_MATCH_THRESHOLD = 0.80


class IngestionEngine:
    """Resolves extracted entities against the graph and writes the result.

    Entities are processed in order so that relations can reuse the
    label -> node mapping built for the batch. Every failure is local to
    the entity or relation that caused it.
    """

    def __init__(
        self,
        store: GraphStore,
        extractor: EntityExtractor,
        embedder: Embedder,
        event_log: JSONLLogger | None = None,
        embedding_timeout: float | None = 10.0,
        reembed_on_merge: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Graph storage.
            extractor: Extraction gateway wrapper.
            embedder: Embedding gateway.
            event_log: Structured event log, defaults to the global one.
            embedding_timeout: Seconds to wait per embedding call.
            reembed_on_merge: Refresh a node's embedding when its body grows.
        """
        self.store = store
        self.extractor = extractor
        self.embedder = embedder
        self.event_log = event_log or get_logger()
        self.embedding_timeout = embedding_timeout
        self.reembed_on_merge = reembed_on_merge

    async def ingest(self, messages: list[dict[str, Any]]) -> IngestResult:
        """Extract knowledge from a conversation window and store it.

        Args:
            messages: Conversation messages ({"role", "content"}), oldest first.

        Returns:
            Counts of nodes created and edges created or reinforced.
        """
        started = time.monotonic()

        try:
            extraction = await self.extractor.extract(messages)
        except Exception as e:
            logger.warning("Entity extraction failed: %s", e)
            self.event_log.log_degraded("ingest", "extraction_failed", error=str(e))
            return IngestResult()

        if extraction.is_empty:
            return IngestResult()

        result = IngestResult()
        resolved: dict[str, Node] = {}

        for entity in extraction.entities:
            try:
                if await self._ingest_entity(entity, resolved):
                    result.nodes_created += 1
            except Exception as e:
                logger.warning("Failed to ingest entity %r: %s", entity.label, e)
                self._log_failure("entity_failed", e, label=entity.label)

        for relation in extraction.relations:
            try:
                if await self._link(relation, resolved):
                    result.edges_created += 1
            except Exception as e:
                logger.warning(
                    "Failed to link %r -> %r: %s", relation.source, relation.target, e
                )
                self._log_failure(
                    "relation_failed", e, source=relation.source, target=relation.target
                )

        if result.nodes_created or result.edges_created:
            logger.info(
                "Ingested %d nodes, %d edges", result.nodes_created, result.edges_created
            )

        self.event_log.log_ingest(
            result.nodes_created,
            result.edges_created,
            duration_ms=(time.monotonic() - started) * 1000,
            entities=len(extraction.entities),
            relations=len(extraction.relations),
        )
        return result

    async def _ingest_entity(self, entity: ExtractedEntity, resolved: dict[str, Node]) -> bool:
        """Merge the entity into an existing node or create one.

        Returns:
            True if a new node was created.
        """
        label = entity.label.strip()
        if not label:
            return False

        node_type = NodeType.from_raw(entity.type)
        key = label.lower()

        existing = await asyncio.to_thread(self.store.find_by_label, label, node_type)
        if existing is not None:
            resolved[key] = await self._merge(existing, entity.body)
            return False

        embedding = await self._embed(f"{label}: {entity.body}")
        matches = await asyncio.to_thread(self.store.find_nearest, embedding, 1)
        if matches and matches[0][1] > ENTITY_MERGE_THRESHOLD:
            node, similarity = matches[0]
            logger.debug("Merging %r into %r (similarity %.3f)", label, node.label, similarity)
            resolved[key] = await self._merge(node, entity.body)
            return False

        metadata: dict[str, Any] = {}
        if node_type is NodeType.OTHER:
            metadata["raw_type"] = entity.type

        node = await asyncio.to_thread(
            self.store.create_node,
            Node(
                type=node_type,
                label=label,
                body=entity.body,
                category=entity.category,
                strength=1.0,
                embedding=embedding,
                metadata=metadata,
            ),
        )
        resolved[key] = node
        return True

    async def _merge(self, node: Node, body: str) -> Node:
        """Append body to the node's body and mark it accessed."""
        if node.id is None:
            raise StoreUnavailable(f"Node {node.label!r} has no id")
        merged = node
        if body:
            new_body = f"{node.body}\n{body}" if node.body else body
            fields: dict[str, Any] = {"body": new_body}
            if self.reembed_on_merge:
                fields["embedding"] = await self._embed(f"{node.label}: {new_body}")
            updated = await asyncio.to_thread(self.store.update_node, node.id, **fields)
            merged = updated or node
        await asyncio.to_thread(self.store.touch, node.id)
        return merged

    async def _link(self, relation: ExtractedRelation, resolved: dict[str, Node]) -> bool:
        """Upsert an edge between the relation's endpoints if both resolve.

        Returns:
            True if an edge was created or reinforced.
        """
        source = await self._resolve_endpoint(relation.source, resolved)
        if source is None:
            return False
        target = await self._resolve_endpoint(relation.target, resolved)
        if target is None or source.id == target.id:
            return False

        if source.id is None or target.id is None:
            return False
        await asyncio.to_thread(
            self.store.upsert_edge, source.id, target.id, relation.relation
        )
        return True

    async def _resolve_endpoint(self, label: str, resolved: dict[str, Node]) -> Node | None:
        """Find the node a relation endpoint refers to.

        Labels from this batch win; otherwise the nearest stored node is
        accepted if it is close enough.
        """
        node = resolved.get(label.strip().lower())
        if node is not None:
            return node

        embedding = await self._embed(label)
        matches = await asyncio.to_thread(self.store.find_nearest, embedding, 1)
        if matches and matches[0][1] > ENDPOINT_MATCH_THRESHOLD:
            return matches[0][0]
        return None

    async def _embed(self, text: str) -> list[float]:
        try:
            return await asyncio.wait_for(self.embedder.embed(text), timeout=self.embedding_timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"Embedding timed out after {self.embedding_timeout}s") from e

    def _log_failure(self, reason: str, error: Exception, **extra: Any) -> None:
        if isinstance(error, StoreUnavailable):
            reason = "store_unavailable"
        elif isinstance(error, EmbeddingError):
            reason = "embedding_failed"
        self.event_log.log_degraded("ingest", reason, error=str(error), **extra)
