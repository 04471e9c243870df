"""Activation: retrieve relevant graph fragments by seeded spreading activation.

The query is embedded, the nearest nodes become seeds, and their similarity
spreads outward along edges in both directions, halving the decay factor at
every hop. Energy is a running maximum, so a node reached by many paths is
not boosted by path count alone. Nodes are then ranked by

    score = similarity * 0.6 + activation * 0.3 + recency * 0.1

and core nodes are always returned ahead of the ranked ones.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .embedding import Embedder
from .errors import StoreUnavailable
from .logging import JSONLLogger, get_logger
from .models import ActivatedNode, Node
from .store import GraphStore, utcnow

logger = logging.getLogger(__name__)

SEED_COUNT = 5
HOP_DECAY = 0.5
PRUNE_THRESHOLD = 0.01
SIMILARITY_WEIGHT = 0.6
ACTIVATION_WEIGHT = 0.3
RECENCY_WEIGHT = 0.1
TOUCH_LIMIT = 10
DEFAULT_FAN_OUT = 8


@dataclass
class SpreadResult:
    """Outcome of spreading activation from a set of seeds."""

    energy: dict[int, float] = field(default_factory=dict)
    nodes: dict[int, Node] = field(default_factory=dict)
    connections: dict[int, list[str]] = field(default_factory=dict)
    hops: int = 0


@dataclass
class ScoredNode:
    node: Node
    similarity: float
    activation: float
    recency: float
    connections: list[str]

    @property
    def score(self) -> float:
        return (
            self.similarity * SIMILARITY_WEIGHT
            + self.activation * ACTIVATION_WEIGHT
            + self.recency * RECENCY_WEIGHT
        )


def recency_score(last_accessed: datetime | None, now: datetime) -> float:
    """1 / (1 + age_days), where age is measured from the last access."""
    if last_accessed is None:
        return 1.0
    age_hours = max((now - last_accessed).total_seconds() / 3600, 0.0)
    return 1 / (1 + age_hours / 24)


class ActivationEngine:
    """Ranks graph nodes for a query and reinforces what it returns."""

    def __init__(
        self,
        store: GraphStore,
        embedder: Embedder,
        event_log: JSONLLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
        embedding_timeout: float | None = 10.0,
        fan_out: int = DEFAULT_FAN_OUT,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Graph storage.
            embedder: Embedding gateway for the query.
            event_log: Structured event log, defaults to the global one.
            clock: Source of "now" for recency.
            embedding_timeout: Seconds to wait for the query embedding.
            fan_out: Max frontier nodes whose edges are fetched at once.
        """
        self.store = store
        self.embedder = embedder
        self.event_log = event_log or get_logger()
        self.clock = clock
        self.embedding_timeout = embedding_timeout
        self.fan_out = max(1, fan_out)

    async def activate(
        self,
        query: str,
        top_k: int = 20,
        max_hops: int = 3,
    ) -> list[ActivatedNode]:
        """Return core nodes followed by the top_k best-scoring other nodes.

        Args:
            query: Text to retrieve context for.
            top_k: How many non-core nodes to return.
            max_hops: How far activation spreads from the seeds.

        Returns:
            Activated nodes, core first. Core-only if the query cannot be
            embedded or the graph has no embedded nodes; empty if the store
            is unavailable.
        """
        started = time.monotonic()

        try:
            vector = await asyncio.wait_for(
                self.embedder.embed(query), timeout=self.embedding_timeout
            )
        except Exception as e:
            logger.warning("Query embedding failed, falling back to core nodes only: %s", e)
            self.event_log.log_degraded("activate", "embedding_failed", error=str(e))
            return await self._core_only()

        try:
            seeds = await asyncio.to_thread(self.store.find_nearest, vector, SEED_COUNT)
            if not seeds:
                return await self._core_only()

            spread = await self.spread(seeds, max_hops)
            core_nodes = await asyncio.to_thread(self.store.get_core_nodes)
        except StoreUnavailable as e:
            logger.warning("Graph store unavailable during activation: %s", e)
            self.event_log.log_degraded("activate", "store_unavailable", error=str(e))
            return []

        similarities = {node.id: similarity for node, similarity in seeds if node.id is not None}
        ranked = self._rank(spread, similarities)
        results = self._select(core_nodes, ranked, top_k)

        await self._reinforce(results)

        self.event_log.log_activate(
            len(results),
            seeds=len(seeds),
            hops=spread.hops,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        return results

    async def spread(self, seeds: list[tuple[Node, float]], max_hops: int) -> SpreadResult:
        """Propagate seed energy through the graph, one hop at a time.

        At hop h (from 0) a node with energy e passes e * 0.5^(h+1) * weight to
        each neighbor, keeping the neighbor's maximum. Neighbors whose energy
        ends up above PRUNE_THRESHOLD form the next frontier.
        """
        result = SpreadResult()
        for node, similarity in seeds:
            if node.id is None:
                continue
            result.energy[node.id] = similarity
            result.nodes[node.id] = node
            result.connections[node.id] = []

        visited: set[int] = set()
        frontier = list(result.energy)
        semaphore = asyncio.Semaphore(self.fan_out)

        for hop in range(max_hops):
            decay = HOP_DECAY ** (hop + 1)
            current = [node_id for node_id in dict.fromkeys(frontier) if node_id not in visited]
            visited.update(current)
            if not current:
                break
            source_energy = {node_id: result.energy.get(node_id, 0.0) for node_id in current}

            neighbor_lists = await asyncio.gather(
                *(self._neighbors(node_id, semaphore) for node_id in current),
                return_exceptions=True,
            )
            result.hops = hop + 1

            reached: list[int] = []
            for node_id, neighbors in zip(current, neighbor_lists):
                if isinstance(neighbors, BaseException):
                    if not isinstance(neighbors, Exception):
                        raise neighbors
                    logger.warning("Neighbor lookup failed for node %s: %s", node_id, neighbors)
                    self.event_log.log_degraded(
                        "activate", "neighbor_lookup_failed", error=str(neighbors), node_id=node_id
                    )
                    continue

                source = result.nodes.get(node_id)
                for neighbor_id, weight in neighbors:
                    energy = source_energy[node_id] * decay * weight
                    if energy > result.energy.get(neighbor_id, 0.0):
                        result.energy[neighbor_id] = energy
                        trail = result.connections.setdefault(neighbor_id, [])
                        if source is not None:
                            trail.append(source.display_name)
                    reached.append(neighbor_id)

            await self._load_nodes(reached, result)

            frontier = [
                node_id
                for node_id in dict.fromkeys(reached)
                if result.energy.get(node_id, 0.0) > PRUNE_THRESHOLD
            ]
            if not frontier:
                break

        return result

    async def _neighbors(
        self, node_id: int, semaphore: asyncio.Semaphore
    ) -> list[tuple[int, float]]:
        """(neighbor id, edge weight) pairs over outgoing and incoming edges."""
        async with semaphore:
            outgoing, incoming = await asyncio.gather(
                asyncio.to_thread(self.store.get_edges_from, node_id),
                asyncio.to_thread(self.store.get_edges_to, node_id),
            )
        return [(e.target_id, e.weight) for e in outgoing] + [
            (e.source_id, e.weight) for e in incoming
        ]

    async def _load_nodes(self, node_ids: list[int], result: SpreadResult) -> None:
        """Fetch nodes reached this hop that are not loaded yet."""
        missing = [node_id for node_id in dict.fromkeys(node_ids) if node_id not in result.nodes]
        if not missing:
            return
        nodes = await asyncio.gather(
            *(asyncio.to_thread(self.store.get_node, node_id) for node_id in missing),
            return_exceptions=True,
        )
        for node_id, node in zip(missing, nodes):
            if isinstance(node, Node):
                result.nodes[node_id] = node
            elif isinstance(node, Exception):
                logger.warning("Failed to load node %s: %s", node_id, node)
            elif isinstance(node, BaseException):
                raise node

    def _rank(self, spread: SpreadResult, similarities: dict[int, float]) -> list[ScoredNode]:
        now = self.clock()
        scored = []
        for node_id, activation in spread.energy.items():
            node = spread.nodes.get(node_id)
            if node is None or activation == 0:
                continue
            scored.append(
                ScoredNode(
                    node=node,
                    similarity=similarities.get(node_id, 0.0),
                    activation=activation,
                    recency=recency_score(node.last_accessed, now),
                    connections=spread.connections.get(node_id, []),
                )
            )
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def _select(
        self, core_nodes: list[Node], ranked: list[ScoredNode], top_k: int
    ) -> list[ActivatedNode]:
        """Core nodes first, then up to top_k ranked non-core nodes."""
        by_id = {s.node.id: s for s in ranked}
        results: list[ActivatedNode] = []
        included: set[int] = set()

        for core in core_nodes:
            if core.id is None:
                continue
            scored = by_id.get(core.id)
            if scored is not None:
                results.append(ActivatedNode.from_node(core, scored.score, scored.connections))
            else:
                results.append(ActivatedNode.from_node(core, 1.0))
            included.add(core.id)

        added = 0
        for scored in ranked:
            if added >= top_k:
                break
            node_id = scored.node.id
            if node_id is None or node_id in included or scored.node.is_core:
                continue
            results.append(ActivatedNode.from_node(scored.node, scored.score, scored.connections))
            included.add(node_id)
            added += 1

        return results

    async def _core_only(self) -> list[ActivatedNode]:
        try:
            core_nodes = await asyncio.to_thread(self.store.get_core_nodes)
        except StoreUnavailable as e:
            logger.warning("Graph store unavailable, returning no memory: %s", e)
            self.event_log.log_degraded("activate", "store_unavailable", error=str(e))
            return []
        return [ActivatedNode.from_node(node, 1.0) for node in core_nodes]

    async def _reinforce(self, results: list[ActivatedNode]) -> None:
        """Touch the leading results and strengthen edges among all of them."""
        try:
            await asyncio.gather(
                *(asyncio.to_thread(self.store.touch, r.id) for r in results[:TOUCH_LIMIT])
            )
            await self._strengthen_co_activated([r.id for r in results])
        except Exception as e:
            logger.warning("Co-activation reinforcement failed: %s", e)
            self.event_log.log_degraded("activate", "reinforcement_failed", error=str(e))

    async def _strengthen_co_activated(self, node_ids: list[int]) -> None:
        if len(node_ids) < 2:
            return

        ids = set(node_ids)
        edges = await asyncio.to_thread(self.store.get_all_edges)
        for edge in edges:
            if edge.id is not None and edge.source_id in ids and edge.target_id in ids:
                await asyncio.to_thread(self.store.strengthen_edge, edge.id)

