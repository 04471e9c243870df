"""Data models for the graph memory."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    """Kind of knowledge a node holds.

    Extraction output is free text, so anything unrecognized maps to OTHER
    instead of being rejected.
    """

    MEMORY = "memory"
    PERSON = "person"
    PROJECT = "project"
    CONCEPT = "concept"
    EVENT = "event"
    PREFERENCE = "preference"
    TOOL = "tool"
    OTHER = "other"

    @classmethod
    def from_raw(cls, value: str | None) -> "NodeType":
        """Parse a type string case-insensitively, falling back to OTHER."""
        if not value:
            return cls.OTHER
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OTHER


CORE_CATEGORY = "core"


@dataclass
class Node:
    """A unit of remembered knowledge.

    Attributes:
        type: Kind of entity.
        label: Short name, matched case-insensitively for dedup.
        body: Free text, only ever appended to.
        category: Optional tag; "core" nodes are always surfaced.
        strength: Importance weight, starts at 1.0.
        embedding: Vector for "label: body", None if never embedded.
        access_count: Number of touches.
        last_accessed: When the node was last touched.
        metadata: Opaque key/value bag.
        memory_id: Optional link to an external memory record.
        id: Database ID, None for unsaved nodes.
        created_at: When the node was created.
    """

    type: NodeType
    label: str
    body: str = ""
    category: str | None = None
    strength: float = 1.0
    embedding: list[float] | None = None
    access_count: int = 0
    last_accessed: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    memory_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None

    @property
    def is_core(self) -> bool:
        return self.category == CORE_CATEGORY

    @property
    def display_name(self) -> str:
        """Trail entry used in activation connections."""
        return f"{self.type.value}:{self.label}"

    def embedding_text(self) -> str:
        return f"{self.label}: {self.body}"


@dataclass
class Edge:
    """A directed, weighted, labeled relation between two nodes."""

    source_id: int
    target_id: int
    relation: str
    weight: float = 1.0
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Message:
    """A conversation message, read-only to the engine."""

    role: str
    content: str
    created_at: datetime
    medium: str = "text"
    id: int | None = None


@dataclass(frozen=True)
class Summary:
    """A summary of conversation up to (exclusive) covers_until."""

    content: str
    covers_until: datetime
    token_estimate: int | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ExtractedEntity:
    """Candidate entity returned by the extraction gateway."""

    type: str
    label: str
    body: str = ""
    category: str | None = None


@dataclass(frozen=True)
class ExtractedRelation:
    """Candidate relation between two entity labels."""

    source: str
    target: str
    relation: str


@dataclass
class ExtractionResult:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relations: list[ExtractedRelation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entities


@dataclass
class IngestResult:
    nodes_created: int = 0
    edges_created: int = 0


@dataclass
class ActivatedNode:
    """A node surfaced by activation, with its score and propagation trail."""

    id: int
    type: NodeType
    label: str
    body: str
    category: str | None
    strength: float
    score: float
    connections: list[str] = field(default_factory=list)

    @classmethod
    def from_node(
        cls,
        node: Node,
        score: float,
        connections: list[str] | None = None,
    ) -> "ActivatedNode":
        """Snapshot a stored node with its activation score.

        Raises:
            ValueError: If the node has not been saved.
        """
        if node.id is None:
            raise ValueError(f"Node {node.label!r} has not been saved")
        return cls(
            id=node.id,
            type=node.type,
            label=node.label,
            body=node.body,
            category=node.category,
            strength=node.strength,
            score=score,
            connections=list(connections or []),
        )


@dataclass(frozen=True)
class SessionInfo:
    """Where the conversation stands relative to session boundaries."""

    is_new_session: bool
    current_session_start: datetime | None
    last_message_time: datetime | None
    gap_minutes: float


MIN_SUMMARIZABLE_MESSAGES = 4


@dataclass(frozen=True)
class UnsummarizedSession:
    """A closed session that has not been summarized yet."""

    start: datetime
    end: datetime
    messages: list[Message]

    def is_summarizable(self, min_messages: int = MIN_SUMMARIZABLE_MESSAGES) -> bool:
        """Whether the session is long enough to be worth summarizing."""
        return len(self.messages) >= min_messages
