"""SQLite storage for graph nodes, edges, messages, and summaries."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from .embedding import cosine_similarity
from .errors import StoreUnavailable
from .models import CORE_CATEGORY, Edge, Message, Node, NodeType, Summary

logger = logging.getLogger(__name__)

DEFAULT_EDGE_WEIGHT = 1.0
UPSERT_INCREMENT = 0.1
STRENGTHEN_INCREMENT = 0.05
MAX_EDGE_WEIGHT = 3.0
TOUCH_STRENGTH_INCREMENT = 0.05
MAX_NODE_STRENGTH = 2.0
DECAY_FACTOR = 0.995
MIN_NODE_STRENGTH = 0.01
DECAY_IDLE = timedelta(hours=1)

CONVERSATION_ROLES = ("user", "assistant")

_UPDATABLE_NODE_FIELDS = {
    "type",
    "label",
    "body",
    "category",
    "strength",
    "embedding",
    "metadata",
    "memory_id",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS graph_nodes (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    type            TEXT NOT NULL,
    label           TEXT NOT NULL,
    body            TEXT NOT NULL DEFAULT '',
    embedding       TEXT,
    strength        REAL NOT NULL DEFAULT 1.0,
    access_count    INTEGER NOT NULL DEFAULT 0,
    last_accessed   TEXT NOT NULL,
    category        TEXT,
    metadata        TEXT NOT NULL DEFAULT '{}',
    memory_id       INTEGER,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS graph_edges (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id   INTEGER NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    target_id   INTEGER NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    relation    TEXT NOT NULL,
    weight      REAL NOT NULL DEFAULT 1.0,
    created_at  TEXT NOT NULL,
    UNIQUE(source_id, target_id, relation)
);

CREATE TABLE IF NOT EXISTS messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    role        TEXT NOT NULL,
    content     TEXT NOT NULL,
    medium      TEXT NOT NULL DEFAULT 'text',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summaries (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    content         TEXT NOT NULL,
    covers_until    TEXT NOT NULL,
    token_estimate  INTEGER,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_graph_nodes_type ON graph_nodes(type);
CREATE INDEX IF NOT EXISTS idx_graph_nodes_category ON graph_nodes(category);
CREATE INDEX IF NOT EXISTS idx_graph_edges_source ON graph_edges(source_id);
CREATE INDEX IF NOT EXISTS idx_graph_edges_target ON graph_edges(target_id);
CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GraphStore:
    """Persistent storage for the memory graph using SQLite.

    Every call takes the connection lock, so a single store can be shared
    by coroutines that offload calls to worker threads. Any sqlite3 error
    surfaces as StoreUnavailable.
    """

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
            clock: Source of "now" for timestamps.
        """
        self.db_path = db_path
        self.clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except (OSError, sqlite3.Error) as e:
                raise StoreUnavailable(f"Cannot open {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(str(e)) from e

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
                conn.commit()
                return rows[0] if rows else None
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(str(e)) from e

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    @staticmethod
    def _require(row: sqlite3.Row | None) -> sqlite3.Row:
        """The row an INSERT/UPSERT ... RETURNING must produce."""
        if row is None:
            raise StoreUnavailable("Write returned no row")
        return row

    def init_db(self) -> None:
        """Create the tables if they don't exist."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.executescript(SCHEMA)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    def is_available(self) -> bool:
        try:
            self._fetchone("SELECT 1")
        except StoreUnavailable:
            return False
        return True

    # Nodes

    def create_node(self, node: Node) -> Node:
        """Insert a node and return it with its id and timestamps."""
        now = to_timestamp(self.clock())
        row = self._fetchone(
            """
            INSERT INTO graph_nodes
                (type, label, body, embedding, strength, access_count,
                 last_accessed, category, metadata, memory_id, created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                node.type.value,
                node.label,
                node.body or "",
                json.dumps(node.embedding) if node.embedding is not None else None,
                node.strength,
                now,
                node.category,
                json.dumps(node.metadata or {}),
                node.memory_id,
                now,
            ),
        )
        return self._row_to_node(self._require(row))

    def update_node(self, node_id: int, **fields: Any) -> Node | None:
        """Update the given columns of a node.

        Returns:
            The updated node, or None if it does not exist.
        """
        unknown = set(fields) - _UPDATABLE_NODE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update node fields: {sorted(unknown)}")
        if not fields:
            return self.get_node(node_id)

        columns = []
        values: list[Any] = []
        for name, value in fields.items():
            if name == "type":
                value = NodeType.from_raw(value).value
            elif name == "embedding":
                value = json.dumps(value) if value is not None else None
            elif name == "metadata":
                value = json.dumps(value or {})
            columns.append(f"{name} = ?")
            values.append(value)

        row = self._fetchone(
            f"UPDATE graph_nodes SET {', '.join(columns)} WHERE id = ? RETURNING *",
            (*values, node_id),
        )
        return self._row_to_node(row) if row is not None else None

    def get_node(self, node_id: int) -> Node | None:
        row = self._fetchone("SELECT * FROM graph_nodes WHERE id = ?", (node_id,))
        return self._row_to_node(row) if row is not None else None

    def find_by_label(self, label: str, node_type: NodeType | None = None) -> Node | None:
        """Find a node by case-insensitive label, optionally restricted to a type."""
        if node_type is None:
            row = self._fetchone(
                "SELECT * FROM graph_nodes WHERE LOWER(label) = LOWER(?) ORDER BY id LIMIT 1",
                (label,),
            )
        else:
            row = self._fetchone(
                "SELECT * FROM graph_nodes WHERE LOWER(label) = LOWER(?) AND type = ? "
                "ORDER BY id LIMIT 1",
                (label, node_type.value),
            )
        return self._row_to_node(row) if row is not None else None

    def find_nearest(self, vector: list[float], k: int = 5) -> list[tuple[Node, float]]:
        """Return up to k embedded nodes ranked by cosine similarity to vector."""
        if k <= 0:
            return []
        rows = self._fetchall("SELECT * FROM graph_nodes WHERE embedding IS NOT NULL")
        scored = []
        for node in self._readable_nodes(rows):
            if node.embedding:
                scored.append((node, cosine_similarity(vector, node.embedding)))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]

    def get_core_nodes(self) -> list[Node]:
        """All core nodes, newest first."""
        rows = self._fetchall(
            "SELECT * FROM graph_nodes WHERE category = ? ORDER BY created_at DESC, id DESC",
            (CORE_CATEGORY,),
        )
        return self._readable_nodes(rows)

    def get_all_nodes(self) -> list[Node]:
        rows = self._fetchall("SELECT * FROM graph_nodes ORDER BY strength DESC, id")
        return self._readable_nodes(rows)

    def touch(self, node_id: int) -> None:
        """Record an access: bump access_count, last_accessed, and strength."""
        self._execute(
            """
            UPDATE graph_nodes
            SET access_count = access_count + 1,
                last_accessed = ?,
                strength = MIN(strength + ?, ?)
            WHERE id = ?
            """,
            (to_timestamp(self.clock()), TOUCH_STRENGTH_INCREMENT, MAX_NODE_STRENGTH, node_id),
        )

    def decay_strengths(self) -> int:
        """Decay the strength of non-core nodes idle for more than an hour.

        Returns:
            Number of nodes decayed.
        """
        cutoff = to_timestamp(self.clock() - DECAY_IDLE)
        cursor = self._execute(
            """
            UPDATE graph_nodes
            SET strength = MAX(strength * ?, ?)
            WHERE (category IS NULL OR category != ?)
              AND last_accessed < ?
            """,
            (DECAY_FACTOR, MIN_NODE_STRENGTH, CORE_CATEGORY, cutoff),
        )
        return cursor.rowcount

    # Edges

    def get_all_edges(self) -> list[Edge]:
        rows = self._fetchall("SELECT * FROM graph_edges ORDER BY weight DESC, id")
        return [self._row_to_edge(row) for row in rows]

    def get_edges_from(self, node_id: int) -> list[Edge]:
        rows = self._fetchall(
            "SELECT * FROM graph_edges WHERE source_id = ? ORDER BY id", (node_id,)
        )
        return [self._row_to_edge(row) for row in rows]

    def get_edges_to(self, node_id: int) -> list[Edge]:
        rows = self._fetchall(
            "SELECT * FROM graph_edges WHERE target_id = ? ORDER BY id", (node_id,)
        )
        return [self._row_to_edge(row) for row in rows]

    def upsert_edge(self, source_id: int, target_id: int, relation: str) -> Edge:
        """Create an edge, or reinforce it if the exact triple already exists."""
        row = self._fetchone(
            """
            INSERT INTO graph_edges (source_id, target_id, relation, weight, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source_id, target_id, relation) DO UPDATE SET
                weight = MIN(graph_edges.weight + ?, ?)
            RETURNING *
            """,
            (
                source_id,
                target_id,
                relation,
                DEFAULT_EDGE_WEIGHT,
                to_timestamp(self.clock()),
                UPSERT_INCREMENT,
                MAX_EDGE_WEIGHT,
            ),
        )
        return self._row_to_edge(self._require(row))

    def strengthen_edge(self, edge_id: int) -> None:
        self._execute(
            "UPDATE graph_edges SET weight = MIN(weight + ?, ?) WHERE id = ?",
            (STRENGTHEN_INCREMENT, MAX_EDGE_WEIGHT, edge_id),
        )

    # Messages and summaries

    def add_message(
        self,
        role: str,
        content: str,
        created_at: datetime | None = None,
        medium: str = "text",
    ) -> Message:
        created = created_at or self.clock()
        row = self._fetchone(
            "INSERT INTO messages (role, content, medium, created_at) VALUES (?, ?, ?, ?) "
            "RETURNING *",
            (role, content, medium, to_timestamp(created)),
        )
        return self._row_to_message(self._require(row))

    def get_last_message_time(self) -> datetime | None:
        """Timestamp of the most recent user or assistant message."""
        row = self._fetchone(
            "SELECT MAX(created_at) AS created_at FROM messages WHERE role IN (?, ?)",
            CONVERSATION_ROLES,
        )
        if row is None or row["created_at"] is None:
            return None
        return from_timestamp(row["created_at"])

    def get_message_times(self, after: datetime | None = None) -> list[datetime]:
        """Timestamps of user/assistant messages, oldest first."""
        return [m.created_at for m in self.get_messages(after=after)]

    def get_messages(
        self,
        after: datetime | None = None,
        before: datetime | None = None,
        limit: int | None = None,
        since: datetime | None = None,
    ) -> list[Message]:
        """User/assistant messages in a time range, oldest first.

        `after` and `before` are exclusive bounds, `since` is inclusive. With a
        limit, the most recent `limit` messages in the range are returned.
        """
        clauses = ["role IN (?, ?)"]
        params: list[Any] = list(CONVERSATION_ROLES)
        if after is not None:
            clauses.append("created_at > ?")
            params.append(to_timestamp(after))
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_timestamp(since))
        if before is not None:
            clauses.append("created_at < ?")
            params.append(to_timestamp(before))

        sql = f"SELECT * FROM messages WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._fetchall(sql, tuple(params))
        return [self._row_to_message(row) for row in reversed(rows)]

    def add_summary(
        self,
        content: str,
        covers_until: datetime,
        token_estimate: int | None = None,
    ) -> Summary:
        row = self._fetchone(
            "INSERT INTO summaries (content, covers_until, token_estimate, created_at) "
            "VALUES (?, ?, ?, ?) RETURNING *",
            (content, to_timestamp(covers_until), token_estimate, to_timestamp(self.clock())),
        )
        return self._row_to_summary(self._require(row))

    def get_latest_summary(self) -> Summary | None:
        row = self._fetchone(
            "SELECT * FROM summaries ORDER BY covers_until DESC, id DESC LIMIT 1"
        )
        return self._row_to_summary(row) if row is not None else None

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _row_to_node(self, row: sqlite3.Row) -> Node:
        """Convert a database row to a Node.

        Raises:
            StoreUnavailable: If a JSON or timestamp column does not decode.
        """
        try:
            return Node(
                id=row["id"],
                type=NodeType.from_raw(row["type"]),
                label=row["label"],
                body=row["body"] or "",
                category=row["category"],
                strength=row["strength"],
                embedding=json.loads(row["embedding"]) if row["embedding"] else None,
                access_count=row["access_count"],
                last_accessed=from_timestamp(row["last_accessed"]),
                metadata=json.loads(row["metadata"] or "{}"),
                memory_id=row["memory_id"],
                created_at=from_timestamp(row["created_at"]),
            )
        except (TypeError, ValueError) as e:
            raise StoreUnavailable(f"Corrupt node row {row['id']}: {e}") from e

    def _readable_nodes(self, rows: list[sqlite3.Row]) -> list[Node]:
        """Convert rows to nodes, skipping rows that do not decode."""
        nodes = []
        for row in rows:
            try:
                nodes.append(self._row_to_node(row))
            except StoreUnavailable as e:
                logger.warning("Skipping node: %s", e)
        return nodes

    def _row_to_edge(self, row: sqlite3.Row) -> Edge:
        return Edge(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relation=row["relation"],
            weight=row["weight"],
            created_at=from_timestamp(row["created_at"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            role=row["role"],
            content=row["content"],
            medium=row["medium"],
            created_at=from_timestamp(row["created_at"]),
        )

    def _row_to_summary(self, row: sqlite3.Row) -> Summary:
        return Summary(
            id=row["id"],
            content=row["content"],
            covers_until=from_timestamp(row["covers_until"]),
            token_estimate=row["token_estimate"],
            created_at=from_timestamp(row["created_at"]),
        )
