"""Shared fixtures for graph memory tests."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from mnemos.errors import EmbeddingError
from mnemos.logging import JSONLLogger, configure_logger
from mnemos.store import GraphStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeEmbedder:
    """Embedder returning preset vectors, failing for unknown text."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text not in self.vectors:
            raise EmbeddingError(f"no vector for {text!r}")
        return self.vectors[text]


class FailingEmbedder:
    """Embedder whose provider is always down."""

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        raise EmbeddingError("provider unavailable")


@pytest.fixture(autouse=True)
def event_log(tmp_path: Path) -> JSONLLogger:
    """Route the global event log to a temporary directory."""
    return configure_logger(log_dir=tmp_path / "logs")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(tmp_path: Path, clock: FixedClock) -> GraphStore:
    """Create a GraphStore with a temporary database."""
    store = GraphStore(tmp_path / "graph.db", clock=clock)
    store.init_db()
    yield store
    store.close()
