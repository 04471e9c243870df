"""Structured event log for memory operations.

Every event is appended as one JSON object per line. Events recording an
operation that fell back to degraded mode are also tallied in memory by
reason, so a caller can tell how often a gateway has been failing without
reading the file back.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".mnemos" / "logs"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogEntry:
    """One line of the event log. Unset fields are not written."""

    event: str
    timestamp: str = field(default_factory=_now)
    operation: str | None = None
    reason: str | None = None
    error: str | None = None
    duration_ms: float | None = None
    counts: dict[str, int] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "event": self.event}
        for name in ("operation", "reason", "error", "duration_ms"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        data.update(self.counts)
        if self.extra:
            data["extra"] = self.extra
        return data


class JSONLLogger:
    """Appends LogEntry records to a JSONL file with size-based rollover."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._degraded: Counter[str] = Counter()

    @property
    def log_path(self) -> Path:
        return self.log_dir / self.filename

    def _roll_over(self) -> None:
        """Move a full log file aside under a timestamped name."""
        path = self.log_path
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.max_size_bytes:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        path.rename(path.with_name(f"{path.stem}-{stamp}{path.suffix}"))

    def write(self, entry: LogEntry) -> None:
        """Append one entry. An entry that cannot be written is dropped."""
        line = json.dumps(entry.to_dict(), ensure_ascii=False, default=str)
        try:
            self._roll_over()
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning("Dropping %s event, log not writable: %s", entry.event, e)

    def log(
        self,
        event: str,
        *,
        operation: str | None = None,
        reason: str | None = None,
        error: str | None = None,
        duration_ms: float | None = None,
        counts: dict[str, int] | None = None,
        **extra: Any,
    ) -> None:
        """Record an event. Extra keyword arguments set to None are dropped."""
        self.write(
            LogEntry(
                event=event,
                operation=operation,
                reason=reason,
                error=error,
                duration_ms=duration_ms,
                counts=dict(counts or {}),
                extra={k: v for k, v in extra.items() if v is not None},
            )
        )

    def log_ingest(
        self,
        nodes_created: int,
        edges_created: int,
        *,
        duration_ms: float | None = None,
        entities: int | None = None,
        relations: int | None = None,
    ) -> None:
        self.log(
            "ingest",
            duration_ms=duration_ms,
            counts={"nodes_created": nodes_created, "edges_created": edges_created},
            entities=entities,
            relations=relations,
        )

    def log_activate(
        self,
        results: int,
        *,
        seeds: int | None = None,
        hops: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        self.log(
            "activate",
            duration_ms=duration_ms,
            counts={"results": results},
            seeds=seeds,
            hops=hops,
        )

    def log_degraded(
        self,
        operation: str,
        reason: str,
        *,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Record that an operation continued without one of its dependencies."""
        self._degraded[reason] += 1
        self.log("degraded", operation=operation, reason=reason, error=error, **extra)

    def degraded_counts(self) -> dict[str, int]:
        """Degraded events seen by this logger, keyed by reason."""
        return dict(self._degraded)


_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """The process-wide event log, created on first use."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Replace the process-wide event log."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
