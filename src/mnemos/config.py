"""Configuration for the graph memory."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

DEFAULT_HOME = Path.home() / ".mnemos"


@dataclass
class MemoryConfig:
    """Settings for the store, gateways, and engines."""

    db_path: Path | None = None
    log_dir: Path | None = None
    groq_api_key: str | None = None
    extraction_model: str = "llama-3.1-70b-versatile"
    embedding_api_key: str | None = None
    embedding_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "openai/text-embedding-3-small"
    extraction_timeout: float = 30.0
    embedding_timeout: float = 10.0
    session_gap_minutes: float = 30.0
    reembed_on_merge: bool = False

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = DEFAULT_HOME / "graph.db"
        if self.log_dir is None:
            self.log_dir = DEFAULT_HOME / "logs"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name)
    return Path(value).expanduser() if value else None


def config_from_env() -> MemoryConfig:
    """Load configuration from environment variables."""
    return MemoryConfig(
        db_path=_env_path("MNEMOS_DB_PATH"),
        log_dir=_env_path("MNEMOS_LOG_DIR"),
        groq_api_key=os.getenv("GROQ_API_KEY"),
        extraction_model=os.getenv("GROQ_MODEL", "llama-3.1-70b-versatile"),
        embedding_api_key=os.getenv("EMBEDDING_API_KEY"),
        embedding_base_url=os.getenv("EMBEDDING_BASE_URL", "https://openrouter.ai/api/v1"),
        embedding_model=os.getenv("EMBEDDING_MODEL", "openai/text-embedding-3-small"),
        extraction_timeout=float(os.getenv("MNEMOS_EXTRACTION_TIMEOUT", "30")),
        embedding_timeout=float(os.getenv("MNEMOS_EMBEDDING_TIMEOUT", "10")),
        session_gap_minutes=float(os.getenv("MNEMOS_SESSION_GAP_MINUTES", "30")),
        reembed_on_merge=_env_bool("MNEMOS_REEMBED_ON_MERGE", False),
    )


def load_config() -> MemoryConfig:
    """Load .env (searching from the working directory) and then the environment."""
    load_dotenv(find_dotenv(usecwd=True))
    return config_from_env()
