"""
Store Configuration - Centralized settings for the feature store.

Uses environment variables with sensible defaults. All paths are resolved
to absolute paths for reliability.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set, Tuple


@dataclass
class StoreConfig:
    """
    Configuration for the feature store.

    The database defaults to ~/.featurestore/features.db.
    Concurrency limits are tuned for typical desktop hardware.
    """

    # --- Paths ---
    db_path: Path = field(
        default_factory=lambda: Path.home() / ".featurestore" / "features.db"
    )

    # --- Limits ---
    max_resource_size: int = 100 * 1024 * 1024  # 100 MiB
    default_ttl: int = 3600                      # Seconds a feature stays fresh
    index_ttl: int = 86400                       # TTL for background directory indexing

    # --- Concurrency Limits ---
    provider_concurrency: int = 5   # Provider calls in flight across the process
    index_concurrency: int = 3      # Files processed at once per indexing pass
    executor_workers: int = 8       # Thread pool for blocking work

    # --- Directory Indexing ---
    background_indexing: bool = True  # Index a file's directory after extracting it
    background_max_files: int = 50  # Cap for sibling indexing triggered by a file
    index_max_files: int = 100      # Default cap for explicit indexing

    # --- Timeouts (seconds) ---
    provider_timeout: Optional[float] = None  # None = wait indefinitely
    fetch_timeout: float = 30.0
    busy_timeout_ms: int = 5000

    # --- Network ---
    user_agent: str = "featurestore/1.0"

    # --- Skip Patterns ---
    skip_dirs: Set[str] = field(default_factory=lambda: {
        # Version control
        ".git", ".svn", ".hg",
        # Dependencies
        "node_modules", "__pycache__", ".venv", "venv",
        # Build outputs
        "build", "dist", "target", ".next",
        # IDE/Editor
        ".idea", ".vscode",
        # Cache
        ".cache", ".pytest_cache", ".mypy_cache",
    })

    skip_files: Set[str] = field(default_factory=lambda: {
        ".DS_Store", "Thumbs.db", "desktop.ini",
    })

    # --- Image Provider ---
    thumbnail_small: Tuple[int, int] = (150, 150)
    thumbnail_medium: Tuple[int, int] = (400, 400)
    thumbnail_large: Tuple[int, int] = (1920, 1080)

    # --- Video Provider ---
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    snapshot_width: int = 400

    # --- Text / Embedding Providers ---
    text_content_limit: int = 10000  # Characters kept in text.content
    keyword_count: int = 10
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_batch_size: int = 32
    chunk_size: int = 2000
    chunk_overlap: int = 200

    def __post_init__(self):
        """Ensure the database path is absolute and its directory exists."""
        self.db_path = Path(self.db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """
        Create config from environment variables.

        Supported env vars:
            FEATURESTORE_DB_PATH: Path to SQLite database
            FEATURESTORE_MAX_SIZE: Maximum resource size in bytes
            FEATURESTORE_DEFAULT_TTL: Default feature TTL in seconds
            FEATURESTORE_PROVIDER_CONCURRENCY: Parallel provider calls
            FEATURESTORE_PROVIDER_TIMEOUT: Per-provider timeout in seconds
            FEATURESTORE_EMBEDDING_MODEL: sentence-transformers model name
            FEATURESTORE_BACKGROUND_INDEXING: 0 to disable sibling indexing
        """
        config = cls()

        if db_path := os.environ.get("FEATURESTORE_DB_PATH"):
            config.db_path = Path(db_path)

        if max_size := os.environ.get("FEATURESTORE_MAX_SIZE"):
            config.max_resource_size = int(max_size)

        if ttl := os.environ.get("FEATURESTORE_DEFAULT_TTL"):
            config.default_ttl = int(ttl)

        if concurrency := os.environ.get("FEATURESTORE_PROVIDER_CONCURRENCY"):
            config.provider_concurrency = int(concurrency)

        if timeout := os.environ.get("FEATURESTORE_PROVIDER_TIMEOUT"):
            config.provider_timeout = float(timeout)

        if model := os.environ.get("FEATURESTORE_EMBEDDING_MODEL"):
            config.embedding_model = model

        if background := os.environ.get("FEATURESTORE_BACKGROUND_INDEXING"):
            config.background_indexing = background.lower() not in ("0", "false", "no")

        config.__post_init__()
        return config


# Singleton default config
_default_config: StoreConfig | None = None


def get_config() -> StoreConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = StoreConfig.from_env()
    return _default_config


def set_config(config: StoreConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
