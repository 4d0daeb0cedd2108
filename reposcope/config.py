# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for RepoScope.

Loads configuration from a JSON file with fallback to environment variables.
Components receive immutable settings views (``ChunkingSettings`` and friends)
derived from a validated ``Config`` instead of reading the global instance.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_KIND_WEIGHTS = {
    "function": 0.05,
    "class": 0.04,
    "block": 0.0,
    "whole_file": 0.01,
}

DEFAULT_IGNORE_DIRS = [
    # Version control
    ".git", ".hg", ".svn",
    # Python
    "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox",
    "build", "dist", ".eggs", "htmlcov",
    # Virtual environments
    "venv", ".venv", "env",
    # IDE
    ".vscode", ".idea",
    # Node.js
    "node_modules",
    # Other build systems
    "target",
    # RepoScope runtime
    ".reposcope_index", ".reposcope",
]

DEFAULT_IGNORE_EXTENSIONS = [
    ".pyc", ".pyo", ".pyd",
    ".so", ".o", ".a", ".dylib", ".dll", ".exe", ".bin", ".obj", ".lib",
    ".zip", ".tar", ".gz", ".bz2", ".xz", ".rar", ".7z", ".egg",
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".svg", ".ico",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv",
    ".woff", ".woff2", ".ttf", ".eot",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".log", ".tmp", ".swp", ".lock",
]


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


@dataclass(frozen=True)
class ChunkingSettings:
    max_chunk_tokens: int = 512
    overlap_lines: int = 5
    max_overlap_lines: int = 20
    max_chunk_lines: int = 200
    attach_gap_lines: int = 5
    tokenizer: str = "cl100k_base"

    def validate(self) -> "ChunkingSettings":
        if self.max_chunk_tokens < 1:
            raise ConfigurationError(
                f"chunking.max_chunk_tokens must be >= 1, got {self.max_chunk_tokens}"
            )
        if self.max_chunk_lines < 1:
            raise ConfigurationError(
                f"chunking.max_chunk_lines must be >= 1, got {self.max_chunk_lines}"
            )
        if self.overlap_lines < 0 or self.max_overlap_lines < 0:
            raise ConfigurationError("chunking overlap values must be non-negative")
        if self.overlap_lines > self.max_overlap_lines:
            raise ConfigurationError(
                f"chunking.overlap_lines ({self.overlap_lines}) exceeds "
                f"chunking.max_overlap_lines ({self.max_overlap_lines})"
            )
        if self.overlap_lines >= self.max_chunk_lines:
            raise ConfigurationError(
                f"chunking.overlap_lines ({self.overlap_lines}) must be smaller than "
                f"chunking.max_chunk_lines ({self.max_chunk_lines})"
            )
        if self.attach_gap_lines < 0:
            raise ConfigurationError("chunking.attach_gap_lines must be non-negative")
        if not self.tokenizer:
            raise ConfigurationError("chunking.tokenizer must be set")
        return self


@dataclass(frozen=True)
class EmbeddingSettings:
    provider: str = "sentence-transformers"
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    batch_size: int = 32
    max_concurrency: int = 4
    max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    cache_dir: Optional[str] = None

    def validate(self) -> "EmbeddingSettings":
        if self.dimension < 1:
            raise ConfigurationError(f"embeddings.dimension must be >= 1, got {self.dimension}")
        if self.batch_size < 1:
            raise ConfigurationError(f"embeddings.batch_size must be >= 1, got {self.batch_size}")
        if self.max_concurrency < 1:
            raise ConfigurationError(
                f"embeddings.max_concurrency must be >= 1, got {self.max_concurrency}"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"embeddings.max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ConfigurationError("embeddings backoff values must be non-negative")
        return self


@dataclass(frozen=True)
class RetrievalSettings:
    candidate_pool_factor: int = 5
    max_candidates: int = 200
    similarity_weight: float = 1.0
    lexical_weight: float = 0.15
    proximity_weight: float = 0.05
    proximity_lines: int = 40
    kind_weights: tuple[tuple[str, float], ...] = tuple(DEFAULT_KIND_WEIGHTS.items())
    stitch_gap_lines: int = 3

    def validate(self) -> "RetrievalSettings":
        if self.similarity_weight <= 0:
            raise ConfigurationError(
                "retrieval.similarity_weight must be positive so ranking stays "
                "monotonic in similarity"
            )
        if self.lexical_weight < 0 or self.proximity_weight < 0:
            raise ConfigurationError("retrieval signal weights must be non-negative")
        if self.candidate_pool_factor < 1 or self.max_candidates < 1:
            raise ConfigurationError("retrieval candidate pool settings must be >= 1")
        if self.stitch_gap_lines < 0:
            raise ConfigurationError("retrieval.stitch_gap_lines must be non-negative")
        if self.proximity_lines < 0:
            raise ConfigurationError("retrieval.proximity_lines must be non-negative")
        return self

    @property
    def kind_weight_map(self) -> dict[str, float]:
        return dict(self.kind_weights)


class Config:
    """Configuration manager for RepoScope."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to a JSON config file. If None, searches in:
                1. ./reposcope.json (current directory)
                2. ~/.reposcope/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                f"Config path {config_path} does not exist, "
                "using environment variables"
            )
            self._load_from_env()
            return

        local_config = Path("reposcope.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".reposcope" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config file found, using environment variables")
        self._load_from_env()

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r") as f:
                self.config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Error loading config from {path}: {exc}") from exc
        if not isinstance(self.config_data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        logger.info(f"Loaded configuration from {path}")

    def _load_from_env(self):
        """Load configuration from environment variables."""
        self.config_data = {
            "server": {
                "log_level": os.getenv("REPOSCOPE_LOG_LEVEL", "INFO"),
            },
            "admin": {
                "enabled": os.getenv("REPOSCOPE_ADMIN_ENABLED", "true").lower() == "true",
                "host": os.getenv("REPOSCOPE_ADMIN_HOST", "127.0.0.1"),
                "port": int(os.getenv("REPOSCOPE_ADMIN_PORT", "8765")),
                "api_key": os.getenv("REPOSCOPE_ADMIN_API_KEY") or None,
                "allowed_ips": _parse_csv_list(
                    os.getenv("REPOSCOPE_ADMIN_ALLOWED_IPS", "127.0.0.1,::1")
                ),
            },
            "embeddings": {
                "provider": os.getenv("REPOSCOPE_EMBED_PROVIDER", "sentence-transformers"),
                "model": os.getenv(
                    "REPOSCOPE_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
                ),
            },
            "repositories": self._parse_repo_map(os.getenv("REPOSCOPE_REPO_MAP", "")),
            "index": {
                "path": os.getenv("REPOSCOPE_INDEX_PATH", "~/.reposcope_index"),
                "backend": os.getenv("REPOSCOPE_INDEX_BACKEND", "lance"),
            },
        }

    def _parse_repo_map(self, repo_map_str: str) -> Dict[str, str]:
        """Parse REPOSCOPE_REPO_MAP (``name:path;name:path``)."""
        repos = {}
        if not repo_map_str:
            return repos

        for entry in repo_map_str.split(";"):
            entry = entry.strip()
            if not entry or ":" not in entry:
                continue
            name, path = entry.split(":", 1)
            repos[name.strip()] = path.strip()

        return repos

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def _typed(self, key: str, default: Any, cast: type) -> Any:
        raw = self.get(key, default)
        try:
            return cast(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for {key}: {raw!r}") from exc

    @property
    def log_level(self) -> str:
        return self.get("server.log_level", "INFO")

    @property
    def log_file(self) -> Optional[str]:
        """Get log file path from config or environment."""
        env_log_file = os.getenv("REPOSCOPE_LOG_FILE")
        if env_log_file:
            return env_log_file
        return self.get("server.log_file") or None

    @property
    def repositories(self) -> Dict[str, str]:
        return self.get("repositories", {})

    @property
    def index_path(self) -> Path:
        path_str = self.get("index.path", "~/.reposcope_index")
        return Path(path_str).expanduser().resolve()

    @property
    def index_backend(self) -> str:
        return str(self.get("index.backend", "lance")).lower()

    @property
    def index_table(self) -> str:
        return self.get("index.table", "code_chunks")

    @property
    def index_write_batch_size(self) -> int:
        value = self._typed("index.write_batch_size", 256, int)
        if value < 1:
            raise ConfigurationError(f"index.write_batch_size must be >= 1, got {value}")
        return value

    @property
    def lance_dir(self) -> Path:
        """Directory used by LanceDB, defaulting to ``index_path / "lancedb"``."""
        path_str = self.get("index.lance_dir")
        if path_str:
            return Path(path_str).expanduser().resolve()
        return self.index_path / "lancedb"

    @property
    def revisions_db_path(self) -> Path:
        return self.index_path / "revisions.db"

    @property
    def segment_workers(self) -> int:
        worker_env = os.getenv("REPOSCOPE_INDEX_WORKERS")
        raw = worker_env or self.get("workers.segment")
        if raw is None:
            return max(1, (os.cpu_count() or 2) - 1)
        try:
            return max(1, int(raw))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid segment worker count: {raw!r}") from exc

    @property
    def snapshot_ignore_dirs(self) -> list[str]:
        return self.get("snapshot.ignore_dirs", DEFAULT_IGNORE_DIRS)

    @property
    def snapshot_ignore_extensions(self) -> list[str]:
        return self.get("snapshot.ignore_extensions", DEFAULT_IGNORE_EXTENSIONS)

    @property
    def snapshot_max_file_bytes(self) -> int:
        return self._typed("snapshot.max_file_bytes", 1_000_000, int)

    @property
    def chunking(self) -> ChunkingSettings:
        return ChunkingSettings(
            max_chunk_tokens=self._typed("chunking.max_chunk_tokens", 512, int),
            overlap_lines=self._typed("chunking.overlap_lines", 5, int),
            max_overlap_lines=self._typed("chunking.max_overlap_lines", 20, int),
            max_chunk_lines=self._typed("chunking.max_chunk_lines", 200, int),
            attach_gap_lines=self._typed("chunking.attach_gap_lines", 5, int),
            tokenizer=str(self.get("chunking.tokenizer", "cl100k_base")),
        ).validate()

    @property
    def embeddings(self) -> EmbeddingSettings:
        return EmbeddingSettings(
            provider=str(self.get("embeddings.provider", "sentence-transformers")),
            model=str(self.get("embeddings.model", "sentence-transformers/all-MiniLM-L6-v2")),
            dimension=self._typed("embeddings.dimension", 384, int),
            batch_size=self._typed("embeddings.batch_size", 32, int),
            max_concurrency=self._typed("embeddings.max_concurrency", 4, int),
            max_attempts=self._typed("embeddings.max_attempts", 4, int),
            backoff_base_seconds=self._typed("embeddings.backoff_base_seconds", 0.5, float),
            backoff_max_seconds=self._typed("embeddings.backoff_max_seconds", 8.0, float),
            cache_dir=self.get("embeddings.cache_dir"),
        ).validate()

    @property
    def embeddings_kwargs(self) -> dict:
        """Get additional embeddings provider kwargs."""
        embeddings_config = self.get("embeddings", {})
        known_keys = {
            "provider",
            "model",
            "dimension",
            "batch_size",
            "max_concurrency",
            "max_attempts",
            "backoff_base_seconds",
            "backoff_max_seconds",
            "cache_dir",
        }
        return {k: v for k, v in embeddings_config.items() if k not in known_keys}

    @property
    def retrieval(self) -> RetrievalSettings:
        kind_weights = dict(DEFAULT_KIND_WEIGHTS)
        kind_weights.update(self.get("retrieval.kind_weights", {}) or {})
        return RetrievalSettings(
            candidate_pool_factor=self._typed("retrieval.candidate_pool_factor", 5, int),
            max_candidates=self._typed("retrieval.max_candidates", 200, int),
            similarity_weight=self._typed("retrieval.similarity_weight", 1.0, float),
            lexical_weight=self._typed("retrieval.lexical_weight", 0.15, float),
            proximity_weight=self._typed("retrieval.proximity_weight", 0.05, float),
            proximity_lines=self._typed("retrieval.proximity_lines", 40, int),
            kind_weights=tuple((str(k), float(v)) for k, v in kind_weights.items()),
            stitch_gap_lines=self._typed("retrieval.stitch_gap_lines", 3, int),
        ).validate()

    def validate(self) -> "Config":
        """Validate every section; raises ConfigurationError on the first problem."""
        _ = self.chunking
        _ = self.embeddings
        _ = self.retrieval
        _ = self.index_write_batch_size
        if self.index_backend not in {"lance", "memory"}:
            raise ConfigurationError(f"Unknown index.backend {self.index_backend!r}")
        return self

    # --- Admin API configuration ---

    @property
    def admin_enabled(self) -> bool:
        return self.get("admin.enabled", True)

    @property
    def admin_host(self) -> str:
        return self.get("admin.host", "127.0.0.1")

    @property
    def admin_port(self) -> int:
        return int(self.get("admin.port", 8765))

    @property
    def admin_api_key(self) -> Optional[str]:
        return self.get("admin.api_key")

    @property
    def admin_allowed_ips(self) -> list[str]:
        return self.get("admin.allowed_ips", ["127.0.0.1", "::1"])


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path).validate()
    return _config
