from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError
from .local_search.constants import DEFAULT_EXTENSIONS

APP_NAME = "HereIAm"

# Model settings
EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEV_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"  # smaller download, loads faster
EMBEDDING_BACKENDS = ("subprocess", "inprocess")

# Chunking settings (characters)
PARAGRAPH_CHUNK_SIZE = 1000
PAGE_CHUNK_SIZE = 3000
DEV_PARAGRAPH_CHUNK_SIZE = 2000
DEV_MAX_CHUNKS_PER_FILE = 3

# Processing settings
BATCH_SIZE = 5
EMBED_TIMEOUT = 300.0
EMBED_RETRIES = 1

# Search settings
TOP_K_RESULTS = 5

# File names under the data dir
DB_FILENAME = "hereiam.sqlite3"
INDEX_FILENAME = "vectors.faiss"
SESSION_FILENAME = "session.json"
MODEL_CACHE_DIRNAME = "model_cache"

_TRUTHY = {"1", "true", "yes", "on"}


def default_data_dir() -> Path:
    """Per-user application data directory."""
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / APP_NAME.lower()


@dataclass
class Settings:
    data_dir: Path = field(default_factory=default_data_dir)
    model_name: str = EMBEDDING_MODEL
    embedding_backend: str = "subprocess"
    embed_timeout: float = EMBED_TIMEOUT
    embed_retries: int = EMBED_RETRIES
    paragraph_chunk_size: int = PARAGRAPH_CHUNK_SIZE
    page_chunk_size: int = PAGE_CHUNK_SIZE
    max_chunks_per_file: Optional[int] = None
    batch_size: int = BATCH_SIZE
    max_files: Optional[int] = None
    top_k: int = TOP_K_RESULTS
    default_extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[Path] = None
    dev_mode: bool = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def index_path(self) -> Path:
        return self.data_dir / INDEX_FILENAME

    @property
    def session_path(self) -> Path:
        return self.data_dir / SESSION_FILENAME

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / MODEL_CACHE_DIRNAME

    def chunk_sizes(self) -> dict[str, int]:
        # document granularity ignores the size, it is listed for completeness
        return {
            "paragraph": self.paragraph_chunk_size,
            "page": self.page_chunk_size,
            "document": max(self.page_chunk_size, self.paragraph_chunk_size),
        }

    def validate(self) -> "Settings":
        if self.embedding_backend not in EMBEDDING_BACKENDS:
            raise ConfigError.invalid_value(
                "embedding_backend", self.embedding_backend, f"expected one of {EMBEDDING_BACKENDS}"
            )
        for name in ("paragraph_chunk_size", "page_chunk_size", "batch_size", "top_k"):
            if int(getattr(self, name)) <= 0:
                raise ConfigError.invalid_value(name, getattr(self, name), "must be positive")
        if self.embed_timeout <= 0:
            raise ConfigError.invalid_value("embed_timeout", self.embed_timeout, "must be positive")
        if self.embed_retries < 0:
            raise ConfigError.invalid_value("embed_retries", self.embed_retries, "must not be negative")
        for name in ("max_chunks_per_file", "max_files"):
            value = getattr(self, name)
            if value is not None and int(value) <= 0:
                raise ConfigError.invalid_value(name, value, "must be positive when set")
        if not self.model_name.strip():
            raise ConfigError.invalid_value("model_name", self.model_name, "must not be empty")
        return self

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError.invalid_value(name, raw, "expected an integer") from None


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigError.invalid_value(name, raw, "expected a number") from None


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in _TRUTHY


def load_settings(**overrides: Any) -> Settings:
    """Build settings from defaults, HEREIAM_* environment variables and overrides.

    Dev mode mirrors the desktop app's development profile: a smaller model,
    larger paragraph chunks and at most a few chunks per file.
    """
    dev_mode = overrides.get("dev_mode")
    if dev_mode is None:
        dev_mode = bool(_env_bool("HEREIAM_DEV_MODE"))

    settings = Settings(dev_mode=dev_mode)
    if dev_mode:
        settings = replace(
            settings,
            model_name=DEV_EMBEDDING_MODEL,
            paragraph_chunk_size=DEV_PARAGRAPH_CHUNK_SIZE,
            max_chunks_per_file=DEV_MAX_CHUNKS_PER_FILE,
        )

    env: dict[str, Any] = {}
    if os.environ.get("HEREIAM_DATA_DIR"):
        env["data_dir"] = Path(os.environ["HEREIAM_DATA_DIR"]).expanduser()
    if os.environ.get("HEREIAM_MODEL"):
        env["model_name"] = os.environ["HEREIAM_MODEL"]
    if os.environ.get("HEREIAM_EMBED_BACKEND"):
        env["embedding_backend"] = os.environ["HEREIAM_EMBED_BACKEND"].strip().lower()
    if os.environ.get("HEREIAM_LOG_LEVEL"):
        env["log_level"] = os.environ["HEREIAM_LOG_LEVEL"].upper()
    if os.environ.get("HEREIAM_LOG_FILE"):
        env["log_file"] = Path(os.environ["HEREIAM_LOG_FILE"]).expanduser()
    for key, value in (
        ("embed_timeout", _env_float("HEREIAM_EMBED_TIMEOUT")),
        ("batch_size", _env_int("HEREIAM_BATCH_SIZE")),
        ("max_files", _env_int("HEREIAM_MAX_FILES")),
        ("top_k", _env_int("HEREIAM_TOP_K")),
        ("log_json", _env_bool("HEREIAM_LOG_JSON")),
    ):
        if value is not None:
            env[key] = value

    env.update({k: v for k, v in overrides.items() if v is not None and k != "dev_mode"})
    unknown = set(env) - set(Settings.__dataclass_fields__)
    if unknown:
        raise ConfigError.invalid_value(sorted(unknown)[0], None, "unknown setting")
    if "data_dir" in env:
        env["data_dir"] = Path(env["data_dir"])
    if "default_extensions" in env:
        env["default_extensions"] = tuple(env["default_extensions"])

    return replace(settings, **env).validate()


__all__ = [
    "APP_NAME",
    "Settings",
    "default_data_dir",
    "load_settings",
]
