"""Configuration for qdrantsync.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. JSON file named by ``QDRANTSYNC_CONFIG`` (optional)
  3. ``.env.qdrant`` then ``.env`` in the working directory, then in an
     explicitly given sync root (python-dotenv)
  4. Real environment variables

:func:`load_settings` resolves everything once into an immutable
:class:`Settings`, which is then passed to every component.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from qdrantsync.chunker import TextChunker
from qdrantsync.embeddings import MODEL_DIMENSIONS
from qdrantsync.errors import ConfigurationError
from qdrantsync.retry import RetryPolicy
from qdrantsync.vectorstore import distance_for
from qdrantsync.walker import DEFAULT_EXCLUDE_DIRS, DEFAULT_INCLUDE_EXTENSIONS

ENV_FILES = (".env.qdrant", ".env")

POLICY_INCREMENTAL = "incremental"
POLICY_FULL = "full"
POLICIES = (POLICY_INCREMENTAL, POLICY_FULL)

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "qdrant_url": "http://localhost:6333",
    "qdrant_api_key": "",
    "collection": "repository-code",
    "qdrant_timeout": "30",
    "openai_api_key": "",
    "openai_base_url": "",
    "embedding_model": "text-embedding-3-small",
    "embedding_dimensions": "",  # Empty means the model's native size
    "embedding_batch_size": "100",
    "chunk_size": "1000",
    "chunk_overlap": "100",
    "batch_size": "100",
    "policy": POLICY_INCREMENTAL,
    "root": ".",
    "include_extensions": ",".join(sorted(DEFAULT_INCLUDE_EXTENSIONS)),
    "exclude_dirs": ",".join(sorted(DEFAULT_EXCLUDE_DIRS)),
    "respect_gitignore": "true",
    "distance": "cosine",
    "retry_max_attempts": "5",
    "retry_base_delay": "1.0",
    "retry_max_delay": "30.0",
}

# Config keys and the env-var names that set them
_ENV_MAP = {
    "qdrant_url": "QDRANT_URL",
    "qdrant_api_key": "QDRANT_API_KEY",
    "collection": "QDRANT_COLLECTION",
    "qdrant_timeout": "QDRANT_TIMEOUT",
    "openai_api_key": "OPENAI_API_KEY",
    "openai_base_url": "OPENAI_BASE_URL",
    "embedding_model": "EMBEDDING_MODEL",
    "embedding_dimensions": "EMBEDDING_DIMENSIONS",
    "embedding_batch_size": "EMBEDDING_BATCH_SIZE",
    "chunk_size": "CHUNK_SIZE",
    "chunk_overlap": "CHUNK_OVERLAP",
    "batch_size": "SYNC_BATCH_SIZE",
    "policy": "SYNC_POLICY",
    "root": "SYNC_ROOT",
    "include_extensions": "INCLUDE_EXTENSIONS",
    "exclude_dirs": "EXCLUDE_DIRS",
    "respect_gitignore": "RESPECT_GITIGNORE",
    "distance": "QDRANT_DISTANCE",
    "retry_max_attempts": "RETRY_MAX_ATTEMPTS",
    "retry_base_delay": "RETRY_BASE_DELAY",
    "retry_max_delay": "RETRY_MAX_DELAY",
}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Everything a sync run needs, resolved once at startup."""

    qdrant_url: str = _DEFAULTS["qdrant_url"]
    qdrant_api_key: str = ""
    collection: str = _DEFAULTS["collection"]
    qdrant_timeout: int = 30
    openai_api_key: str = ""
    openai_base_url: str = ""
    embedding_model: str = _DEFAULTS["embedding_model"]
    embedding_dimensions: int | None = None
    embedding_batch_size: int = 100
    chunk_size: int = 1000
    chunk_overlap: int = 100
    batch_size: int = 100
    policy: str = POLICY_INCREMENTAL
    root: Path = Path(".")
    include_extensions: frozenset[str] = DEFAULT_INCLUDE_EXTENSIONS
    exclude_dirs: frozenset[str] = DEFAULT_EXCLUDE_DIRS
    respect_gitignore: bool = True
    distance: str = "cosine"
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def vector_dimension(self) -> int | None:
        """Explicit dimension if configured, else the model's native size."""
        if self.embedding_dimensions:
            return self.embedding_dimensions
        return MODEL_DIMENSIONS.get(self.embedding_model)

    def validate(self) -> None:
        """Check credentials and parameters before any remote call.

        Raises:
            ConfigurationError: Naming every problem found.
        """
        problems = []
        if not self.openai_api_key:
            problems.append("OPENAI_API_KEY is not set")
        if not self.qdrant_api_key:
            problems.append("QDRANT_API_KEY is not set")
        if not self.qdrant_url:
            problems.append("QDRANT_URL is empty")
        if not self.collection:
            problems.append("QDRANT_COLLECTION is empty")
        if self.policy not in POLICIES:
            problems.append(
                f"SYNC_POLICY must be one of {', '.join(POLICIES)}, got {self.policy!r}"
            )
        if self.batch_size < 1:
            problems.append("SYNC_BATCH_SIZE must be at least 1")
        if self.embedding_batch_size < 1:
            problems.append("EMBEDDING_BATCH_SIZE must be at least 1")
        if self.vector_dimension is None:
            problems.append(
                f"Unknown vector size for model {self.embedding_model!r}; "
                "set EMBEDDING_DIMENSIONS"
            )
        if not self.root.is_dir():
            problems.append(f"Sync root {self.root} is not a directory")
        if not self.include_extensions:
            problems.append("INCLUDE_EXTENSIONS is empty")
        try:
            distance_for(self.distance)
        except ValueError as e:
            problems.append(str(e))
        if problems:
            raise ConfigurationError("; ".join(problems))
        # Raises ChunkerConfigurationError for a bad size/overlap pair
        self.build_chunker()

    def build_chunker(self) -> TextChunker:
        return TextChunker(self.chunk_size, self.chunk_overlap)


def _read_config_file(path: str) -> dict:
    """Load the optional JSON config file; a broken file is a config error."""
    if not path:
        return {}
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot load config file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
    return data


def _read_env_files(directory: Path) -> dict[str, str]:
    """Merge ``.env.qdrant`` and ``.env``; the first file wins on conflicts."""
    values: dict[str, str] = {}
    for name in reversed(ENV_FILES):
        path = directory / name
        if path.is_file():
            values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    return values


def _split_list(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def _as_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{_ENV_MAP[key]} must be an integer, got {raw!r}"
        ) from None


def _as_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{_ENV_MAP[key]} must be a number, got {raw!r}") from None


def load_settings(
    environ: Mapping[str, str] | None = None,
    env_dir: str | Path | None = None,
    **overrides: object,
) -> Settings:
    """Resolve configuration into a :class:`Settings`.

    Args:
        environ: Environment to read (defaults to ``os.environ``).
        env_dir: Directory holding ``.env.qdrant`` / ``.env`` (defaults to
            the working directory).  When a ``root`` override names another
            directory, its env files are read too and take precedence.
        **overrides: Config keys set explicitly (e.g. from the command line);
            ``None`` values are ignored.

    Raises:
        ConfigurationError: On unparsable values or a broken config file.
    """
    environ = os.environ if environ is None else environ
    env_dirs = [Path.cwd() if env_dir is None else Path(env_dir)]
    if overrides.get("root") is not None:
        root_dir = Path(str(overrides["root"]))
        if root_dir.resolve() != env_dirs[0].resolve():
            env_dirs.append(root_dir)

    file_cfg = _read_config_file(environ.get("QDRANTSYNC_CONFIG", ""))
    dotenv_cfg: dict[str, str] = {}
    for directory in env_dirs:
        dotenv_cfg.update(_read_env_files(directory))

    def _get(key: str) -> str:
        if overrides.get(key) is not None:
            return str(overrides[key])
        env_name = _ENV_MAP[key]
        # 4) env var  (highest priority)
        env_val = environ.get(env_name)
        if env_val:
            return env_val
        # 3) .env files
        env_val = dotenv_cfg.get(env_name)
        if env_val:
            return env_val
        # 2) JSON config file
        val = file_cfg.get(key)
        if val is not None and str(val):
            return str(val)
        # 1) built-in default
        return _DEFAULTS[key]

    dimensions = _get("embedding_dimensions")
    max_attempts = _as_int("retry_max_attempts", _get("retry_max_attempts"))
    if max_attempts < 1:
        raise ConfigurationError("RETRY_MAX_ATTEMPTS must be at least 1")
    retry = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=_as_float("retry_base_delay", _get("retry_base_delay")),
        max_delay=_as_float("retry_max_delay", _get("retry_max_delay")),
    )

    return Settings(
        qdrant_url=_get("qdrant_url"),
        qdrant_api_key=_get("qdrant_api_key"),
        collection=_get("collection"),
        qdrant_timeout=_as_int("qdrant_timeout", _get("qdrant_timeout")),
        openai_api_key=_get("openai_api_key"),
        openai_base_url=_get("openai_base_url"),
        embedding_model=_get("embedding_model"),
        embedding_dimensions=(
            _as_int("embedding_dimensions", dimensions) if dimensions else None
        ),
        embedding_batch_size=_as_int("embedding_batch_size", _get("embedding_batch_size")),
        chunk_size=_as_int("chunk_size", _get("chunk_size")),
        chunk_overlap=_as_int("chunk_overlap", _get("chunk_overlap")),
        batch_size=_as_int("batch_size", _get("batch_size")),
        policy=_get("policy").strip().lower(),
        root=Path(_get("root")),
        include_extensions=_split_list(_get("include_extensions")),
        exclude_dirs=_split_list(_get("exclude_dirs")),
        respect_gitignore=_get("respect_gitignore").strip().lower() in _TRUTHY,
        distance=_get("distance").strip().lower(),
        retry=retry,
    )


# ── .env template ─────────────────────────────────────────────────────

ENV_TEMPLATE = """\
# qdrantsync configuration
# Values here are overridden by real environment variables.

# OpenAI API key - required for generating embeddings
# Get your key from: https://platform.openai.com/api-keys
OPENAI_API_KEY=your_openai_api_key_here

# Qdrant endpoint and credentials
QDRANT_URL=http://localhost:6333
QDRANT_API_KEY=your_qdrant_api_key_here
# QDRANT_COLLECTION=repository-code

# Embedding and chunking
# EMBEDDING_MODEL=text-embedding-3-small
# CHUNK_SIZE=1000
# CHUNK_OVERLAP=100

# Sync behaviour: incremental (default) or full
# SYNC_POLICY=incremental
"""


def write_env_template(directory: str | Path | None = None) -> Path | None:
    """Write a ``.env.qdrant`` template unless one exists.

    Returns the path written, or None if the file was already there.
    """
    d = Path.cwd() if directory is None else Path(directory)
    path = d / ENV_FILES[0]
    if path.exists():
        return None
    d.mkdir(parents=True, exist_ok=True)
    path.write_text(ENV_TEMPLATE, encoding="utf-8")
    return path
