"""Unit tests for qdrantsync.config."""

import json
from pathlib import Path

import pytest

from qdrantsync.config import (
    ENV_TEMPLATE,
    POLICY_FULL,
    POLICY_INCREMENTAL,
    Settings,
    load_settings,
    write_env_template,
)
from qdrantsync.errors import ChunkerConfigurationError, ConfigurationError
from qdrantsync.walker import DEFAULT_EXCLUDE_DIRS, DEFAULT_INCLUDE_EXTENSIONS


def _load(tmp_path, env=None, **overrides):
    """Load settings from *env* only, with .env files looked up in tmp_path."""
    return load_settings(environ=env or {}, env_dir=tmp_path, **overrides)


def _valid(**kwargs):
    values = dict(openai_api_key="sk-test", qdrant_api_key="qd-test")
    values.update(kwargs)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestDefaults:

    def test_defaults(self, tmp_path):
        s = _load(tmp_path)
        assert s.qdrant_url == "http://localhost:6333"
        assert s.collection == "repository-code"
        assert s.embedding_model == "text-embedding-3-small"
        assert s.chunk_size == 1000
        assert s.chunk_overlap == 100
        assert s.batch_size == 100
        assert s.embedding_batch_size == 100
        assert s.policy == POLICY_INCREMENTAL
        assert s.root == Path(".")
        assert s.include_extensions == DEFAULT_INCLUDE_EXTENSIONS
        assert s.exclude_dirs == DEFAULT_EXCLUDE_DIRS
        assert s.respect_gitignore is True
        assert s.distance == "cosine"
        assert s.embedding_dimensions is None
        assert s.vector_dimension == 1536

    def test_default_retry_policy(self, tmp_path):
        s = _load(tmp_path)
        assert s.retry.max_attempts == 5
        assert s.retry.base_delay == 1.0
        assert s.retry.max_delay == 30.0

    def test_credentials_empty_by_default(self, tmp_path):
        s = _load(tmp_path)
        assert s.openai_api_key == ""
        assert s.qdrant_api_key == ""


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


class TestEnvVars:

    def test_env_overrides_defaults(self, tmp_path):
        s = _load(
            tmp_path,
            {
                "QDRANT_URL": "https://qdrant.example:6333",
                "QDRANT_COLLECTION": "docs",
                "CHUNK_SIZE": "500",
                "CHUNK_OVERLAP": "50",
                "SYNC_BATCH_SIZE": "20",
                "SYNC_POLICY": "FULL",
                "SYNC_ROOT": "/srv/repo",
                "INCLUDE_EXTENSIONS": ".py, .go ,",
                "EXCLUDE_DIRS": "vendor",
                "RESPECT_GITIGNORE": "no",
                "RETRY_MAX_ATTEMPTS": "2",
            },
        )
        assert s.qdrant_url == "https://qdrant.example:6333"
        assert s.collection == "docs"
        assert s.chunk_size == 500
        assert s.chunk_overlap == 50
        assert s.batch_size == 20
        assert s.policy == POLICY_FULL
        assert s.root == Path("/srv/repo")
        assert s.include_extensions == frozenset({".py", ".go"})
        assert s.exclude_dirs == frozenset({"vendor"})
        assert s.respect_gitignore is False
        assert s.retry.max_attempts == 2

    def test_empty_env_var_falls_through(self, tmp_path):
        s = _load(tmp_path, {"QDRANT_COLLECTION": ""})
        assert s.collection == "repository-code"

    def test_explicit_dimensions(self, tmp_path):
        s = _load(
            tmp_path,
            {"EMBEDDING_MODEL": "text-embedding-3-large", "EMBEDDING_DIMENSIONS": "256"},
        )
        assert s.embedding_dimensions == 256
        assert s.vector_dimension == 256

    def test_large_model_native_dimension(self, tmp_path):
        s = _load(tmp_path, {"EMBEDDING_MODEL": "text-embedding-3-large"})
        assert s.vector_dimension == 3072

    def test_invalid_integer(self, tmp_path):
        with pytest.raises(ConfigurationError, match="CHUNK_SIZE must be an integer"):
            _load(tmp_path, {"CHUNK_SIZE": "big"})

    def test_invalid_float(self, tmp_path):
        with pytest.raises(ConfigurationError, match="RETRY_BASE_DELAY"):
            _load(tmp_path, {"RETRY_BASE_DELAY": "soon"})

    def test_zero_retry_attempts(self, tmp_path):
        with pytest.raises(ConfigurationError, match="RETRY_MAX_ATTEMPTS"):
            _load(tmp_path, {"RETRY_MAX_ATTEMPTS": "0"})


# ---------------------------------------------------------------------------
# .env files and the JSON config file
# ---------------------------------------------------------------------------


class TestFiles:

    def test_env_qdrant_file(self, tmp_path):
        (tmp_path / ".env.qdrant").write_text("OPENAI_API_KEY=sk-file\nCHUNK_SIZE=700\n")
        s = _load(tmp_path)
        assert s.openai_api_key == "sk-file"
        assert s.chunk_size == 700

    def test_env_qdrant_wins_over_dotenv(self, tmp_path):
        (tmp_path / ".env").write_text("QDRANT_COLLECTION=from-env\nCHUNK_SIZE=300\n")
        (tmp_path / ".env.qdrant").write_text("QDRANT_COLLECTION=from-qdrant\n")
        s = _load(tmp_path)
        assert s.collection == "from-qdrant"
        assert s.chunk_size == 300

    def test_environment_wins_over_files(self, tmp_path):
        (tmp_path / ".env.qdrant").write_text("QDRANT_COLLECTION=from-file\n")
        s = _load(tmp_path, {"QDRANT_COLLECTION": "from-environ"})
        assert s.collection == "from-environ"

    def test_root_env_file_read(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / ".env.qdrant").write_text("QDRANT_COLLECTION=from-repo\n")
        s = _load(tmp_path, root=str(repo))
        assert s.collection == "from-repo"
        assert s.root == repo

    def test_root_env_file_beats_working_directory(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (tmp_path / ".env.qdrant").write_text("QDRANT_COLLECTION=from-cwd\nCHUNK_SIZE=400\n")
        (repo / ".env.qdrant").write_text("QDRANT_COLLECTION=from-repo\n")
        s = _load(tmp_path, root=str(repo))
        assert s.collection == "from-repo"
        assert s.chunk_size == 400

    def test_environment_beats_root_env_file(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / ".env.qdrant").write_text("QDRANT_COLLECTION=from-repo\n")
        s = _load(tmp_path, {"QDRANT_COLLECTION": "from-environ"}, root=str(repo))
        assert s.collection == "from-environ"

    def test_json_config_file(self, tmp_path):
        config = tmp_path / "qdrantsync.json"
        config.write_text(json.dumps({"collection": "from-json", "chunk_size": 800}))
        s = _load(tmp_path, {"QDRANTSYNC_CONFIG": str(config)})
        assert s.collection == "from-json"
        assert s.chunk_size == 800

    def test_dotenv_wins_over_json(self, tmp_path):
        config = tmp_path / "qdrantsync.json"
        config.write_text(json.dumps({"collection": "from-json"}))
        (tmp_path / ".env").write_text("QDRANT_COLLECTION=from-dotenv\n")
        s = _load(tmp_path, {"QDRANTSYNC_CONFIG": str(config)})
        assert s.collection == "from-dotenv"

    def test_broken_json_config(self, tmp_path):
        config = tmp_path / "broken.json"
        config.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Cannot load config file"):
            _load(tmp_path, {"QDRANTSYNC_CONFIG": str(config)})

    def test_non_object_json_config(self, tmp_path):
        config = tmp_path / "list.json"
        config.write_text("[1, 2]")
        with pytest.raises(ConfigurationError, match="JSON object"):
            _load(tmp_path, {"QDRANTSYNC_CONFIG": str(config)})

    def test_missing_json_config(self, tmp_path):
        with pytest.raises(ConfigurationError):
            _load(tmp_path, {"QDRANTSYNC_CONFIG": str(tmp_path / "nope.json")})


# ---------------------------------------------------------------------------
# Explicit overrides
# ---------------------------------------------------------------------------


class TestOverrides:

    def test_override_beats_environment(self, tmp_path):
        s = _load(tmp_path, {"SYNC_ROOT": "/from/env"}, root="/from/cli")
        assert s.root == Path("/from/cli")

    def test_none_override_ignored(self, tmp_path):
        s = _load(tmp_path, {"SYNC_ROOT": "/from/env"}, root=None)
        assert s.root == Path("/from/env")


# ---------------------------------------------------------------------------
# Settings.validate
# ---------------------------------------------------------------------------


class TestValidate:

    def test_valid_settings(self):
        _valid().validate()

    def test_missing_keys_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Settings().validate()
        message = str(exc_info.value)
        assert "OPENAI_API_KEY is not set" in message
        assert "QDRANT_API_KEY is not set" in message

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError, match="SYNC_POLICY"):
            _valid(policy="sometimes").validate()

    def test_unknown_model_needs_dimensions(self):
        with pytest.raises(ConfigurationError, match="EMBEDDING_DIMENSIONS"):
            _valid(embedding_model="my-local-model").validate()
        _valid(embedding_model="my-local-model", embedding_dimensions=384).validate()

    def test_bad_batch_size(self):
        with pytest.raises(ConfigurationError, match="SYNC_BATCH_SIZE"):
            _valid(batch_size=0).validate()

    def test_empty_extensions(self):
        with pytest.raises(ConfigurationError, match="INCLUDE_EXTENSIONS"):
            _valid(include_extensions=frozenset()).validate()

    def test_unknown_distance(self):
        with pytest.raises(ConfigurationError, match="distance"):
            _valid(distance="hamming").validate()

    def test_bad_overlap(self):
        with pytest.raises(ChunkerConfigurationError):
            _valid(chunk_size=100, chunk_overlap=100).validate()

    def test_missing_root(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not a directory"):
            _valid(root=tmp_path / "typo").validate()

    def test_file_root(self, tmp_path):
        f = tmp_path / "main.py"
        f.write_text("")
        with pytest.raises(ConfigurationError, match="not a directory"):
            _valid(root=f).validate()

    def test_build_chunker(self):
        chunker = _valid(chunk_size=300, chunk_overlap=30).build_chunker()
        assert chunker.chunk_size == 300
        assert chunker.chunk_overlap == 30


# ---------------------------------------------------------------------------
# write_env_template
# ---------------------------------------------------------------------------


class TestEnvTemplate:

    def test_writes_template(self, tmp_path):
        path = write_env_template(tmp_path)
        assert path == tmp_path / ".env.qdrant"
        assert path.read_text() == ENV_TEMPLATE
        assert "OPENAI_API_KEY=" in ENV_TEMPLATE
        assert "QDRANT_API_KEY=" in ENV_TEMPLATE

    def test_existing_file_left_alone(self, tmp_path):
        existing = tmp_path / ".env.qdrant"
        existing.write_text("OPENAI_API_KEY=mine\n")
        assert write_env_template(tmp_path) is None
        assert existing.read_text() == "OPENAI_API_KEY=mine\n"

    def test_template_is_loadable(self, tmp_path):
        write_env_template(tmp_path)
        s = _load(tmp_path)
        assert s.openai_api_key == "your_openai_api_key_here"
        assert s.qdrant_url == "http://localhost:6333"
