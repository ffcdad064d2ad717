from pathlib import Path

import pytest

from config import load_settings, parse_cli_args

_ENV_NAMES = (
    "VECTOR_MEMORY_DB_PATH",
    "VECTOR_MEMORY_HTTP_PORT",
    "VECTOR_MEMORY_HTTP_HOST",
    "VECTOR_MEMORY_TRANSPORT",
    "VECTOR_MEMORY_API_KEY",
    "RETRIEVAL_EMBEDDING_BACKEND",
    "RETRIEVAL_EMBEDDING_DIM",
    "RANKING_RRF_K",
    "RANKING_RECENCY_DECAY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path: Path):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults(tmp_path: Path) -> None:
    settings = load_settings()

    assert settings.db_path == tmp_path / ".vector-memory" / "memories.db"
    assert settings.http_host == "127.0.0.1"
    assert settings.http_port == 3271
    assert settings.enable_http is True
    assert settings.transport == "stdio"
    assert settings.embedding_backend == "hash"
    assert settings.embedding_dim == 384
    assert settings.rrf_k == 60
    assert settings.recency_decay_per_hour == 0.995
    assert settings.database_url == f"sqlite+aiosqlite:///{settings.db_path}"


def test_environment_overrides_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_DB_PATH", "data/mem.db")
    monkeypatch.setenv("VECTOR_MEMORY_HTTP_PORT", "4000")
    monkeypatch.setenv("RANKING_RRF_K", "30")

    settings = load_settings()

    assert settings.db_path == tmp_path / "data" / "mem.db"
    assert settings.http_port == 4000
    assert settings.rrf_k == 30


def test_malformed_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_HTTP_PORT", "not-a-port")
    monkeypatch.setenv("RANKING_RECENCY_DECAY", "fast")

    settings = load_settings()

    assert settings.http_port == 3271
    assert settings.recency_decay_per_hour == 0.995


def test_cli_overrides_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_HTTP_PORT", "4000")
    monkeypatch.setenv("VECTOR_MEMORY_DB_PATH", "env.db")

    overrides = parse_cli_args(["-d", "/tmp/cli.db", "--port", "5000", "--no-http"])
    settings = load_settings(overrides)

    assert settings.db_path == Path("/tmp/cli.db")
    assert settings.http_port == 5000
    assert settings.enable_http is False


def test_cli_without_flags_changes_nothing() -> None:
    overrides = parse_cli_args([])
    assert overrides == {
        "db_path": None,
        "http_port": None,
        "enable_http": None,
        "transport": None,
    }
    assert load_settings(overrides).enable_http is True


def test_transport_flag_and_unknown_flags(monkeypatch) -> None:
    overrides = parse_cli_args(["--transport", "sse", "--verbose"])
    assert overrides["transport"] == "sse"

    monkeypatch.setenv("VECTOR_MEMORY_TRANSPORT", "carrier-pigeon")
    assert load_settings().transport == "stdio"


def test_unknown_override_is_rejected() -> None:
    with pytest.raises(ValueError):
        load_settings({"no_such_setting": 1})
