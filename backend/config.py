"""
Runtime settings for the vector memory server.

Precedence: command-line overrides > environment (including `.env`) > defaults.
Malformed numeric environment values fall back to the default.
"""

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

DEFAULT_DB_PATH = Path(".vector-memory") / "memories.db"
DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 3271
DEFAULT_EMBEDDING_BACKEND = "hash"
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIM = 384
TRANSPORT_CHOICES = ("stdio", "http", "sse")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _env_str(name: str, default: str = "", *fallbacks: str) -> str:
    for key in (name, *fallbacks):
        value = str(os.getenv(key) or "").strip()
        if value:
            return value
    return default


def _resolve_path(raw: Any) -> Path:
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


@dataclass
class Settings:
    db_path: Path
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    enable_http: bool = True
    transport: str = "stdio"
    api_key: str = ""
    embedding_backend: str = DEFAULT_EMBEDDING_BACKEND
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dim: int = DEFAULT_EMBEDDING_DIM
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    remote_timeout: float = 8.0
    index_wait_timeout: float = 30.0
    recency_decay_per_hour: float = 0.995
    rrf_k: int = 60
    overfetch_factor: int = 3
    max_chain_hops: int = 50
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"

    def public_dict(self) -> Dict[str, Any]:
        """Settings safe to echo back over HTTP (no secrets)."""
        return {
            "dbPath": str(self.db_path),
            "httpHost": self.http_host,
            "httpPort": self.http_port,
            "enableHttp": self.enable_http,
            "transport": self.transport,
            "apiKeyConfigured": bool(self.api_key),
            "embeddingBackend": self.embedding_backend,
            "embeddingModel": self.embedding_model,
            "embeddingDimension": self.embedding_dim,
        }


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> Settings:
    """Build settings from the environment, then apply non-None overrides."""
    _dotenv_path = find_dotenv(usecwd=True)
    if _dotenv_path:
        load_dotenv(_dotenv_path)

    transport = _env_str("VECTOR_MEMORY_TRANSPORT", "stdio").lower()
    if transport not in TRANSPORT_CHOICES:
        transport = "stdio"

    settings = Settings(
        db_path=_resolve_path(_env_str("VECTOR_MEMORY_DB_PATH", str(DEFAULT_DB_PATH))),
        http_host=_env_str("VECTOR_MEMORY_HTTP_HOST", DEFAULT_HTTP_HOST),
        http_port=_env_int("VECTOR_MEMORY_HTTP_PORT", DEFAULT_HTTP_PORT, minimum=1),
        transport=transport,
        api_key=_env_str("VECTOR_MEMORY_API_KEY"),
        embedding_backend=_env_str(
            "RETRIEVAL_EMBEDDING_BACKEND", DEFAULT_EMBEDDING_BACKEND
        ).lower(),
        embedding_model=_env_str("RETRIEVAL_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        embedding_dim=_env_int("RETRIEVAL_EMBEDDING_DIM", DEFAULT_EMBEDDING_DIM, minimum=1),
        embedding_api_base=_env_str(
            "RETRIEVAL_EMBEDDING_API_BASE", "", "OPENAI_BASE_URL", "OPENAI_API_BASE"
        ),
        embedding_api_key=_env_str("RETRIEVAL_EMBEDDING_API_KEY", "", "OPENAI_API_KEY"),
        remote_timeout=_env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0, minimum=0.1),
        index_wait_timeout=_env_float("VECTOR_MEMORY_INDEX_TIMEOUT_SEC", 30.0, minimum=0.1),
        recency_decay_per_hour=_env_float("RANKING_RECENCY_DECAY", 0.995),
        rrf_k=_env_int("RANKING_RRF_K", 60, minimum=1),
        overfetch_factor=_env_int("RANKING_OVERFETCH", 3, minimum=1),
        max_chain_hops=_env_int("RANKING_MAX_CHAIN_HOPS", 50, minimum=1),
        log_level=_env_str("VECTOR_MEMORY_LOG_LEVEL", "INFO").upper(),
    )

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if not hasattr(settings, key):
            raise ValueError(f"unknown setting: {key}")
        if key == "db_path":
            value = _resolve_path(value)
        setattr(settings, key, value)
    return settings


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vector-memory-server",
        description="Persistent memory store for coding-assistant sessions (MCP + HTTP).",
    )
    parser.add_argument("-d", "--db-file", dest="db_path", default=None,
                        help="SQLite database file (default: ./.vector-memory/memories.db)")
    parser.add_argument("-p", "--port", dest="http_port", type=int, default=None,
                        help="HTTP port for the REST bridge / SSE server")
    parser.add_argument("--no-http", dest="enable_http", action="store_false", default=None,
                        help="Do not start the REST bridge next to the stdio server")
    parser.add_argument("--transport", choices=TRANSPORT_CHOICES, default=None,
                        help="stdio (default), http (REST only) or sse (MCP over SSE)")
    return parser


def parse_cli_args(argv: Optional[List[str]] = None) -> Dict[str, Any]:
    """Parse CLI flags into a settings-override mapping. Unknown flags are ignored."""
    args, _unknown = build_arg_parser().parse_known_args(argv)
    return {
        "db_path": args.db_path,
        "http_port": args.http_port,
        "enable_http": args.enable_http,
        "transport": args.transport,
    }
