"""
Shared configuration for ChatRecall core.
"""

from __future__ import annotations

import logging
import os

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("chatrecall")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/chatrecall.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding settings
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_API_KEY = os.environ.get("EMBEDDING_API_KEY") or os.environ.get("OPENAI_API_KEY")
EMBEDDING_BASE_URL = os.environ.get("EMBEDDING_BASE_URL", "https://api.openai.com").rstrip("/")
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DEPLOYMENT = os.environ.get("EMBEDDING_DEPLOYMENT", EMBEDDING_MODEL)
EMBEDDING_API_VERSION = os.environ.get("EMBEDDING_API_VERSION", "2024-10-01-preview")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
EMBEDDING_ENFORCE_DIM = _get_bool("EMBEDDING_ENFORCE_DIM", True)
# Sits inside an end-to-end request budget of a few seconds; never retried.
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 3.0)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 30)
EMBEDDING_CACHE_SIZE = _get_int("EMBEDDING_CACHE_SIZE", 500)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("CHATRECALL_MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Retrieval policy.
#
# pull_then_filter fetches RETRIEVAL_TOP_K nearest memories and drops any at or
# beyond the threshold. Below RETRIEVAL_INDEX_MIN_RECORDS memories the store
# scans exhaustively and distances are noisier, so the lenient threshold
# applies; at or above it the strict threshold applies. K and the thresholds
# are tuned as a set.
#
# filter_in_query hands RETRIEVAL_QUERY_MAX_DISTANCE and RETRIEVAL_QUERY_LIMIT
# to the store directly.
RETRIEVAL_POLICY = os.environ.get("RETRIEVAL_POLICY", "pull_then_filter").strip().lower()
RETRIEVAL_TOP_K = _get_int("RETRIEVAL_TOP_K", 5)
RETRIEVAL_LENIENT_THRESHOLD = _get_float("RETRIEVAL_LENIENT_THRESHOLD", 0.8)
RETRIEVAL_STRICT_THRESHOLD = _get_float("RETRIEVAL_STRICT_THRESHOLD", 0.6)
RETRIEVAL_INDEX_MIN_RECORDS = _get_int("RETRIEVAL_INDEX_MIN_RECORDS", 1000)
RETRIEVAL_QUERY_MAX_DISTANCE = _get_float("RETRIEVAL_QUERY_MAX_DISTANCE", 0.6)
RETRIEVAL_QUERY_LIMIT = _get_int("RETRIEVAL_QUERY_LIMIT", 3)
RETRIEVAL_TIMEOUT_SECONDS = _get_float("RETRIEVAL_TIMEOUT_SECONDS", 4.0)

# Reply generation
GENERATION_URL = os.environ.get("GENERATION_URL", "https://api.openai.com/v1/chat/completions")
GENERATION_API_KEY = os.environ.get("GENERATION_API_KEY") or os.environ.get("OPENAI_API_KEY")
GENERATION_AUTH_STYLE = os.environ.get("GENERATION_AUTH_STYLE", "bearer").strip().lower()
GENERATION_MODEL = os.environ.get("GENERATION_MODEL", "gpt-4o-mini")
GENERATION_TIMEOUT_SECONDS = _get_float("GENERATION_TIMEOUT_SECONDS", 10.0)
GENERATION_TEMPERATURE = _get_float("GENERATION_TEMPERATURE", 0.3)
GENERATION_MAX_TOKENS = _get_int("GENERATION_MAX_TOKENS", 100)
GENERATION_SYSTEM_PROMPT = os.environ.get(
    "GENERATION_SYSTEM_PROMPT",
    "You are a helpful assistant. Use the user's stated preferences when they are relevant.",
)
GENERATION_SYSTEM_PROMPT_PATH = os.environ.get("GENERATION_SYSTEM_PROMPT_PATH")
REPLY_STYLE_HINT = os.environ.get("REPLY_STYLE_HINT", "")
GENERATION_FALLBACK_TEXT = "Sorry, I couldn't generate a response."

# Persistence
PERSISTENCE_MODE = os.environ.get("PERSISTENCE_MODE", "sync_critical").strip().lower()
BACKGROUND_QUEUE_SIZE = _get_int("BACKGROUND_QUEUE_SIZE", 1000)
BACKGROUND_WORKERS = _get_int("BACKGROUND_WORKERS", 2)

# Session tokens
JWT_SECRET = os.environ.get("JWT_SECRET")
JWT_ALGORITHM = "HS256"
SESSION_TOKEN_TTL_SECONDS = _get_int("SESSION_TOKEN_TTL_SECONDS", 86400)
SESSION_SINGLE_ACTIVE = _get_bool("SESSION_SINGLE_ACTIVE", False)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("CHATRECALL_MAX_RESULT_LIMIT", 50)
MAX_MESSAGE_LENGTH = _get_int("CHATRECALL_MAX_MESSAGE_LENGTH", 4000)
MAX_SHORT_TEXT_LENGTH = _get_int("CHATRECALL_MAX_SHORT_TEXT_LENGTH", 255)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from core.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if EMBEDDING_PROVIDER not in {"openai", "azure", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai', 'azure', or 'none'")
    if EMBEDDING_CACHE_SIZE <= 0:
        errors.append("EMBEDDING_CACHE_SIZE must be positive")

    if RETRIEVAL_POLICY not in {"pull_then_filter", "filter_in_query"}:
        errors.append("RETRIEVAL_POLICY must be 'pull_then_filter' or 'filter_in_query'")
    if RETRIEVAL_STRICT_THRESHOLD > RETRIEVAL_LENIENT_THRESHOLD:
        errors.append("RETRIEVAL_STRICT_THRESHOLD must not exceed RETRIEVAL_LENIENT_THRESHOLD")
    if RETRIEVAL_TOP_K <= 0 or RETRIEVAL_QUERY_LIMIT <= 0:
        errors.append("RETRIEVAL_TOP_K and RETRIEVAL_QUERY_LIMIT must be positive")

    if PERSISTENCE_MODE not in {"sync_critical", "background"}:
        errors.append("PERSISTENCE_MODE must be 'sync_critical' or 'background'")
    if BACKGROUND_WORKERS <= 0:
        errors.append("BACKGROUND_WORKERS must be positive")

    if GENERATION_AUTH_STYLE not in {"bearer", "api-key"}:
        errors.append("GENERATION_AUTH_STYLE must be 'bearer' or 'api-key'")

    if not JWT_SECRET:
        errors.append("JWT_SECRET environment variable is required")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
