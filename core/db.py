"""
Engine, session and schema lifecycle for the ChatRecall store.

Sessions are opened per call (request threads, ``asyncio.to_thread`` store
calls and background writer jobs all share ``DB.SessionLocal``), so the
engine must tolerate concurrent use from many threads. On sqlite that means
``check_same_thread=False``, a busy timeout and WAL journaling so readers do
not wait on the background writer.
"""

from __future__ import annotations

import json
import os
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import core.config as config

logger = config.logger

SQLITE_BUSY_TIMEOUT_SECONDS = 15
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine: Optional[Engine] = None
    SessionLocal: Optional[sessionmaker] = None


def open_session() -> Session:
    """Fresh session from the shared factory; callers close it."""
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


def _enable_sqlite_wal(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
    finally:
        cursor.close()


def build_engine(url: str) -> Engine:
    if url.lower().startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        if ":memory:" not in url:
            event.listen(engine, "connect", _enable_sqlite_wal)
        return engine
    # Request threads plus background workers each hold a connection briefly.
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=config.BACKGROUND_WORKERS + 5,
        max_overflow=10,
    )


def _alembic_config(engine: Engine):
    from alembic.config import Config

    url = engine.url.render_as_string(hide_password=False)
    alembic_cfg = Config(os.path.join(BASE_DIR, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(BASE_DIR, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return alembic_cfg


def schema_revisions(engine: Engine) -> tuple[Optional[str], Optional[str]]:
    """(current, head) alembic revisions for ``engine``."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(_alembic_config(engine)).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def migrate_to_head(engine: Engine) -> None:
    current, head = schema_revisions(engine)
    if current == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"memory schema at {current}, expected {head}; "
            "run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true"
        )

    from alembic import command

    logger.info("schema_migrating", extra={"from_revision": current, "to_revision": head})
    command.upgrade(_alembic_config(engine), "head")
    current, _ = schema_revisions(engine)
    if current != head:
        raise RuntimeError("Database migration did not reach expected revision")


def stored_embedding_dimension(engine: Engine) -> Optional[int]:
    """
    Dimension of the stored memory vectors, or None when nothing says.

    The pgvector column declares it in ``atttypmod``; JSON columns are
    inspected through one stored row.
    """
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
            typmod = conn.execute(
                text(
                    "SELECT atttypmod FROM pg_attribute "
                    "WHERE attrelid = 'memory_records'::regclass AND attname = 'embedding'"
                )
            ).scalar()
            return int(typmod) if typmod and typmod > 0 else None
        row = conn.execute(text("SELECT embedding FROM memory_records LIMIT 1")).first()
    if row is None or row[0] is None:
        return None
    vector = row[0]
    if isinstance(vector, str):
        vector = json.loads(vector)
    return len(vector)


def check_embedding_dimension(engine: Engine, expected: int = config.EMBEDDING_DIM) -> None:
    """Refuse to start when stored vectors cannot be compared with new ones."""
    stored = stored_embedding_dimension(engine)
    if stored is None or stored == expected:
        return
    if config.EMBEDDING_ENFORCE_DIM:
        raise RuntimeError(
            f"memory_records embeddings have {stored} dimensions but EMBEDDING_DIM={expected}"
        )
    logger.warning(
        "embedding_dimension_mismatch",
        extra={"stored": stored, "configured": expected},
    )


def init_db() -> None:
    """Open the engine, ensure pgvector, migrate and verify vector dimensions."""
    config.validate_and_prepare_config()

    DB.engine = build_engine(config.DATABASE_URL)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    logger.info("db_connected", extra={"dialect": DB.engine.dialect.name})

    if (
        config.AUTO_CREATE_EXTENSIONS
        and DB.engine.dialect.name == "postgresql"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    ):
        with DB.engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()

    migrate_to_head(DB.engine)
    check_embedding_dimension(DB.engine)
    logger.info("db_ready")


def dispose_db() -> None:
    """Release pooled connections; safe to call when never initialized."""
    engine = DB.engine
    DB.engine = None
    DB.SessionLocal = None
    if engine is not None:
        engine.dispose()
        logger.info("db_disposed")
