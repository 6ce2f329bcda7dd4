"""Create accounts, memory, message and conversation counter tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

import core.config as config


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM), True
    return sa.JSON, False


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    embedding_type, native_vectors = _embedding_type(is_postgres)

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("password_hash", sa.String(length=255)),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "memory_records",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column(
            "category",
            sa.Enum("fact", "conversation", name="memory_category"),
            nullable=False,
        ),
        sa.Column("user_text", sa.Text(), nullable=False),
        sa.Column("response_text", sa.Text()),
        sa.Column("embedding", embedding_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_memory_records_account_category",
        "memory_records",
        ["account_id", "category"],
    )
    if native_vectors:
        op.execute(
            "CREATE INDEX IF NOT EXISTS ix_memory_records_embedding_hnsw "
            "ON memory_records USING hnsw (embedding vector_cosine_ops)"
        )

    op.create_table(
        "message_records",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("user_text", sa.Text(), nullable=False),
        sa.Column("response_text", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_message_records_account_conversation",
        "message_records",
        ["account_id", "conversation_id", "created_at"],
    )

    op.create_table(
        "conversation_counters",
        sa.Column("account_id", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    bind = op.get_bind()
    op.drop_table("conversation_counters")
    op.drop_index("ix_message_records_account_conversation", table_name="message_records")
    op.drop_table("message_records")
    if bind.dialect.name == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_memory_records_embedding_hnsw")
    op.drop_index("ix_memory_records_account_category", table_name="memory_records")
    op.drop_table("memory_records")
    if bind.dialect.name == "postgresql":
        sa.Enum(name="memory_category").drop(bind, checkfirst=True)
    op.drop_table("accounts")
