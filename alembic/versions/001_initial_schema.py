"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create post, sub_state, list_members and collection tables."""

    # 1. post table; cid uses the "C" collation so ORDER BY and cursor
    # comparisons agree byte-wise with SQLite.
    op.create_table(
        "post",
        sa.Column("uri", sa.Text(), nullable=False),
        sa.Column("cid", sa.Text(collation="C"), nullable=False),
        sa.Column("author", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.Column("reply_parent", sa.Text(), nullable=True),
        sa.Column("reply_root", sa.Text(), nullable=True),
        sa.Column("indexed_at", sa.BigInteger(), nullable=False),
        sa.Column(
            "has_image", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("embed", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "algo_tags",
            postgresql.ARRAY(sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::text[]"),
        ),
        sa.Column("labels", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("sort_weight", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("uri"),
    )
    op.create_index(
        "idx_post_indexed_at_cid",
        "post",
        [sa.text("indexed_at DESC"), sa.text("cid DESC")],
    )
    op.create_index(
        "idx_post_algo_tags", "post", ["algo_tags"], postgresql_using="gin"
    )
    op.create_index("idx_post_author", "post", ["author"])
    op.create_index("idx_post_labels", "post", ["labels"], postgresql_using="gin")
    op.create_index(
        "idx_post_sort_weight",
        "post",
        [sa.text("sort_weight DESC"), sa.text("cid DESC")],
        postgresql_where=sa.text("sort_weight IS NOT NULL"),
    )
    op.create_index("idx_post_reply_parent", "post", ["reply_parent"])

    # 2. sub_state table
    op.create_table(
        "sub_state",
        sa.Column("service", sa.Text(), nullable=False),
        sa.Column("cursor", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("service"),
    )

    # 3. list_members table
    op.create_table(
        "list_members",
        sa.Column("did", sa.Text(), nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("did"),
    )

    # 4. collection table
    op.create_table(
        "collection",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("collection")
    op.drop_table("list_members")
    op.drop_table("sub_state")
    op.drop_index("idx_post_reply_parent", table_name="post")
    op.drop_index("idx_post_sort_weight", table_name="post")
    op.drop_index("idx_post_labels", table_name="post")
    op.drop_index("idx_post_author", table_name="post")
    op.drop_index("idx_post_algo_tags", table_name="post")
    op.drop_index("idx_post_indexed_at_cid", table_name="post")
    op.drop_table("post")
