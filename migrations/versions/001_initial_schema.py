"""Hearsay schema: identities, rumors, votes, finalized outcomes, reputation, audit

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("public_key", sa.Text(), primary_key=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "rumors",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("creator_public_key", sa.Text(),
                  sa.ForeignKey("users.public_key"), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("deadline", sa.Float(), nullable=False),
    )

    # One vote per (rumor, voter); gone with the rumor
    op.create_table(
        "votes",
        sa.Column("rumor_id", sa.BigInteger(),
                  sa.ForeignKey("rumors.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("voter_public_key", sa.Text(),
                  sa.ForeignKey("users.public_key"), primary_key=True),
        sa.Column("vote_value", sa.Boolean(), nullable=False),
        sa.Column("voted_at", sa.Float(), nullable=False),
    )

    # Written once by the finalizer; primary key makes a second insert a no-op
    op.create_table(
        "finalized_scores",
        sa.Column("rumor_id", sa.BigInteger(),
                  sa.ForeignKey("rumors.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("trust_score", sa.Float(), nullable=False),
        sa.Column("total_votes", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.Boolean(), nullable=False),
        sa.Column("finalized_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "reputation_cache",
        sa.Column("public_key", sa.Text(), primary_key=True),
        sa.Column("reputation", sa.Float(), nullable=False),
        sa.Column("computed_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "reputation_penalties",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("public_key", sa.Text(),
                  sa.ForeignKey("users.public_key"), nullable=False),
        sa.Column("penalty", sa.Float(), nullable=False),
        sa.Column("reason", sa.Text(), server_default=""),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "audit_log",
        sa.Column("seq", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entry_id", sa.Text(), nullable=False, unique=True),
        sa.Column("action_type", sa.Text(), nullable=False),
        sa.Column("actor_public_key", sa.Text(), nullable=True),
        sa.Column("target_id", sa.Text(), nullable=True),
        sa.Column("data_hash", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("prev_hash", sa.Text(), server_default=""),
        sa.Column("entry_hash", sa.Text(), server_default=""),
    )

    op.create_table(
        "comments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("rumor_id", sa.BigInteger(),
                  sa.ForeignKey("rumors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("commenter_public_key", sa.Text(),
                  sa.ForeignKey("users.public_key"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_index("idx_rumors_deadline", "rumors", ["deadline"])
    op.create_index("idx_votes_voter", "votes", ["voter_public_key"])
    op.create_index("idx_users_created", "users", ["created_at"])
    op.create_index("idx_penalties_key", "reputation_penalties", ["public_key"])
    op.create_index("idx_audit_timestamp", "audit_log", ["timestamp"])
    op.create_index("idx_comments_rumor", "comments", ["rumor_id"])


def downgrade() -> None:
    op.drop_index("idx_comments_rumor", table_name="comments")
    op.drop_index("idx_audit_timestamp", table_name="audit_log")
    op.drop_index("idx_penalties_key", table_name="reputation_penalties")
    op.drop_index("idx_users_created", table_name="users")
    op.drop_index("idx_votes_voter", table_name="votes")
    op.drop_index("idx_rumors_deadline", table_name="rumors")
    op.drop_table("comments")
    op.drop_table("audit_log")
    op.drop_table("reputation_penalties")
    op.drop_table("reputation_cache")
    op.drop_table("finalized_scores")
    op.drop_table("votes")
    op.drop_table("rumors")
    op.drop_table("users")
