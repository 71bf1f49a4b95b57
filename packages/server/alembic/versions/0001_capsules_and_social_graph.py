"""Capsules, membership records and social graph edges.

Revision ID: 0001_capsules_graph
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001_capsules_graph"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ID = sa.String(length=64)


def _ts(name: str, nullable: bool = False, server_default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def _edge_table(
    table: str,
    source: str,
    target: str,
    *extra: sa.Column,
) -> None:
    """Directed, soft-deletable edge with a unique (source, target) pair."""
    op.create_table(
        table,
        sa.Column("id", ID, primary_key=True),
        sa.Column(source, ID, nullable=False),
        sa.Column(target, ID, nullable=False),
        *extra,
        _ts("created_at"),
        _ts("deleted_at", nullable=True, server_default=False),
        sa.UniqueConstraint(source, target, name=f"uq_{table}_pair"),
        sa.CheckConstraint(f"{source} <> {target}", name=f"ck_{table}_not_self"),
    )
    op.create_index(f"ix_{table}_{source}", table, [source])
    op.create_index(f"ix_{table}_{target}", table, [target])
    # Active-edge lookups dominate; keep them off the tombstones
    op.create_index(
        f"ix_{table}_active",
        table,
        [source, target],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------

def upgrade() -> None:
    op.create_table(
        "capsules",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=True),
        sa.Column("owner_id", ID, nullable=False),
        sa.Column(
            "membership_policy",
            sa.String(length=32),
            nullable=False,
            server_default="request_approval",
        ),
        sa.Column("banner_url", sa.String(), nullable=True),
        sa.Column("store_banner_url", sa.String(), nullable=True),
        sa.Column("promo_tile_url", sa.String(), nullable=True),
        sa.Column("logo_url", sa.String(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "membership_policy IN ('open', 'invite_only', 'request_approval')",
            name="ck_capsules_membership_policy",
        ),
    )
    op.create_index("ix_capsules_slug", "capsules", ["slug"], unique=True)
    op.create_index("ix_capsules_owner_id", "capsules", ["owner_id"])

    op.create_table(
        "capsule_members",
        sa.Column("capsule_id", ID, sa.ForeignKey("capsules.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", ID, primary_key=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        _ts("joined_at"),
        _ts("deleted_at", nullable=True, server_default=False),
    )
    op.create_index("ix_capsule_members_user_id", "capsule_members", ["user_id"])

    op.create_table(
        "capsule_followers",
        sa.Column("capsule_id", ID, sa.ForeignKey("capsules.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", ID, primary_key=True),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, server_default=False),
    )
    op.create_index("ix_capsule_followers_user_id", "capsule_followers", ["user_id"])

    op.create_table(
        "capsule_member_requests",
        sa.Column("id", ID, primary_key=True),
        sa.Column("capsule_id", ID, sa.ForeignKey("capsules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("requester_id", ID, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("origin", sa.String(length=16), nullable=False, server_default="viewer_request"),
        sa.Column("initiator_id", ID, nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("responded_by", ID, nullable=True),
        _ts("responded_at", nullable=True, server_default=False),
        _ts("approved_at", nullable=True, server_default=False),
        _ts("declined_at", nullable=True, server_default=False),
        _ts("cancelled_at", nullable=True, server_default=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("capsule_id", "requester_id", name="uq_capsule_member_requests_pair"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'declined', 'cancelled')",
            name="ck_capsule_member_requests_status",
        ),
        sa.CheckConstraint(
            "origin IN ('viewer_request', 'owner_invite')",
            name="ck_capsule_member_requests_origin",
        ),
    )
    op.create_index("ix_capsule_member_requests_capsule_id", "capsule_member_requests", ["capsule_id"])
    op.create_index("ix_capsule_member_requests_requester_id", "capsule_member_requests", ["requester_id"])

    _edge_table(
        "friendships",
        "user_id",
        "friend_user_id",
        sa.Column("request_id", ID, nullable=True),
    )
    _edge_table(
        "friend_requests",
        "requester_id",
        "recipient_id",
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text(), nullable=True),
        _ts("responded_at", nullable=True, server_default=False),
        _ts("accepted_at", nullable=True, server_default=False),
    )
    _edge_table(
        "user_follows",
        "follower_user_id",
        "followee_user_id",
        _ts("muted_at", nullable=True, server_default=False),
    )
    _edge_table(
        "user_blocks",
        "blocker_user_id",
        "blocked_user_id",
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("expires_at", nullable=True, server_default=False),
    )


# ---------------------------------------------------------------------------
# Downgrade
# ---------------------------------------------------------------------------

def downgrade() -> None:
    for table in ("user_blocks", "user_follows", "friend_requests", "friendships"):
        op.drop_table(table)
    op.drop_table("capsule_member_requests")
    op.drop_table("capsule_followers")
    op.drop_table("capsule_members")
    op.drop_index("ix_capsules_owner_id", table_name="capsules")
    op.drop_index("ix_capsules_slug", table_name="capsules")
    op.drop_table("capsules")
