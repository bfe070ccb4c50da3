"""Create buyer accounts, listings, distributions and ledger tables.

Revision ID: 001_gate_tables
Revises:
Create Date: 2026-10-19

Creates six tables for buyer distribution and gating:
- buyer_accounts: Buyer identities (active or pending invitation)
- listings: Drafts marked for sale with their phase and conversion record
- distributions: Recipient batches per listing
- distribution_recipients: Buyers inside a distribution with view tracking
- buyer_responses: Latest response per (listing, buyer)
- buyer_authorizations: Gating decision and NDA progress per (listing, buyer)

No foreign key constraints (application-level referential integrity via
repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_gate_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ── buyer_accounts ──────────────────────────────────────────────────

    op.create_table(
        "buyer_accounts",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column(
            "status", sa.String(20), server_default=sa.text("'ACTIVE'"), nullable=False
        ),
        _created_at(),
        sa.UniqueConstraint("email", name="uq_buyer_account_email"),
    )

    # ── listings ────────────────────────────────────────────────────────

    op.create_table(
        "listings",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column(
            "listing_type",
            sa.String(20),
            server_default=sa.text("'PRIVATE'"),
            nullable=False,
        ),
        sa.Column(
            "phase",
            sa.String(20),
            server_default=sa.text("'DISTRIBUTED'"),
            nullable=False,
        ),
        sa.Column("external_deal_id", sa.String(200), nullable=True),
        sa.Column("winning_buyer_id", sa.String(100), nullable=True),
        sa.Column("conversion_notes", sa.Text(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── distributions ───────────────────────────────────────────────────

    op.create_table(
        "distributions",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("listing_id", sa.String(100), nullable=False),
        sa.Column("listing_type", sa.String(20), nullable=False),
        _created_at(),
    )
    op.create_index("ix_distributions_listing_id", "distributions", ["listing_id"])

    # ── distribution_recipients ─────────────────────────────────────────

    op.create_table(
        "distribution_recipients",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("distribution_id", sa.String(100), nullable=False),
        sa.Column("listing_id", sa.String(100), nullable=False),
        sa.Column("buyer_id", sa.String(100), nullable=False),
        sa.Column(
            "source", sa.String(20), server_default=sa.text("'MANUAL'"), nullable=False
        ),
        sa.Column(
            "sent_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("view_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "view_duration_sec", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column(
            "pages_viewed", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False
        ),
        sa.UniqueConstraint(
            "distribution_id", "buyer_id", name="uq_recipient_distribution_buyer"
        ),
    )
    op.create_index(
        "ix_distribution_recipients_distribution_id",
        "distribution_recipients",
        ["distribution_id"],
    )
    op.create_index(
        "ix_distribution_recipients_listing_id",
        "distribution_recipients",
        ["listing_id"],
    )

    # ── buyer_responses ─────────────────────────────────────────────────

    op.create_table(
        "buyer_responses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.String(100), nullable=False),
        sa.Column("buyer_id", sa.String(100), nullable=False),
        sa.Column(
            "response",
            sa.String(40),
            server_default=sa.text("'NOT_RESPONDED'"),
            nullable=False,
        ),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("listing_id", "buyer_id", name="uq_response_listing_buyer"),
    )
    op.create_index("ix_buyer_responses_listing_id", "buyer_responses", ["listing_id"])

    # ── buyer_authorizations ────────────────────────────────────────────

    op.create_table(
        "buyer_authorizations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.String(100), nullable=False),
        sa.Column("buyer_id", sa.String(100), nullable=False),
        sa.Column(
            "status", sa.String(20), server_default=sa.text("'PENDING'"), nullable=False
        ),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column(
            "nda_status",
            sa.String(20),
            server_default=sa.text("'NOT_SENT'"),
            nullable=False,
        ),
        sa.Column("access_level", sa.String(20), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("nda_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("nda_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_room_granted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "listing_id", "buyer_id", name="uq_authorization_listing_buyer"
        ),
    )
    op.create_index(
        "ix_buyer_authorizations_listing_id", "buyer_authorizations", ["listing_id"]
    )


def downgrade() -> None:
    op.drop_table("buyer_authorizations")
    op.drop_table("buyer_responses")
    op.drop_table("distribution_recipients")
    op.drop_table("distributions")
    op.drop_table("listings")
    op.drop_table("buyer_accounts")
