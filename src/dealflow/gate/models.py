"""Distribution and buyer-gating persistence models.

Six SQLAlchemy models on the shared declarative Base:
- BuyerAccountModel: Buyer identities (active users or pending email invitations)
- ListingModel: Deal drafts marked for sale, with their macro-phase
- DistributionModel: Named recipient batches for a listing
- RecipientModel: One buyer inside a distribution, with view tracking
- BuyerResponseModel: Latest buyer response per (listing, buyer)
- BuyerAuthorizationModel: Gating decision and NDA progress per (listing, buyer)

Referential integrity is enforced by the repository rather than foreign keys,
matching the rest of the schema. Identifiers are application-generated strings
so that callers can pass ids minted by upstream systems.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.dealflow.core.database import Base


class BuyerAccountModel(Base):
    """Buyer identity. PENDING rows are invitations created from a raw email."""

    __tablename__ = "buyer_accounts"
    __table_args__ = (
        UniqueConstraint("email", name="uq_buyer_account_email"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="ACTIVE", server_default=text("'ACTIVE'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ListingModel(Base):
    """Deal draft marked for sale.

    Phase is mutated only by the progression controller. Conversion columns
    are populated once, when the listing becomes CONVERTED.
    """

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    listing_type: Mapped[str] = mapped_column(
        String(20), default="PRIVATE", server_default=text("'PRIVATE'")
    )
    phase: Mapped[str] = mapped_column(
        String(20), default="DISTRIBUTED", server_default=text("'DISTRIBUTED'")
    )
    external_deal_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    winning_buyer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    conversion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DistributionModel(Base):
    """Recipient batch for a listing, with a snapshot of the listing type."""

    __tablename__ = "distributions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    listing_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    listing_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class RecipientModel(Base):
    """One buyer inside a distribution. Unique per (distribution, buyer)."""

    __tablename__ = "distribution_recipients"
    __table_args__ = (
        UniqueConstraint(
            "distribution_id",
            "buyer_id",
            name="uq_recipient_distribution_buyer",
        ),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    distribution_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    listing_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(
        String(20), default="MANUAL", server_default=text("'MANUAL'")
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    viewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    view_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    view_duration_sec: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    pages_viewed: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )


class BuyerResponseModel(Base):
    """Latest response of a buyer to a listing (overwritten in place)."""

    __tablename__ = "buyer_responses"
    __table_args__ = (
        UniqueConstraint("listing_id", "buyer_id", name="uq_response_listing_buyer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    response: Mapped[str] = mapped_column(
        String(40), default="NOT_RESPONDED", server_default=text("'NOT_RESPONDED'")
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class BuyerAuthorizationModel(Base):
    """Gating decision and NDA progress for a buyer on a listing."""

    __tablename__ = "buyer_authorizations"
    __table_args__ = (
        UniqueConstraint("listing_id", "buyer_id", name="uq_authorization_listing_buyer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", server_default=text("'PENDING'")
    )
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    nda_status: Mapped[str] = mapped_column(
        String(20), default="NOT_SENT", server_default=text("'NOT_SENT'")
    )
    access_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    authorized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    declined_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    nda_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    nda_signed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    data_room_granted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
