"""Pydantic schemas for distribution, buyer ledger, funnel and bulk operations.

Defines all structured types for the buyer-gating lifecycle:
- Enums: ListingType, DealPhase, ResponseType, AuthStatus, NDAStatus,
  AccessLevel, RecipientSource, BulkOperationKind, BuyerAccountStatus
- Registry: BuyerAccount, Listing, Recipient, Distribution, AddRecipientsResult,
  AddRecipientsByIdResult
- Ledger: ResponseRecord, Authorization, LedgerEntry
- Aggregates: Funnel
- Bulk: BulkFailure, BulkOperation
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class ListingType(str, Enum):
    """Whether a listing is marketed openly or to a curated buyer set."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class DealPhase(str, Enum):
    """Macro-phase of a listing, owned by the progression controller."""

    DISTRIBUTED = "DISTRIBUTED"
    ACTIVE_DD = "ACTIVE_DD"
    CONVERTED = "CONVERTED"


class ResponseType(str, Enum):
    """A buyer's reaction to an offering."""

    NOT_RESPONDED = "NOT_RESPONDED"
    INTERESTED = "INTERESTED"
    INTERESTED_WITH_CONDITIONS = "INTERESTED_WITH_CONDITIONS"
    PASSED = "PASSED"


INTERESTED_RESPONSES: frozenset[ResponseType] = frozenset(
    {ResponseType.INTERESTED, ResponseType.INTERESTED_WITH_CONDITIONS}
)


class AuthStatus(str, Enum):
    """Seller/broker decision on a buyer's access pipeline."""

    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    DECLINED = "DECLINED"


class NDAStatus(str, Enum):
    """NDA progress for an authorized buyer."""

    NOT_SENT = "NOT_SENT"
    SENT = "SENT"
    SIGNED = "SIGNED"


class AccessLevel(str, Enum):
    """Depth of materials a buyer may see once gated in."""

    TEASER = "TEASER"
    STANDARD = "STANDARD"
    FULL = "FULL"
    VDR_ACCESS = "VDR_ACCESS"


class RecipientSource(str, Enum):
    """How a recipient was added to a distribution."""

    MANUAL = "MANUAL"
    MANUAL_EMAIL = "MANUAL_EMAIL"


class BuyerAccountStatus(str, Enum):
    """ACTIVE accounts are real buyers; PENDING ones are invitations by email."""

    ACTIVE = "ACTIVE"
    PENDING = "PENDING"


class BulkOperationKind(str, Enum):
    """Single-item decisions the bulk executor can fan out."""

    AUTHORIZE = "AUTHORIZE"
    DECLINE = "DECLINE"


# ── Registry Schemas ────────────────────────────────────────────────────────


class BuyerAccount(BaseModel):
    """A buyer identity that can receive distributions."""

    id: str
    email: str
    name: str | None = None
    status: BuyerAccountStatus = BuyerAccountStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)


class Listing(BaseModel):
    """A deal draft marked available for buyer distribution."""

    id: str
    listing_type: ListingType = ListingType.PRIVATE
    phase: DealPhase = DealPhase.DISTRIBUTED
    external_deal_id: str | None = None
    winning_buyer_id: str | None = None
    conversion_notes: str | None = None
    converted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class Recipient(BaseModel):
    """One buyer-candidate inside a distribution."""

    id: str
    distribution_id: str
    buyer_id: str
    source: RecipientSource = RecipientSource.MANUAL
    sent_at: datetime = Field(default_factory=utcnow)
    viewed_at: datetime | None = None
    view_count: int = 0
    view_duration_sec: int = 0
    pages_viewed: list[int] = Field(default_factory=list)


class Distribution(BaseModel):
    """A named batch of recipients for a listing."""

    id: str
    listing_id: str
    listing_type: ListingType
    recipients: list[Recipient] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class RecipientError(BaseModel):
    """Why a single email could not be added to a distribution."""

    email: str
    reason: str


class AddedRecipient(BaseModel):
    """A recipient successfully added by email."""

    recipient_id: str
    buyer_id: str
    email: str
    invited: bool = False  # True when a pending invitation account was created


class AddRecipientsResult(BaseModel):
    """Tagged result of a best-effort add-by-email batch."""

    added: list[AddedRecipient] = Field(default_factory=list)
    errors: list[RecipientError] = Field(default_factory=list)


class RecipientIdError(BaseModel):
    """Why a single buyer id could not be added to a distribution."""

    buyer_id: str
    reason: str


class AddRecipientsByIdResult(BaseModel):
    """Tagged result of a best-effort add-by-id batch."""

    added: list[AddedRecipient] = Field(default_factory=list)
    errors: list[RecipientIdError] = Field(default_factory=list)


# ── Ledger Schemas ──────────────────────────────────────────────────────────


class ResponseRecord(BaseModel):
    """A buyer's latest response to a listing (last-write-wins)."""

    response: ResponseType = ResponseType.NOT_RESPONDED
    message: str | None = None
    responded_at: datetime | None = None


class Authorization(BaseModel):
    """Seller/broker-side gating decision for one buyer on one listing."""

    status: AuthStatus = AuthStatus.PENDING
    decline_reason: str | None = None
    nda_status: NDAStatus = NDAStatus.NOT_SENT
    access_level: AccessLevel | None = None
    authorized_at: datetime | None = None
    declined_at: datetime | None = None
    nda_sent_at: datetime | None = None
    nda_signed_at: datetime | None = None
    data_room_granted_at: datetime | None = None


class LedgerEntry(BaseModel):
    """Response and authorization pair for one buyer on one listing."""

    listing_id: str
    buyer_id: str
    response: ResponseRecord = Field(default_factory=ResponseRecord)
    authorization: Authorization = Field(default_factory=Authorization)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def in_data_room(self) -> bool:
        """Data-room access holds only once authorized AND NDA signed."""
        return (
            self.authorization.status == AuthStatus.AUTHORIZED
            and self.authorization.nda_status == NDAStatus.SIGNED
        )


# ── Aggregates ──────────────────────────────────────────────────────────────


class Funnel(BaseModel):
    """Buyer-progress counts for a listing, from distributed to in-data-room.

    ``views`` counts distributed buyers who opened the offering at least once;
    it sits beside the nested stages rather than inside them.
    """

    distributed: int = 0
    views: int = 0
    responded: int = 0
    interested: int = 0
    authorized: int = 0
    nda_sent: int = 0
    nda_signed: int = 0
    in_data_room: int = 0


# ── Bulk Operations ─────────────────────────────────────────────────────────


class BulkFailure(BaseModel):
    """One target that failed inside a bulk run."""

    target: str
    error: str


class BulkOperation(BaseModel):
    """Snapshot of an in-flight or completed bulk decision."""

    id: str
    kind: BulkOperationKind
    listing_id: str
    total: int = 0
    completed_count: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkFailure] = Field(default_factory=list)
    completed: bool = False
    cancelled: bool = False  # Stopped by shutdown before every target was attempted
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
