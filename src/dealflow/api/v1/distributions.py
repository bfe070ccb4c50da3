"""REST API endpoints for listings, buyers and distributions.

Covers listing and buyer registration, distribution creation, adding
recipients by buyer id or by email, and recipient view tracking.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.dealflow.api.deps import gate_error_to_http, get_registry
from src.dealflow.errors import GateError
from src.dealflow.gate.schemas import (
    AddRecipientsByIdResult,
    AddRecipientsResult,
    BuyerAccount,
    Distribution,
    Listing,
    ListingType,
    Recipient,
)

router = APIRouter(tags=["distributions"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class RegisterListingRequest(BaseModel):
    """Request body for marking a draft as listed."""

    listing_id: str = Field(..., min_length=1)
    listing_type: ListingType = ListingType.PRIVATE


class RegisterBuyerRequest(BaseModel):
    """Request body for creating a buyer account."""

    email: str = Field(..., min_length=3)
    name: str | None = None


class CreateDistributionRequest(BaseModel):
    """Request body for distributing a listing to existing buyers.

    listing_type defaults to the listing's own type.
    """

    recipient_ids: list[str] = Field(..., min_length=1)
    listing_type: ListingType | None = None


class AddRecipientIdsRequest(BaseModel):
    """Request body for adding existing buyer accounts to a distribution."""

    buyer_ids: list[str] = Field(..., min_length=1)


class AddRecipientsRequest(BaseModel):
    """Request body for adding recipients by email."""

    emails: list[str] = Field(..., min_length=1)


class RecordViewRequest(BaseModel):
    """Request body for a recipient view event."""

    duration_sec: int | None = Field(default=None, ge=0)
    pages_viewed: list[int] | None = None


# ── Listing and Buyer Endpoints ──────────────────────────────────────────────


@router.post("/listings", response_model=Listing, status_code=201)
async def register_listing(body: RegisterListingRequest, request: Request) -> Listing:
    """Register a listing (idempotent on listing_id)."""
    registry = get_registry(request)
    try:
        return await registry.register_listing(body.listing_id, body.listing_type)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/listings/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, request: Request) -> Listing:
    """Get a listing, including its conversion record once converted."""
    registry = get_registry(request)
    try:
        return await registry.get_listing(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post("/buyers", response_model=BuyerAccount, status_code=201)
async def register_buyer(body: RegisterBuyerRequest, request: Request) -> BuyerAccount:
    """Create a buyer account, or return the one already holding the email."""
    registry = get_registry(request)
    try:
        return await registry.register_buyer(body.email, body.name)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


# ── Distribution Endpoints ───────────────────────────────────────────────────


@router.post(
    "/listings/{listing_id}/distributions",
    response_model=Distribution,
    status_code=201,
)
async def create_distribution(
    listing_id: str,
    body: CreateDistributionRequest,
    request: Request,
) -> Distribution:
    """Distribute a listing to a set of buyer ids."""
    registry = get_registry(request)
    try:
        listing_type = body.listing_type
        if listing_type is None:
            listing_type = (await registry.get_listing(listing_id)).listing_type
        return await registry.create_distribution(listing_id, listing_type, body.recipient_ids)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/listings/{listing_id}/distributions", response_model=list[Distribution])
async def list_distributions(listing_id: str, request: Request) -> list[Distribution]:
    """List every distribution of a listing."""
    registry = get_registry(request)
    try:
        return await registry.list_distributions(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/distributions/{distribution_id}", response_model=Distribution)
async def get_distribution(distribution_id: str, request: Request) -> Distribution:
    registry = get_registry(request)
    try:
        return await registry.get_distribution(distribution_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/distributions/{distribution_id}/recipient-ids",
    response_model=AddRecipientsByIdResult,
)
async def add_recipients(
    distribution_id: str,
    body: AddRecipientIdsRequest,
    request: Request,
) -> AddRecipientsByIdResult:
    """Add existing buyers by id; unknown or repeated ids are returned, not raised."""
    registry = get_registry(request)
    try:
        return await registry.add_recipients(distribution_id, body.buyer_ids)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/distributions/{distribution_id}/recipients",
    response_model=AddRecipientsResult,
)
async def add_recipients_by_email(
    distribution_id: str,
    body: AddRecipientsRequest,
    request: Request,
) -> AddRecipientsResult:
    """Add recipients by email; per-email problems are returned, not raised."""
    registry = get_registry(request)
    try:
        return await registry.add_recipients_by_email(distribution_id, body.emails)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post("/recipients/{recipient_id}/views", response_model=Recipient)
async def record_view(
    recipient_id: str,
    body: RecordViewRequest,
    request: Request,
) -> Recipient:
    """Record a recipient opening the offering."""
    registry = get_registry(request)
    try:
        return await registry.record_view(recipient_id, body.duration_sec, body.pages_viewed)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc

