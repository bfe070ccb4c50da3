"""REST API endpoints for listing phase progression and deal conversion."""

from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.dealflow.api.deps import gate_error_to_http, get_progression, get_registry
from src.dealflow.errors import GateError
from src.dealflow.gate.schemas import Listing

router = APIRouter(prefix="/listings", tags=["progression"])


class ConvertRequest(BaseModel):
    """Request body for converting a winning buyer into a deal."""

    winning_buyer_id: str = Field(..., min_length=1)
    notes: str | None = None


class ConvertResponse(BaseModel):
    deal_id: str
    listing: Listing


@router.post("/{listing_id}/advance", response_model=Listing)
async def advance_to_active_dd(listing_id: str, request: Request) -> Listing:
    """Move a listing into active due diligence."""
    controller = get_progression(request)
    try:
        return await controller.advance_to_active_dd(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post("/{listing_id}/convert", response_model=ConvertResponse)
async def convert_to_deal(
    listing_id: str,
    body: ConvertRequest,
    request: Request,
) -> ConvertResponse:
    """Convert the winning buyer into a closed deal."""
    controller = get_progression(request)
    registry = get_registry(request)
    try:
        deal_id = await controller.convert_to_deal(
            listing_id, body.winning_buyer_id, body.notes
        )
        listing = await registry.get_listing(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc
    return ConvertResponse(deal_id=deal_id, listing=listing)
