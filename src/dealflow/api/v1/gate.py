"""REST API endpoints for the response/authorization ledger, funnel and bulk decisions.

Single-buyer endpoints raise on invalid transitions (409) or unknown buyers
(404). Bulk endpoints never fail per buyer: failures are reported in the
returned operation.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, Field

from src.dealflow.api.deps import (
    gate_error_to_http,
    get_bulk_executor,
    get_funnel,
    get_ledger,
)
from src.dealflow.errors import GateError
from src.dealflow.gate.schemas import (
    AccessLevel,
    AuthStatus,
    BulkOperation,
    BulkOperationKind,
    Funnel,
    LedgerEntry,
    ResponseType,
)

router = APIRouter(tags=["gate"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class RecordResponseRequest(BaseModel):
    """Request body for a buyer's response to an offering."""

    response: ResponseType
    message: str | None = None


class AuthorizeRequest(BaseModel):
    access_level: AccessLevel | None = None


class DeclineRequest(BaseModel):
    """Request body for declining a buyer. The reason is stored as given."""

    reason: str = ""


class RevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class GrantDataRoomRequest(BaseModel):
    access_level: AccessLevel = AccessLevel.STANDARD


class BulkDecisionRequest(BaseModel):
    """Request body for a bulk authorize or decline."""

    buyer_ids: list[str]
    reason: str | None = None
    access_level: AccessLevel | None = None


class StartBulkRequest(BulkDecisionRequest):
    kind: BulkOperationKind


class StartBulkResponse(BaseModel):
    operation_id: str


# ── Ledger Endpoints ─────────────────────────────────────────────────────────


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/response",
    response_model=LedgerEntry,
)
async def record_response(
    listing_id: str,
    buyer_id: str,
    body: RecordResponseRequest,
    request: Request,
) -> LedgerEntry:
    """Record (overwrite) a buyer's response."""
    ledger = get_ledger(request)
    try:
        return await ledger.record_response(listing_id, buyer_id, body.response, body.message)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/authorize",
    response_model=LedgerEntry,
)
async def authorize_buyer(
    listing_id: str,
    buyer_id: str,
    request: Request,
    body: AuthorizeRequest | None = None,
) -> LedgerEntry:
    """Authorize a buyer (no-op when already authorized)."""
    ledger = get_ledger(request)
    access_level = body.access_level if body else None
    try:
        return await ledger.authorize(listing_id, buyer_id, access_level)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/decline",
    response_model=LedgerEntry,
)
async def decline_buyer(
    listing_id: str,
    buyer_id: str,
    request: Request,
    body: DeclineRequest | None = None,
) -> LedgerEntry:
    """Decline a buyer (terminal). An omitted reason is stored as an empty string."""
    ledger = get_ledger(request)
    reason = body.reason if body else ""
    try:
        return await ledger.decline(listing_id, buyer_id, reason)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/revoke",
    response_model=LedgerEntry,
)
async def revoke_buyer(
    listing_id: str,
    buyer_id: str,
    body: RevokeRequest,
    request: Request,
) -> LedgerEntry:
    """Revoke an authorized buyer's access."""
    ledger = get_ledger(request)
    try:
        return await ledger.revoke(listing_id, buyer_id, body.reason)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/nda/send",
    response_model=LedgerEntry,
)
async def send_nda(listing_id: str, buyer_id: str, request: Request) -> LedgerEntry:
    ledger = get_ledger(request)
    try:
        return await ledger.send_nda(listing_id, buyer_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/nda/confirm",
    response_model=LedgerEntry,
)
async def confirm_nda_signed(listing_id: str, buyer_id: str, request: Request) -> LedgerEntry:
    ledger = get_ledger(request)
    try:
        return await ledger.confirm_nda_signed(listing_id, buyer_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/buyers/{buyer_id}/data-room",
    response_model=LedgerEntry,
)
async def grant_data_room_access(
    listing_id: str,
    buyer_id: str,
    request: Request,
    body: GrantDataRoomRequest | None = None,
) -> LedgerEntry:
    """Grant data-room access to an authorized buyer with a signed NDA."""
    ledger = get_ledger(request)
    access_level = body.access_level if body else AccessLevel.STANDARD
    try:
        return await ledger.grant_data_room_access(listing_id, buyer_id, access_level)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get(
    "/listings/{listing_id}/buyers/{buyer_id}",
    response_model=LedgerEntry,
)
async def get_entry(listing_id: str, buyer_id: str, request: Request) -> LedgerEntry:
    ledger = get_ledger(request)
    try:
        return await ledger.get_entry(listing_id, buyer_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/listings/{listing_id}/authorizations", response_model=list[LedgerEntry])
async def list_authorizations(
    listing_id: str,
    request: Request,
    status_filter: AuthStatus | None = Query(default=None, alias="status"),
) -> list[LedgerEntry]:
    """List ledger entries, optionally filtered by authorization status."""
    ledger = get_ledger(request)
    try:
        return await ledger.list_authorizations(listing_id, status_filter)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/listings/{listing_id}/review-queue", response_model=list[LedgerEntry])
async def review_queue(
    listing_id: str,
    request: Request,
    pending_only: bool = Query(default=True),
    status_filter: AuthStatus | None = Query(default=None, alias="status"),
) -> list[LedgerEntry]:
    """Interested buyers for the broker review screen."""
    ledger = get_ledger(request)
    try:
        return await ledger.review_queue(listing_id, pending_only, status_filter)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.get("/listings/{listing_id}/responses", response_model=list[LedgerEntry])
async def list_responses(listing_id: str, request: Request) -> list[LedgerEntry]:
    """Responded buyers, most recent first."""
    ledger = get_ledger(request)
    try:
        return await ledger.list_responses(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


# ── Funnel Endpoint ──────────────────────────────────────────────────────────


@router.get("/listings/{listing_id}/funnel", response_model=Funnel)
async def get_funnel_counts(listing_id: str, request: Request) -> Funnel:
    """Recompute the buyer funnel for a listing."""
    funnel = get_funnel(request)
    try:
        return await funnel.compute(listing_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


# ── Bulk Endpoints ───────────────────────────────────────────────────────────


@router.post("/listings/{listing_id}/bulk/authorize", response_model=BulkOperation)
async def bulk_authorize(
    listing_id: str,
    body: BulkDecisionRequest,
    request: Request,
) -> BulkOperation:
    """Authorize many buyers and return the completed operation."""
    executor = get_bulk_executor(request)
    try:
        return await executor.run(
            BulkOperationKind.AUTHORIZE,
            listing_id,
            body.buyer_ids,
            access_level=body.access_level,
        )
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post("/listings/{listing_id}/bulk/decline", response_model=BulkOperation)
async def bulk_decline(
    listing_id: str,
    body: BulkDecisionRequest,
    request: Request,
) -> BulkOperation:
    """Decline many buyers; the configured default reason applies when none is given."""
    executor = get_bulk_executor(request)
    try:
        return await executor.run(
            BulkOperationKind.DECLINE,
            listing_id,
            body.buyer_ids,
            reason=body.reason,
        )
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.post(
    "/listings/{listing_id}/bulk-operations",
    response_model=StartBulkResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_bulk(
    listing_id: str,
    body: StartBulkRequest,
    request: Request,
) -> StartBulkResponse:
    """Launch a bulk decision in the background."""
    executor = get_bulk_executor(request)
    try:
        operation_id = await executor.start(
            body.kind,
            listing_id,
            body.buyer_ids,
            reason=body.reason,
            access_level=body.access_level,
        )
    except GateError as exc:
        raise gate_error_to_http(exc) from exc
    return StartBulkResponse(operation_id=operation_id)


@router.get("/bulk-operations/{operation_id}", response_model=BulkOperation)
async def get_bulk(operation_id: str, request: Request) -> BulkOperation:
    """Progress snapshot of a background bulk operation."""
    executor = get_bulk_executor(request)
    try:
        return executor.get(operation_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc


@router.delete("/bulk-operations/{operation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_bulk(operation_id: str, request: Request) -> None:
    """Discard a completed bulk operation."""
    executor = get_bulk_executor(request)
    try:
        executor.dismiss(operation_id)
    except GateError as exc:
        raise gate_error_to_http(exc) from exc
