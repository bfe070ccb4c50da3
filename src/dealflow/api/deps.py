"""FastAPI helpers for service lookup and domain-error translation.

Services are created once in the application lifespan and stored on
``app.state``. Endpoints fetch them with the getters below (503 when the
service was not initialized) and translate GateError subclasses into HTTP
responses with gate_error_to_http().
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.dealflow.errors import (
    DealCreationError,
    GateError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from src.dealflow.gate.bulk import BulkOperationExecutor
from src.dealflow.gate.funnel import FunnelAggregator
from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.progression import DealProgressionController
from src.dealflow.gate.registry import DistributionRegistry

_STATUS_BY_ERROR: list[tuple[type[GateError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (PreconditionError, status.HTTP_409_CONFLICT),
    (DealCreationError, status.HTTP_502_BAD_GATEWAY),
]


def gate_error_to_http(exc: GateError) -> HTTPException:
    """Map a domain error to an HTTPException carrying a structured detail."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    detail: dict[str, Any] = {"error": type(exc).__name__, "message": exc.message}
    if isinstance(exc, PreconditionError):
        detail["unmet"] = exc.unmet
    if isinstance(exc, InvalidStateError) and exc.current_state:
        detail["current_state"] = exc.current_state
    return HTTPException(status_code=status_code, detail=detail)


def _get_service(request: Request, attr: str, label: str) -> Any:
    service = getattr(request.app.state, attr, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_registry(request: Request) -> DistributionRegistry:
    """Retrieve DistributionRegistry from app.state, 503 if not available."""
    return _get_service(request, "registry", "Distribution registry")


def get_ledger(request: Request) -> ResponseLedger:
    """Retrieve ResponseLedger from app.state, 503 if not available."""
    return _get_service(request, "ledger", "Response ledger")


def get_funnel(request: Request) -> FunnelAggregator:
    return _get_service(request, "funnel", "Funnel aggregator")


def get_bulk_executor(request: Request) -> BulkOperationExecutor:
    return _get_service(request, "bulk_executor", "Bulk executor")


def get_progression(request: Request) -> DealProgressionController:
    return _get_service(request, "progression", "Progression controller")
