"""Domain exceptions for the distribution and buyer-gating engine.

Single-item operations raise these directly. Batch operations (bulk decisions,
add-by-email) capture them per item and return them as structured failures
instead of propagating.
"""

from __future__ import annotations

from typing import Any


class GateError(Exception):
    """Base exception for all distribution/gating errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(GateError):
    """Malformed or empty input (e.g., an empty recipient list)."""


class NotFoundError(GateError):
    """Reference to a listing, distribution, recipient or buyer that does not exist."""


class InvalidStateError(GateError):
    """Operation attempted from an incompatible ledger state."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.current_state = current_state


class PreconditionError(GateError):
    """A progression call whose gating condition is unmet.

    ``unmet`` lists every condition that failed, so callers can render all of
    them at once instead of fixing one at a time.
    """

    def __init__(
        self,
        message: str,
        unmet: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.unmet = unmet or []


class DealCreationError(GateError):
    """The external deal-creation service rejected or failed the conversion."""
