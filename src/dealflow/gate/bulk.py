"""Bulk operation executor -- one decision applied across many buyers.

Each target runs its single-item ledger call independently under a bounded
fan-out. A failing target is recorded as (target, message) and never blocks
the rest of the batch. Progress updates happen in one synchronous step per
item, so a snapshot always satisfies:

    succeeded + failed == completed_count <= total

and ``completed`` is set only after every target was attempted. The executor
is generic over the single-item coroutine, so any per-item approve/reject
flow (e.g., a verification queue) can reuse execute().
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.dealflow.core.monitoring import bulk_items_total, bulk_operations_in_flight
from src.dealflow.errors import GateError, InvalidStateError, NotFoundError
from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.schemas import (
    AccessLevel,
    BulkFailure,
    BulkOperation,
    BulkOperationKind,
    utcnow,
)

logger = structlog.get_logger(__name__)

ItemFn = Callable[[str], Awaitable[Any]]


class BulkOperationExecutor:
    """Runs bulk authorize/decline decisions and tracks their progress.

    Args:
        ledger: Ledger providing the single-item operations.
        max_concurrency: Upper bound on items in flight per run.
        default_decline_reason: Reason used by bulk decline when none is given.
    """

    def __init__(
        self,
        ledger: ResponseLedger,
        max_concurrency: int = 8,
        default_decline_reason: str = "Not a fit",
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._ledger = ledger
        self._max_concurrency = max_concurrency
        self._default_decline_reason = default_decline_reason
        self._operations: dict[str, BulkOperation] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Generic Execution ───────────────────────────────────────────────────

    async def execute(
        self,
        operation: BulkOperation,
        targets: list[str],
        item_fn: ItemFn,
    ) -> BulkOperation:
        """Apply ``item_fn`` to every target, mutating ``operation`` in place.

        Duplicate targets are each attempted; the single-item calls are
        idempotent, so duplicates land in ``succeeded`` more than once.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        kind = operation.kind.value

        async def run_one(target: str) -> None:
            async with semaphore:
                try:
                    await item_fn(target)
                except GateError as exc:
                    error = str(exc)
                except Exception as exc:
                    logger.exception(
                        "bulk.item_crashed",
                        operation_id=operation.id,
                        target=target,
                    )
                    error = str(exc) or type(exc).__name__
                else:
                    error = None

            # No await below: the outcome is recorded in one step.
            operation.completed_count += 1
            if error is None:
                operation.succeeded.append(target)
                bulk_items_total.labels(kind=kind, outcome="succeeded").inc()
            else:
                operation.failed.append(BulkFailure(target=target, error=error))
                bulk_items_total.labels(kind=kind, outcome="failed").inc()

        bulk_operations_in_flight.inc()
        try:
            await asyncio.gather(*(run_one(t) for t in targets))
        finally:
            bulk_operations_in_flight.dec()

        operation.completed = True
        operation.finished_at = utcnow()
        logger.info(
            "bulk.completed",
            operation_id=operation.id,
            kind=kind,
            listing_id=operation.listing_id,
            total=operation.total,
            succeeded=len(operation.succeeded),
            failed=len(operation.failed),
        )
        return operation

    # ── Gating Decisions ────────────────────────────────────────────────────

    def _item_fn(
        self,
        kind: BulkOperationKind,
        listing_id: str,
        reason: str | None,
        access_level: AccessLevel | None,
    ) -> ItemFn:
        if kind == BulkOperationKind.AUTHORIZE:
            return lambda buyer_id: self._ledger.authorize(listing_id, buyer_id, access_level)
        decline_reason = reason or self._default_decline_reason
        return lambda buyer_id: self._ledger.decline(listing_id, buyer_id, decline_reason)

    async def _prepare(
        self, kind: BulkOperationKind, listing_id: str, buyer_ids: list[str]
    ) -> BulkOperation:
        await self._ledger.require_listing(listing_id)
        return BulkOperation(
            id=f"bulk-{uuid.uuid4().hex}",
            kind=kind,
            listing_id=listing_id,
            total=len(buyer_ids),
        )

    async def run(
        self,
        kind: BulkOperationKind,
        listing_id: str,
        buyer_ids: list[str],
        reason: str | None = None,
        access_level: AccessLevel | None = None,
    ) -> BulkOperation:
        """Apply one decision to every buyer and return the final operation.

        Args:
            kind: AUTHORIZE or DECLINE.
            listing_id: Listing the buyers were distributed on.
            buyer_ids: Targets; may be empty or contain duplicates.
            reason: Decline reason (defaults to the configured reason).
            access_level: Access level for AUTHORIZE.

        Raises:
            NotFoundError: If the listing does not exist.
        """
        operation = await self._prepare(kind, listing_id, buyer_ids)
        logger.info(
            "bulk.started",
            operation_id=operation.id,
            kind=kind.value,
            listing_id=listing_id,
            total=operation.total,
        )
        await self.execute(
            operation,
            list(buyer_ids),
            self._item_fn(kind, listing_id, reason, access_level),
        )
        return operation.model_copy(deep=True)

    # ── Background Handles ──────────────────────────────────────────────────

    async def start(
        self,
        kind: BulkOperationKind,
        listing_id: str,
        buyer_ids: list[str],
        reason: str | None = None,
        access_level: AccessLevel | None = None,
    ) -> str:
        """Launch a bulk run in the background and return its operation id.

        Raises:
            NotFoundError: If the listing does not exist.
        """
        operation = await self._prepare(kind, listing_id, buyer_ids)
        self._operations[operation.id] = operation

        task = asyncio.create_task(
            self.execute(
                operation,
                list(buyer_ids),
                self._item_fn(kind, listing_id, reason, access_level),
            ),
            name=f"bulk:{operation.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "bulk.started",
            operation_id=operation.id,
            kind=kind.value,
            listing_id=listing_id,
            total=operation.total,
            background=True,
        )
        return operation.id

    def get(self, operation_id: str) -> BulkOperation:
        """Return a consistent snapshot of a tracked operation.

        Raises:
            NotFoundError: If the id is unknown or was dismissed.
        """
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(
                f"Bulk operation not found: {operation_id}",
                context={"operation_id": operation_id},
            )
        return operation.model_copy(deep=True)

    def dismiss(self, operation_id: str) -> None:
        """Forget a completed or cancelled operation.

        Raises:
            NotFoundError: If the id is unknown.
            InvalidStateError: If the operation is still running.
        """
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(
                f"Bulk operation not found: {operation_id}",
                context={"operation_id": operation_id},
            )
        if not (operation.completed or operation.cancelled):
            raise InvalidStateError(
                f"Bulk operation {operation_id} is still running",
                current_state="RUNNING",
            )
        del self._operations[operation_id]

    async def wait(self, operation_id: str) -> BulkOperation:
        """Wait for a background operation to finish and return its snapshot."""
        for task in list(self._tasks):
            if task.get_name() == f"bulk:{operation_id}":
                await task
        return self.get(operation_id)

    async def shutdown(self) -> None:
        """Cancel background runs still in flight.

        Operations that did not finish are marked cancelled so a later
        snapshot reports them as stopped and dismiss() can clear them.
        """
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for operation in self._operations.values():
            if operation.completed or operation.cancelled:
                continue
            operation.cancelled = True
            operation.finished_at = utcnow()
            logger.warning(
                "bulk.cancelled",
                operation_id=operation.id,
                kind=operation.kind.value,
                listing_id=operation.listing_id,
                completed_count=operation.completed_count,
                total=operation.total,
            )
