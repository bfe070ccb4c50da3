"""Funnel aggregation -- buyer-progress counts derived from ledger state.

compute_funnel() is the single definition of every funnel predicate; nothing
caches counts. Over the distributed (de-duplicated) buyers of a listing:

- responded: response is not NOT_RESPONDED, or the buyer is AUTHORIZED
- interested: INTERESTED or INTERESTED_WITH_CONDITIONS
- authorized: status AUTHORIZED
- nda_sent: AUTHORIZED with the NDA SENT or SIGNED
- nda_signed: AUTHORIZED with the NDA SIGNED
- in_data_room: AUTHORIZED and SIGNED
- views: opened the offering in at least one distribution

Bulk authorize may authorize a buyer who never responded. Counting such a
buyer as responded keeps the stages nested:

    in_data_room <= nda_signed <= nda_sent <= authorized <= responded <= distributed
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.repository import GateRepository
from src.dealflow.gate.schemas import (
    INTERESTED_RESPONSES,
    AuthStatus,
    Funnel,
    LedgerEntry,
    NDAStatus,
    ResponseType,
)

logger = structlog.get_logger(__name__)

NDA_OUT_STATUSES = frozenset({NDAStatus.SENT, NDAStatus.SIGNED})


def compute_funnel(
    recipient_buyer_ids: Iterable[str],
    entries: Iterable[LedgerEntry],
    viewed_buyer_ids: Iterable[str] = (),
) -> Funnel:
    """Count buyers at each funnel stage.

    Args:
        recipient_buyer_ids: Buyer ids across all distributions of the listing
            (duplicates collapse).
        entries: Ledger entries for the listing.
        viewed_buyer_ids: Buyers with at least one recorded view.

    Returns:
        Funnel counts. Buyers outside the recipient set are ignored.
    """
    distributed = set(recipient_buyer_ids)
    funnel = Funnel(
        distributed=len(distributed),
        views=len(distributed.intersection(viewed_buyer_ids)),
    )

    for entry in entries:
        if entry.buyer_id not in distributed:
            continue
        auth = entry.authorization
        authorized = auth.status == AuthStatus.AUTHORIZED

        if entry.response.response != ResponseType.NOT_RESPONDED or authorized:
            funnel.responded += 1
        if entry.response.response in INTERESTED_RESPONSES:
            funnel.interested += 1
        if not authorized:
            continue
        funnel.authorized += 1
        if auth.nda_status in NDA_OUT_STATUSES:
            funnel.nda_sent += 1
        if auth.nda_status == NDAStatus.SIGNED:
            funnel.nda_signed += 1
        if entry.in_data_room:
            funnel.in_data_room += 1

    return funnel


class FunnelAggregator:
    """Computes funnels on demand from the repository."""

    def __init__(self, repository: GateRepository, ledger: ResponseLedger) -> None:
        self._repository = repository
        self._ledger = ledger

    async def compute(self, listing_id: str) -> Funnel:
        """Recompute the funnel for a listing.

        Raises:
            NotFoundError: If the listing does not exist.
        """
        await self._ledger.require_listing(listing_id)
        recipients = await self._repository.list_recipients(listing_id)
        entries = await self._repository.list_entries(listing_id)
        funnel = compute_funnel(
            (r.buyer_id for r in recipients),
            entries,
            viewed_buyer_ids=(r.buyer_id for r in recipients if r.viewed_at is not None),
        )
        logger.debug("funnel.computed", listing_id=listing_id, **funnel.model_dump())
        return funnel
