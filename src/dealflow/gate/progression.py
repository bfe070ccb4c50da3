"""Deal progression controller -- macro-phase gating and conversion.

A listing moves DISTRIBUTED -> ACTIVE_DD -> CONVERTED and never backwards.
Entering ACTIVE_DD needs at least one authorized buyer; conversion needs the
listing in ACTIVE_DD and the winner AUTHORIZED with a SIGNED NDA.

Conversion holds the listing lock for the whole call, then re-reads the
winner's authorization under the winner's ledger lock and inside the
repository transaction that row-locks the entry. Both are held across the
collaborator call, so a concurrent revoke from this or another worker cannot
slip between the check and the deal creation. Ledger operations never take a
listing lock, so the lock order (listing, then entry) cannot deadlock.
"""

from __future__ import annotations

import structlog

from src.dealflow.core.monitoring import track_deal_creation
from src.dealflow.errors import NotFoundError, PreconditionError
from src.dealflow.gate.deal_client import DealCreationClient
from src.dealflow.gate.funnel import FunnelAggregator
from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.repository import GateRepository
from src.dealflow.gate.schemas import (
    AuthStatus,
    DealPhase,
    LedgerEntry,
    Listing,
    NDAStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

PHASE_TRANSITIONS: dict[DealPhase, set[DealPhase]] = {
    DealPhase.DISTRIBUTED: {DealPhase.ACTIVE_DD},
    DealPhase.ACTIVE_DD: {DealPhase.CONVERTED},
    DealPhase.CONVERTED: set(),  # Terminal
}

UNMET_NOT_ACTIVE_DD = "listing not in ACTIVE_DD"
UNMET_NOT_AUTHORIZED = "buyer not authorized"
UNMET_NDA_NOT_SIGNED = "NDA not signed"
UNMET_NO_AUTHORIZED_BUYER = "no authorized buyer"


def winner_unmet_conditions(entry: LedgerEntry) -> list[str]:
    """Conditions a winning buyer's ledger entry fails, empty when eligible."""
    unmet: list[str] = []
    if entry.authorization.status != AuthStatus.AUTHORIZED:
        unmet.append(UNMET_NOT_AUTHORIZED)
    if entry.authorization.nda_status != NDAStatus.SIGNED:
        unmet.append(UNMET_NDA_NOT_SIGNED)
    return unmet


class DealProgressionController:
    """Gates listing phase transitions and performs the terminal conversion.

    Args:
        repository: Storage backend implementing GateRepository.
        ledger: Ledger sharing its lock registry with this controller.
        funnel: Aggregator used for the ACTIVE_DD entry predicate.
        deal_client: External deal-creation collaborator.
    """

    def __init__(
        self,
        repository: GateRepository,
        ledger: ResponseLedger,
        funnel: FunnelAggregator,
        deal_client: DealCreationClient,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._funnel = funnel
        self._deal_client = deal_client

    def _listing_lock(self, listing_id: str):
        return self._ledger.locks.hold(("listing", listing_id))

    async def advance_to_active_dd(self, listing_id: str) -> Listing:
        """Move a listing from DISTRIBUTED to ACTIVE_DD.

        Calling it on a listing already in ACTIVE_DD returns it unchanged.

        Raises:
            NotFoundError: If the listing does not exist.
            PreconditionError: If no buyer is authorized or the listing is
                already CONVERTED.
        """
        async with self._listing_lock(listing_id):
            listing = await self._ledger.require_listing(listing_id)
            if listing.phase == DealPhase.ACTIVE_DD:
                return listing
            if DealPhase.ACTIVE_DD not in PHASE_TRANSITIONS[listing.phase]:
                raise PreconditionError(
                    f"Listing {listing_id} is {listing.phase.value}",
                    unmet=["listing not in DISTRIBUTED"],
                    context={"listing_id": listing_id, "phase": listing.phase.value},
                )

            funnel = await self._funnel.compute(listing_id)
            if funnel.authorized < 1:
                raise PreconditionError(
                    f"Listing {listing_id} has no authorized buyer",
                    unmet=[UNMET_NO_AUTHORIZED_BUYER],
                    context={"listing_id": listing_id},
                )

            listing.phase = DealPhase.ACTIVE_DD
            listing.updated_at = utcnow()
            saved = await self._repository.save_listing(listing)

        logger.info(
            "progression.advanced_to_active_dd",
            listing_id=listing_id,
            authorized=funnel.authorized,
        )
        return saved

    async def convert_to_deal(
        self, listing_id: str, winning_buyer_id: str, notes: str | None = None
    ) -> str:
        """Convert the winning buyer into a closed deal.

        Invokes the deal-creation collaborator exactly once on success and
        marks the listing CONVERTED with the conversion record.

        Returns:
            The deal id returned by the collaborator.

        Raises:
            NotFoundError: If the listing does not exist or the buyer is not
                a recipient of it.
            PreconditionError: Naming every unmet condition.
            DealCreationError: If the collaborator fails (listing unchanged).
        """
        async with self._listing_lock(listing_id):
            listing = await self._ledger.require_listing(listing_id)

            unmet: list[str] = []
            if listing.phase != DealPhase.ACTIVE_DD:
                unmet.append(UNMET_NOT_ACTIVE_DD)
            entry = await self._repository.get_entry(listing_id, winning_buyer_id)
            if entry is None:
                raise NotFoundError(
                    f"Buyer {winning_buyer_id} is not a recipient of listing {listing_id}",
                    context={"listing_id": listing_id, "buyer_id": winning_buyer_id},
                )
            unmet.extend(winner_unmet_conditions(entry))
            if unmet:
                logger.info(
                    "progression.conversion_rejected",
                    listing_id=listing_id,
                    buyer_id=winning_buyer_id,
                    unmet=unmet,
                )
                raise PreconditionError(
                    f"Cannot convert listing {listing_id}: {', '.join(unmet)}",
                    unmet=unmet,
                    context={"listing_id": listing_id, "buyer_id": winning_buyer_id},
                )

            deal_id = await self._create_deal(listing, winning_buyer_id, notes)

            listing.phase = DealPhase.CONVERTED
            listing.external_deal_id = deal_id
            listing.winning_buyer_id = winning_buyer_id
            listing.conversion_notes = notes
            listing.converted_at = utcnow()
            listing.updated_at = listing.converted_at
            await self._repository.save_listing(listing)

        logger.info(
            "progression.converted",
            listing_id=listing_id,
            buyer_id=winning_buyer_id,
            deal_id=deal_id,
        )
        return deal_id

    async def _create_deal(
        self, listing: Listing, winning_buyer_id: str, notes: str | None
    ) -> str:
        """Re-check the winner under its locks and invoke the collaborator once."""
        deal_id: str | None = None

        async def recheck_and_create(entry: LedgerEntry) -> bool:
            nonlocal deal_id
            unmet = winner_unmet_conditions(entry)
            if unmet:
                raise PreconditionError(
                    f"Winner changed state before conversion: {', '.join(unmet)}",
                    unmet=unmet,
                    context={"listing_id": listing.id, "buyer_id": winning_buyer_id},
                )
            async with track_deal_creation():
                deal_id = await self._deal_client.create_deal(listing, winning_buyer_id, notes)
            return False

        async with self._ledger.entry_lock(listing.id, winning_buyer_id):
            current = await self._repository.update_entry(
                listing.id, winning_buyer_id, recheck_and_create
            )
        if current is None or deal_id is None:
            raise NotFoundError(
                f"Buyer {winning_buyer_id} is not a recipient of listing {listing.id}",
                context={"listing_id": listing.id, "buyer_id": winning_buyer_id},
            )
        return deal_id
