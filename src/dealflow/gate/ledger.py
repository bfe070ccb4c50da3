"""Response and authorization ledger.

Holds, per (listing, buyer), the buyer's latest response and the seller-side
gating decision with NDA progress. Every mutation for one pair runs under that
pair's in-process lock and is applied by the repository inside a single
transaction that row-locks the entry, so racing workers in other processes
also serialize: the loser re-validates against the winner's committed state.
Different buyers and listings proceed in parallel.

Authorization moves only along AUTH_TRANSITIONS. Calls whose target state
already holds are no-ops; calls from an incompatible state raise
InvalidStateError. DECLINED is terminal through authorize(), and NDA progress
only advances while AUTHORIZED, so a declined buyer never reaches the data room.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

import structlog

from src.dealflow.core.locks import KeyedLocks
from src.dealflow.core.monitoring import ledger_transitions_total
from src.dealflow.errors import InvalidStateError, NotFoundError, ValidationError
from src.dealflow.gate.repository import GateRepository
from src.dealflow.gate.schemas import (
    INTERESTED_RESPONSES,
    AccessLevel,
    AuthStatus,
    LedgerEntry,
    Listing,
    NDAStatus,
    ResponseType,
    utcnow,
)

logger = structlog.get_logger(__name__)

# ── Transition Rules ────────────────────────────────────────────────────────

AUTH_TRANSITIONS: dict[AuthStatus, set[AuthStatus]] = {
    AuthStatus.PENDING: {AuthStatus.AUTHORIZED, AuthStatus.DECLINED},
    AuthStatus.AUTHORIZED: {AuthStatus.DECLINED},
    AuthStatus.DECLINED: set(),  # Terminal
}

NDA_TRANSITIONS: dict[NDAStatus, set[NDAStatus]] = {
    NDAStatus.NOT_SENT: {NDAStatus.SENT},
    NDAStatus.SENT: {NDAStatus.SIGNED},
    NDAStatus.SIGNED: set(),
}


def validate_auth_transition(current: AuthStatus, target: AuthStatus) -> None:
    """Validate an authorization status change.

    Args:
        current: Status the entry holds now.
        target: Requested status.

    Raises:
        InvalidStateError: If the change is not allowed.
    """
    if current == target:
        return
    if target not in AUTH_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot move authorization from {current.value} to {target.value}",
            current_state=current.value,
        )


def validate_nda_transition(current: NDAStatus, target: NDAStatus) -> None:
    """Validate an NDA status change (same-state is a no-op)."""
    if current == target:
        return
    if target not in NDA_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot move NDA from {current.value} to {target.value}",
            current_state=current.value,
        )


# ── Ledger Service ──────────────────────────────────────────────────────────


class ResponseLedger:
    """Per-buyer response and authorization state for each listing.

    Args:
        repository: Storage backend implementing GateRepository.
        locks: Shared lock registry. The progression controller and the
            distribution registry must use the same instance.
    """

    def __init__(self, repository: GateRepository, locks: KeyedLocks | None = None) -> None:
        self._repository = repository
        self._locks = locks or KeyedLocks()

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    def entry_lock(self, listing_id: str, buyer_id: str) -> AbstractAsyncContextManager[None]:
        """Lock serializing every mutation of one (listing, buyer) entry."""
        return self._locks.hold(("entry", listing_id, buyer_id))

    async def require_listing(self, listing_id: str) -> Listing:
        listing = await self._repository.get_listing(listing_id)
        if listing is None:
            raise NotFoundError(
                f"Listing not found: {listing_id}", context={"listing_id": listing_id}
            )
        return listing

    async def _require_entry(self, listing_id: str, buyer_id: str) -> LedgerEntry:
        entry = await self._repository.get_entry(listing_id, buyer_id)
        if entry is None:
            raise NotFoundError(
                f"Buyer {buyer_id} is not a recipient of listing {listing_id}",
                context={"listing_id": listing_id, "buyer_id": buyer_id},
            )
        return entry

    async def _transition(
        self,
        listing_id: str,
        buyer_id: str,
        operation: str,
        apply: Callable[[LedgerEntry], bool],
    ) -> tuple[LedgerEntry, bool]:
        """Run ``apply`` against the stored entry inside one storage transaction.

        ``apply`` validates against the state read under the row lock and
        returns True when it changed the entry. Raising from it leaves the
        stored entry untouched.

        Returns:
            (entry, changed) with the entry as stored after the call.

        Raises:
            NotFoundError: If the buyer is not a recipient of the listing.
        """
        changed = False

        async def mutate(entry: LedgerEntry) -> bool:
            nonlocal changed
            changed = apply(entry)
            if changed:
                entry.updated_at = utcnow()
            return changed

        entry = await self._repository.update_entry(listing_id, buyer_id, mutate)
        if entry is None:
            raise NotFoundError(
                f"Buyer {buyer_id} is not a recipient of listing {listing_id}",
                context={"listing_id": listing_id, "buyer_id": buyer_id},
            )
        if changed:
            ledger_transitions_total.labels(operation=operation).inc()
        return entry, changed

    # ── Responses ───────────────────────────────────────────────────────────

    async def record_response(
        self,
        listing_id: str,
        buyer_id: str,
        response: ResponseType,
        message: str | None = None,
    ) -> LedgerEntry:
        """Overwrite the buyer's response (last write wins, no history).

        Raises:
            NotFoundError: If the buyer is not a recipient of the listing.
        """

        def apply(entry: LedgerEntry) -> bool:
            entry.response.response = response
            entry.response.message = message
            entry.response.responded_at = utcnow()
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, _ = await self._transition(listing_id, buyer_id, "record_response", apply)

        logger.info(
            "ledger.response_recorded",
            listing_id=listing_id,
            buyer_id=buyer_id,
            response=response.value,
        )
        return saved

    # ── Authorization ───────────────────────────────────────────────────────

    async def authorize(
        self,
        listing_id: str,
        buyer_id: str,
        access_level: AccessLevel | None = None,
    ) -> LedgerEntry:
        """Move PENDING -> AUTHORIZED.

        No-op when already AUTHORIZED.

        Raises:
            NotFoundError: If the buyer is not a recipient of the listing.
            InvalidStateError: If the buyer was declined.
        """

        def apply(entry: LedgerEntry) -> bool:
            auth = entry.authorization
            if auth.status == AuthStatus.AUTHORIZED:
                return False
            if auth.status == AuthStatus.DECLINED:
                raise InvalidStateError(
                    f"Buyer {buyer_id} was declined on listing {listing_id}",
                    current_state=auth.status.value,
                    context={"listing_id": listing_id, "buyer_id": buyer_id},
                )
            validate_auth_transition(auth.status, AuthStatus.AUTHORIZED)
            auth.status = AuthStatus.AUTHORIZED
            auth.access_level = access_level or AccessLevel.STANDARD
            auth.authorized_at = utcnow()
            auth.decline_reason = None
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, changed = await self._transition(listing_id, buyer_id, "authorize", apply)

        if changed:
            logger.info(
                "ledger.buyer_authorized",
                listing_id=listing_id,
                buyer_id=buyer_id,
                access_level=saved.authorization.access_level.value,
            )
        return saved

    @staticmethod
    def _apply_decline(entry: LedgerEntry, reason: str) -> None:
        auth = entry.authorization
        auth.status = AuthStatus.DECLINED
        auth.decline_reason = reason
        auth.declined_at = utcnow()
        auth.nda_status = NDAStatus.NOT_SENT
        auth.nda_sent_at = None
        auth.nda_signed_at = None
        auth.access_level = None
        auth.data_room_granted_at = None

    async def decline(self, listing_id: str, buyer_id: str, reason: str = "") -> LedgerEntry:
        """Move PENDING or AUTHORIZED -> DECLINED.

        The reason is stored verbatim (empty string when omitted). Idempotent
        on DECLINED, where the original reason is kept. NDA progress and
        access level are cleared.

        Raises:
            NotFoundError: If the buyer is not a recipient of the listing.
        """

        def apply(entry: LedgerEntry) -> bool:
            if entry.authorization.status == AuthStatus.DECLINED:
                return False
            validate_auth_transition(entry.authorization.status, AuthStatus.DECLINED)
            self._apply_decline(entry, reason)
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, changed = await self._transition(listing_id, buyer_id, "decline", apply)

        if changed:
            logger.info(
                "ledger.buyer_declined",
                listing_id=listing_id,
                buyer_id=buyer_id,
                reason=reason,
            )
        return saved

    async def revoke(self, listing_id: str, buyer_id: str, reason: str) -> LedgerEntry:
        """Withdraw a previously granted authorization (AUTHORIZED -> DECLINED).

        Args:
            listing_id: Listing the buyer was authorized on.
            buyer_id: Buyer losing access.
            reason: Required explanation recorded as the decline reason.

        Raises:
            ValidationError: If reason is empty.
            NotFoundError: If the buyer is not a recipient of the listing.
            InvalidStateError: If the buyer is not currently AUTHORIZED.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to revoke access")
        reason = reason.strip()

        def apply(entry: LedgerEntry) -> bool:
            current = entry.authorization.status
            if current != AuthStatus.AUTHORIZED:
                raise InvalidStateError(
                    f"Buyer {buyer_id} is not authorized on listing {listing_id}",
                    current_state=current.value,
                    context={"listing_id": listing_id, "buyer_id": buyer_id},
                )
            self._apply_decline(entry, reason)
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, _ = await self._transition(listing_id, buyer_id, "revoke", apply)

        logger.info(
            "ledger.access_revoked",
            listing_id=listing_id,
            buyer_id=buyer_id,
            reason=reason,
        )
        return saved

    # ── NDA ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _require_authorized(entry: LedgerEntry, action: str) -> None:
        status = entry.authorization.status
        if status != AuthStatus.AUTHORIZED:
            raise InvalidStateError(
                f"Cannot {action}: buyer {entry.buyer_id} is {status.value}",
                current_state=status.value,
                context={"listing_id": entry.listing_id, "buyer_id": entry.buyer_id},
            )

    async def send_nda(self, listing_id: str, buyer_id: str) -> LedgerEntry:
        """Mark the NDA as SENT. No-op when already SENT.

        Raises:
            InvalidStateError: If the buyer is not AUTHORIZED or already signed.
        """

        def apply(entry: LedgerEntry) -> bool:
            self._require_authorized(entry, "send NDA")
            auth = entry.authorization
            if auth.nda_status == NDAStatus.SENT:
                return False
            validate_nda_transition(auth.nda_status, NDAStatus.SENT)
            auth.nda_status = NDAStatus.SENT
            auth.nda_sent_at = utcnow()
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, changed = await self._transition(listing_id, buyer_id, "send_nda", apply)

        if changed:
            logger.info("ledger.nda_sent", listing_id=listing_id, buyer_id=buyer_id)
        return saved

    async def confirm_nda_signed(self, listing_id: str, buyer_id: str) -> LedgerEntry:
        """Mark the NDA as SIGNED. No-op when already SIGNED.

        Raises:
            InvalidStateError: If the buyer is not AUTHORIZED or the NDA was never sent.
        """

        def apply(entry: LedgerEntry) -> bool:
            self._require_authorized(entry, "confirm NDA")
            auth = entry.authorization
            if auth.nda_status == NDAStatus.SIGNED:
                return False
            validate_nda_transition(auth.nda_status, NDAStatus.SIGNED)
            auth.nda_status = NDAStatus.SIGNED
            auth.nda_signed_at = utcnow()
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, changed = await self._transition(
                listing_id, buyer_id, "confirm_nda_signed", apply
            )

        if changed:
            logger.info("ledger.nda_signed", listing_id=listing_id, buyer_id=buyer_id)
        return saved

    async def grant_data_room_access(
        self,
        listing_id: str,
        buyer_id: str,
        access_level: AccessLevel = AccessLevel.STANDARD,
    ) -> LedgerEntry:
        """Record data-room access for an authorized buyer with a signed NDA.

        Raises:
            InvalidStateError: If the buyer is not AUTHORIZED or the NDA is unsigned.
        """

        def apply(entry: LedgerEntry) -> bool:
            self._require_authorized(entry, "grant data room access")
            auth = entry.authorization
            if auth.nda_status != NDAStatus.SIGNED:
                raise InvalidStateError(
                    f"Cannot grant data room access: NDA is {auth.nda_status.value}",
                    current_state=auth.nda_status.value,
                    context={"listing_id": listing_id, "buyer_id": buyer_id},
                )
            auth.access_level = access_level
            auth.data_room_granted_at = utcnow()
            return True

        async with self.entry_lock(listing_id, buyer_id):
            saved, _ = await self._transition(
                listing_id, buyer_id, "grant_data_room_access", apply
            )

        logger.info(
            "ledger.data_room_granted",
            listing_id=listing_id,
            buyer_id=buyer_id,
            access_level=access_level.value,
        )
        return saved

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_entry(self, listing_id: str, buyer_id: str) -> LedgerEntry:
        return await self._require_entry(listing_id, buyer_id)

    async def list_authorizations(
        self, listing_id: str, status: AuthStatus | None = None
    ) -> list[LedgerEntry]:
        await self.require_listing(listing_id)
        entries = await self._repository.list_entries(listing_id)
        if status is not None:
            entries = [e for e in entries if e.authorization.status == status]
        return entries

    async def review_queue(
        self,
        listing_id: str,
        pending_only: bool = True,
        status: AuthStatus | None = None,
    ) -> list[LedgerEntry]:
        """Interested buyers awaiting (or having received) a broker decision.

        An explicit ``status`` overrides ``pending_only``.
        """
        await self.require_listing(listing_id)
        entries = [
            e
            for e in await self._repository.list_entries(listing_id)
            if e.response.response in INTERESTED_RESPONSES
        ]
        if status is not None:
            entries = [e for e in entries if e.authorization.status == status]
        elif pending_only:
            entries = [e for e in entries if e.authorization.status == AuthStatus.PENDING]
        return sorted(entries, key=_responded_sort_key, reverse=True)

    async def list_responses(self, listing_id: str) -> list[LedgerEntry]:
        """Buyers who have responded, most recent first."""
        await self.require_listing(listing_id)
        entries = [
            e
            for e in await self._repository.list_entries(listing_id)
            if e.response.response != ResponseType.NOT_RESPONDED
        ]
        return sorted(entries, key=_responded_sort_key, reverse=True)


def _responded_sort_key(entry: LedgerEntry):
    responded_at = entry.response.responded_at
    return (responded_at is not None, responded_at or entry.created_at)
