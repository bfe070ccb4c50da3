"""Distribution registry -- who a listing is sent to.

Owns listings, buyer accounts, distributions and their recipients. Creating a
recipient is the only path that seeds a buyer's ledger entry, so a buyer can
respond or be authorized only after the listing was distributed to them.
"""

from __future__ import annotations

import re

import structlog

from src.dealflow.errors import NotFoundError, ValidationError
from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.repository import GateRepository
from src.dealflow.gate.schemas import (
    AddedRecipient,
    AddRecipientsByIdResult,
    AddRecipientsResult,
    BuyerAccount,
    BuyerAccountStatus,
    Distribution,
    Listing,
    ListingType,
    Recipient,
    RecipientError,
    RecipientIdError,
    RecipientSource,
    utcnow,
)

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

INVALID_EMAIL_REASON = "Invalid email format"
ALREADY_RECIPIENT_REASON = "Already a recipient"
UNKNOWN_BUYER_REASON = "Unknown buyer"


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


class DistributionRegistry:
    """Listing, buyer and distribution bookkeeping.

    Args:
        repository: Storage backend implementing GateRepository.
        ledger: Ledger whose entries are seeded for each new recipient.
    """

    def __init__(self, repository: GateRepository, ledger: ResponseLedger) -> None:
        self._repository = repository
        self._ledger = ledger
        self._locks = ledger.locks

    # ── Listings ────────────────────────────────────────────────────────────

    async def register_listing(
        self, listing_id: str, listing_type: ListingType = ListingType.PRIVATE
    ) -> Listing:
        """Mark a draft as available for distribution.

        Re-registering an existing id returns the stored listing unchanged.

        Raises:
            ValidationError: If listing_id is blank.
        """
        if not listing_id or not listing_id.strip():
            raise ValidationError("listing_id is required")

        async with self._locks.hold(("listing", listing_id)):
            existing = await self._repository.get_listing(listing_id)
            if existing is not None:
                return existing
            listing = await self._repository.save_listing(
                Listing(id=listing_id, listing_type=listing_type)
            )

        logger.info(
            "registry.listing_registered",
            listing_id=listing_id,
            listing_type=listing_type.value,
        )
        return listing

    async def get_listing(self, listing_id: str) -> Listing:
        return await self._ledger.require_listing(listing_id)

    # ── Buyers ──────────────────────────────────────────────────────────────

    async def register_buyer(self, email: str, name: str | None = None) -> BuyerAccount:
        """Create an active buyer account, or return the one holding this email.

        Raises:
            ValidationError: If the email is malformed.
        """
        normalized = (email or "").strip().lower()
        if not is_valid_email(normalized):
            raise ValidationError(INVALID_EMAIL_REASON, context={"email": email})

        async with self._locks.hold(("buyer_email", normalized)):
            existing = await self._repository.find_buyer_by_email(normalized)
            if existing is not None:
                return existing
            buyer = await self._repository.create_buyer(
                normalized, name, BuyerAccountStatus.ACTIVE
            )

        logger.info("registry.buyer_registered", buyer_id=buyer.id)
        return buyer

    async def _resolve_or_invite(self, email: str) -> tuple[BuyerAccount, bool]:
        """Find the account for ``email`` or create a pending invitation.

        Returns:
            (account, invited) where invited is True for a new invitation.
        """
        async with self._locks.hold(("buyer_email", email)):
            existing = await self._repository.find_buyer_by_email(email)
            if existing is not None:
                return existing, False
            buyer = await self._repository.create_buyer(
                email, email.split("@")[0], BuyerAccountStatus.PENDING
            )
            return buyer, True

    # ── Distributions ───────────────────────────────────────────────────────

    async def create_distribution(
        self,
        listing_id: str,
        listing_type: ListingType,
        recipient_ids: list[str],
    ) -> Distribution:
        """Distribute a listing to a set of existing buyer accounts.

        Duplicate ids are collapsed. Every id is resolved before anything is
        written, so an unknown id leaves no partial distribution behind.

        Raises:
            ValidationError: If recipient_ids is empty.
            NotFoundError: If the listing or any recipient id is unknown.
        """
        if not recipient_ids:
            raise ValidationError("recipient_ids must not be empty")

        await self._ledger.require_listing(listing_id)

        unique_ids = list(dict.fromkeys(recipient_ids))
        missing = [
            buyer_id
            for buyer_id in unique_ids
            if await self._repository.get_buyer(buyer_id) is None
        ]
        if missing:
            raise NotFoundError(
                f"Unknown recipient ids: {', '.join(missing)}",
                context={"listing_id": listing_id, "missing": missing},
            )

        distribution = await self._repository.create_distribution(
            listing_id, listing_type, unique_ids
        )

        logger.info(
            "registry.distribution_created",
            listing_id=listing_id,
            distribution_id=distribution.id,
            recipient_count=len(unique_ids),
        )
        return distribution

    async def get_distribution(self, distribution_id: str) -> Distribution:
        distribution = await self._repository.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(
                f"Distribution not found: {distribution_id}",
                context={"distribution_id": distribution_id},
            )
        return distribution

    async def list_distributions(self, listing_id: str) -> list[Distribution]:
        await self._ledger.require_listing(listing_id)
        return await self._repository.list_distributions(listing_id)

    async def add_recipients(
        self, distribution_id: str, buyer_ids: list[str]
    ) -> AddRecipientsByIdResult:
        """Append existing buyer accounts to a distribution, best effort.

        Unknown ids and buyers already in the distribution are reported in
        ``errors`` and change nothing; the rest are added with their ledger
        entries seeded.

        Raises:
            NotFoundError: If the distribution does not exist.
        """
        result = AddRecipientsByIdResult()

        async with self._locks.hold(("distribution", distribution_id)):
            distribution = await self.get_distribution(distribution_id)
            present = {r.buyer_id for r in distribution.recipients}

            for buyer_id in buyer_ids:
                buyer = await self._repository.get_buyer(buyer_id)
                if buyer is None:
                    result.errors.append(
                        RecipientIdError(buyer_id=buyer_id, reason=UNKNOWN_BUYER_REASON)
                    )
                    continue
                if buyer.id in present:
                    result.errors.append(
                        RecipientIdError(buyer_id=buyer_id, reason=ALREADY_RECIPIENT_REASON)
                    )
                    continue

                recipient = await self._repository.add_recipient(
                    distribution, buyer.id, RecipientSource.MANUAL
                )
                present.add(buyer.id)
                result.added.append(
                    AddedRecipient(recipient_id=recipient.id, buyer_id=buyer.id, email=buyer.email)
                )

        logger.info(
            "registry.recipients_added",
            distribution_id=distribution_id,
            added=len(result.added),
            errors=len(result.errors),
        )
        return result

    async def add_recipients_by_email(
        self, distribution_id: str, emails: list[str]
    ) -> AddRecipientsResult:
        """Add buyers to a distribution by email, best effort.

        Each email resolves to an existing account or a new pending invitation.
        Malformed addresses and buyers already in the distribution are reported
        in ``errors``; they never abort the batch.

        Raises:
            NotFoundError: If the distribution does not exist.
        """
        result = AddRecipientsResult()

        async with self._locks.hold(("distribution", distribution_id)):
            distribution = await self.get_distribution(distribution_id)
            present = {r.buyer_id for r in distribution.recipients}

            for raw in emails:
                email = (raw or "").strip().lower()
                if not is_valid_email(email):
                    result.errors.append(RecipientError(email=raw, reason=INVALID_EMAIL_REASON))
                    continue

                buyer, invited = await self._resolve_or_invite(email)
                if buyer.id in present:
                    result.errors.append(
                        RecipientError(email=email, reason=ALREADY_RECIPIENT_REASON)
                    )
                    continue

                recipient = await self._repository.add_recipient(
                    distribution, buyer.id, RecipientSource.MANUAL_EMAIL
                )
                present.add(buyer.id)
                result.added.append(
                    AddedRecipient(
                        recipient_id=recipient.id,
                        buyer_id=buyer.id,
                        email=email,
                        invited=invited,
                    )
                )

        logger.info(
            "registry.recipients_added_by_email",
            distribution_id=distribution_id,
            added=len(result.added),
            errors=len(result.errors),
        )
        return result

    # ── View Tracking ───────────────────────────────────────────────────────

    async def record_view(
        self,
        recipient_id: str,
        duration_sec: int | None = None,
        pages_viewed: list[int] | None = None,
    ) -> Recipient:
        """Record that a recipient opened the offering.

        Sets viewed_at on the first view, increments view_count, accumulates
        the viewing time and merges the pages seen.

        Raises:
            ValidationError: If duration_sec is negative.
            NotFoundError: If the recipient does not exist.
        """
        if duration_sec is not None and duration_sec < 0:
            raise ValidationError("duration_sec must not be negative")

        async with self._locks.hold(("recipient", recipient_id)):
            recipient = await self._repository.get_recipient(recipient_id)
            if recipient is None:
                raise NotFoundError(
                    f"Recipient not found: {recipient_id}",
                    context={"recipient_id": recipient_id},
                )
            if recipient.viewed_at is None:
                recipient.viewed_at = utcnow()
            recipient.view_count += 1
            recipient.view_duration_sec += duration_sec or 0
            for page in pages_viewed or []:
                if page not in recipient.pages_viewed:
                    recipient.pages_viewed.append(page)
            saved = await self._repository.save_recipient(recipient)

        logger.debug(
            "registry.view_recorded",
            recipient_id=recipient_id,
            view_count=saved.view_count,
        )
        return saved
