"""Gating repository -- async persistence for listings, distributions and the ledger.

Defines the GateRepository protocol that the registry, ledger, funnel and
progression services depend on, and SqlGateRepository, the PostgreSQL
implementation using the session_factory callable pattern.

Services own all state-machine rules; the repository only loads and stores
rows and converts between SQLAlchemy models and Pydantic schemas.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.gate.models import (
    BuyerAccountModel,
    BuyerAuthorizationModel,
    BuyerResponseModel,
    DistributionModel,
    ListingModel,
    RecipientModel,
)
from src.dealflow.gate.schemas import (
    AccessLevel,
    Authorization,
    AuthStatus,
    BuyerAccount,
    BuyerAccountStatus,
    DealPhase,
    Distribution,
    LedgerEntry,
    Listing,
    ListingType,
    NDAStatus,
    Recipient,
    RecipientSource,
    ResponseRecord,
    ResponseType,
)

logger = structlog.get_logger(__name__)


def new_id(prefix: str) -> str:
    """Mint an opaque identifier such as ``dist-3f2a...``."""
    return f"{prefix}-{uuid.uuid4().hex}"


# ── Repository Contract ─────────────────────────────────────────────────────


class GateRepository(Protocol):
    """Storage operations required by the gating services.

    Recipient inserts (create_distribution, add_recipient) seed the buyer's
    ledger entry in the same commit when none exists yet, so a recipient never
    exists without its entry. update_entry applies a mutation to an entry
    inside one transaction that holds the entry exclusively.
    """

    async def get_listing(self, listing_id: str) -> Listing | None: ...

    async def save_listing(self, listing: Listing) -> Listing: ...

    async def get_buyer(self, buyer_id: str) -> BuyerAccount | None: ...

    async def find_buyer_by_email(self, email: str) -> BuyerAccount | None: ...

    async def create_buyer(
        self, email: str, name: str | None, status: BuyerAccountStatus
    ) -> BuyerAccount: ...

    async def create_distribution(
        self, listing_id: str, listing_type: ListingType, buyer_ids: list[str]
    ) -> Distribution: ...

    async def get_distribution(self, distribution_id: str) -> Distribution | None: ...

    async def list_distributions(self, listing_id: str) -> list[Distribution]: ...

    async def add_recipient(
        self, distribution: Distribution, buyer_id: str, source: RecipientSource
    ) -> Recipient: ...

    async def get_recipient(self, recipient_id: str) -> Recipient | None: ...

    async def save_recipient(self, recipient: Recipient) -> Recipient: ...

    async def list_recipients(self, listing_id: str) -> list[Recipient]: ...

    async def get_entry(self, listing_id: str, buyer_id: str) -> LedgerEntry | None: ...

    async def update_entry(
        self,
        listing_id: str,
        buyer_id: str,
        mutate: Callable[[LedgerEntry], Awaitable[bool]],
    ) -> LedgerEntry | None: ...

    async def list_entries(self, listing_id: str) -> list[LedgerEntry]: ...


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_listing(model: ListingModel) -> Listing:
    """Convert ListingModel to Listing schema."""
    return Listing(
        id=model.id,
        listing_type=ListingType(model.listing_type),
        phase=DealPhase(model.phase),
        external_deal_id=model.external_deal_id,
        winning_buyer_id=model.winning_buyer_id,
        conversion_notes=model.conversion_notes,
        converted_at=model.converted_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_buyer(model: BuyerAccountModel) -> BuyerAccount:
    """Convert BuyerAccountModel to BuyerAccount schema."""
    return BuyerAccount(
        id=model.id,
        email=model.email,
        name=model.name,
        status=BuyerAccountStatus(model.status),
        created_at=model.created_at,
    )


def _model_to_recipient(model: RecipientModel) -> Recipient:
    """Convert RecipientModel to Recipient schema."""
    return Recipient(
        id=model.id,
        distribution_id=model.distribution_id,
        buyer_id=model.buyer_id,
        source=RecipientSource(model.source),
        sent_at=model.sent_at,
        viewed_at=model.viewed_at,
        view_count=model.view_count or 0,
        view_duration_sec=model.view_duration_sec or 0,
        pages_viewed=list(model.pages_viewed or []),
    )


def _models_to_entry(
    response: BuyerResponseModel, authorization: BuyerAuthorizationModel
) -> LedgerEntry:
    """Combine response and authorization rows into one LedgerEntry."""
    return LedgerEntry(
        listing_id=authorization.listing_id,
        buyer_id=authorization.buyer_id,
        response=ResponseRecord(
            response=ResponseType(response.response),
            message=response.message,
            responded_at=response.responded_at,
        ),
        authorization=Authorization(
            status=AuthStatus(authorization.status),
            decline_reason=authorization.decline_reason,
            nda_status=NDAStatus(authorization.nda_status),
            access_level=(
                AccessLevel(authorization.access_level)
                if authorization.access_level
                else None
            ),
            authorized_at=authorization.authorized_at,
            declined_at=authorization.declined_at,
            nda_sent_at=authorization.nda_sent_at,
            nda_signed_at=authorization.nda_signed_at,
            data_room_granted_at=authorization.data_room_granted_at,
        ),
        created_at=authorization.created_at,
        updated_at=authorization.updated_at,
    )


def _apply_entry(
    entry: LedgerEntry,
    response: BuyerResponseModel,
    authorization: BuyerAuthorizationModel,
) -> None:
    """Copy LedgerEntry fields onto existing rows."""
    response.response = entry.response.response.value
    response.message = entry.response.message
    response.responded_at = entry.response.responded_at

    auth = entry.authorization
    authorization.status = auth.status.value
    authorization.decline_reason = auth.decline_reason
    authorization.nda_status = auth.nda_status.value
    authorization.access_level = auth.access_level.value if auth.access_level else None
    authorization.authorized_at = auth.authorized_at
    authorization.declined_at = auth.declined_at
    authorization.nda_sent_at = auth.nda_sent_at
    authorization.nda_signed_at = auth.nda_signed_at
    authorization.data_room_granted_at = auth.data_room_granted_at


# ── Repository ──────────────────────────────────────────────────────────────


class SqlGateRepository:
    """PostgreSQL-backed GateRepository.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Listings ────────────────────────────────────────────────────────────

    async def get_listing(self, listing_id: str) -> Listing | None:
        async for session in self._session_factory():
            model = await session.get(ListingModel, listing_id)
            if model is None:
                return None
            return _model_to_listing(model)

    async def save_listing(self, listing: Listing) -> Listing:
        """Insert or update a listing row."""
        async for session in self._session_factory():
            model = await session.get(ListingModel, listing.id)
            if model is None:
                model = ListingModel(id=listing.id, created_at=listing.created_at)
                session.add(model)
            model.listing_type = listing.listing_type.value
            model.phase = listing.phase.value
            model.external_deal_id = listing.external_deal_id
            model.winning_buyer_id = listing.winning_buyer_id
            model.conversion_notes = listing.conversion_notes
            model.converted_at = listing.converted_at
            await session.commit()
            await session.refresh(model)
            return _model_to_listing(model)

    # ── Buyers ──────────────────────────────────────────────────────────────

    async def get_buyer(self, buyer_id: str) -> BuyerAccount | None:
        async for session in self._session_factory():
            model = await session.get(BuyerAccountModel, buyer_id)
            if model is None:
                return None
            return _model_to_buyer(model)

    async def find_buyer_by_email(self, email: str) -> BuyerAccount | None:
        async for session in self._session_factory():
            stmt = select(BuyerAccountModel).where(
                BuyerAccountModel.email == email.lower()
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_buyer(model)

    async def create_buyer(
        self, email: str, name: str | None, status: BuyerAccountStatus
    ) -> BuyerAccount:
        async for session in self._session_factory():
            model = BuyerAccountModel(
                id=new_id("buyer"),
                email=email.lower(),
                name=name,
                status=status.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("gate_repo.buyer_created", buyer_id=model.id, status=model.status)
            return _model_to_buyer(model)

    # ── Distributions ───────────────────────────────────────────────────────

    async def create_distribution(
        self, listing_id: str, listing_type: ListingType, buyer_ids: list[str]
    ) -> Distribution:
        """Insert a distribution, its recipients and their ledger seeds in one commit."""
        async for session in self._session_factory():
            model = DistributionModel(
                id=new_id("dist"),
                listing_id=listing_id,
                listing_type=listing_type.value,
            )
            session.add(model)
            recipients = []
            for buyer_id in buyer_ids:
                recipient = RecipientModel(
                    id=new_id("rcp"),
                    distribution_id=model.id,
                    listing_id=listing_id,
                    buyer_id=buyer_id,
                    source=RecipientSource.MANUAL.value,
                )
                session.add(recipient)
                recipients.append(recipient)
                await self._seed_entry_rows(session, listing_id, buyer_id)
            await session.commit()
            await session.refresh(model)
            for recipient in recipients:
                await session.refresh(recipient)
            return Distribution(
                id=model.id,
                listing_id=model.listing_id,
                listing_type=ListingType(model.listing_type),
                recipients=[_model_to_recipient(r) for r in recipients],
                created_at=model.created_at,
            )

    async def get_distribution(self, distribution_id: str) -> Distribution | None:
        async for session in self._session_factory():
            model = await session.get(DistributionModel, distribution_id)
            if model is None:
                return None
            stmt = select(RecipientModel).where(
                RecipientModel.distribution_id == distribution_id
            )
            result = await session.execute(stmt)
            return Distribution(
                id=model.id,
                listing_id=model.listing_id,
                listing_type=ListingType(model.listing_type),
                recipients=[_model_to_recipient(r) for r in result.scalars().all()],
                created_at=model.created_at,
            )

    async def list_distributions(self, listing_id: str) -> list[Distribution]:
        async for session in self._session_factory():
            dist_result = await session.execute(
                select(DistributionModel).where(DistributionModel.listing_id == listing_id)
            )
            rcp_result = await session.execute(
                select(RecipientModel).where(RecipientModel.listing_id == listing_id)
            )
            by_distribution: dict[str, list[Recipient]] = {}
            for r in rcp_result.scalars().all():
                by_distribution.setdefault(r.distribution_id, []).append(
                    _model_to_recipient(r)
                )
            return [
                Distribution(
                    id=d.id,
                    listing_id=d.listing_id,
                    listing_type=ListingType(d.listing_type),
                    recipients=by_distribution.get(d.id, []),
                    created_at=d.created_at,
                )
                for d in dist_result.scalars().all()
            ]

    # ── Recipients ──────────────────────────────────────────────────────────

    async def add_recipient(
        self, distribution: Distribution, buyer_id: str, source: RecipientSource
    ) -> Recipient:
        """Insert one recipient and seed its ledger entry in the same commit."""
        async for session in self._session_factory():
            model = RecipientModel(
                id=new_id("rcp"),
                distribution_id=distribution.id,
                listing_id=distribution.listing_id,
                buyer_id=buyer_id,
                source=source.value,
            )
            session.add(model)
            await self._seed_entry_rows(session, distribution.listing_id, buyer_id)
            await session.commit()
            await session.refresh(model)
            return _model_to_recipient(model)

    async def get_recipient(self, recipient_id: str) -> Recipient | None:
        async for session in self._session_factory():
            model = await session.get(RecipientModel, recipient_id)
            if model is None:
                return None
            return _model_to_recipient(model)

    async def save_recipient(self, recipient: Recipient) -> Recipient:
        async for session in self._session_factory():
            model = await session.get(RecipientModel, recipient.id)
            if model is None:
                raise ValueError(f"Recipient not found: {recipient.id}")
            model.viewed_at = recipient.viewed_at
            model.view_count = recipient.view_count
            model.view_duration_sec = recipient.view_duration_sec
            model.pages_viewed = list(recipient.pages_viewed)
            await session.commit()
            await session.refresh(model)
            return _model_to_recipient(model)

    async def list_recipients(self, listing_id: str) -> list[Recipient]:
        async for session in self._session_factory():
            stmt = select(RecipientModel).where(RecipientModel.listing_id == listing_id)
            result = await session.execute(stmt)
            return [_model_to_recipient(r) for r in result.scalars().all()]

    # ── Ledger ──────────────────────────────────────────────────────────────

    async def _load_rows(
        self,
        session: AsyncSession,
        listing_id: str,
        buyer_id: str,
        for_update: bool = False,
    ) -> tuple[BuyerResponseModel | None, BuyerAuthorizationModel | None]:
        # Response row first, then authorization: every locking caller takes
        # the two row locks in the same order.
        response_stmt = select(BuyerResponseModel).where(
            BuyerResponseModel.listing_id == listing_id,
            BuyerResponseModel.buyer_id == buyer_id,
        )
        authorization_stmt = select(BuyerAuthorizationModel).where(
            BuyerAuthorizationModel.listing_id == listing_id,
            BuyerAuthorizationModel.buyer_id == buyer_id,
        )
        if for_update:
            response_stmt = response_stmt.with_for_update()
            authorization_stmt = authorization_stmt.with_for_update()
        response = (await session.execute(response_stmt)).scalar_one_or_none()
        authorization = (await session.execute(authorization_stmt)).scalar_one_or_none()
        return response, authorization

    async def _seed_entry_rows(
        self, session: AsyncSession, listing_id: str, buyer_id: str
    ) -> None:
        """Add NOT_RESPONDED / PENDING rows to ``session`` unless they exist."""
        response, authorization = await self._load_rows(session, listing_id, buyer_id)
        if response is None:
            session.add(
                BuyerResponseModel(
                    listing_id=listing_id,
                    buyer_id=buyer_id,
                    response=ResponseType.NOT_RESPONDED.value,
                )
            )
        if authorization is None:
            session.add(
                BuyerAuthorizationModel(
                    listing_id=listing_id,
                    buyer_id=buyer_id,
                    status=AuthStatus.PENDING.value,
                    nda_status=NDAStatus.NOT_SENT.value,
                )
            )
            logger.debug("gate_repo.entry_seeded", listing_id=listing_id, buyer_id=buyer_id)

    async def get_entry(self, listing_id: str, buyer_id: str) -> LedgerEntry | None:
        async for session in self._session_factory():
            response, authorization = await self._load_rows(session, listing_id, buyer_id)
            if response is None or authorization is None:
                return None
            return _models_to_entry(response, authorization)

    async def update_entry(
        self,
        listing_id: str,
        buyer_id: str,
        mutate: Callable[[LedgerEntry], Awaitable[bool]],
    ) -> LedgerEntry | None:
        """Apply ``mutate`` to an entry while holding its rows FOR UPDATE.

        The rows stay locked until the transaction ends, so a concurrent
        worker mutating the same (listing, buyer) waits and then reads the
        committed result. ``mutate`` returns True when the entry changed and
        must be written; an exception from it rolls the transaction back.

        Returns:
            The stored entry after the call, or None if no entry exists.
        """
        async for session in self._session_factory():
            response, authorization = await self._load_rows(
                session, listing_id, buyer_id, for_update=True
            )
            if response is None or authorization is None:
                await session.rollback()
                return None

            entry = _models_to_entry(response, authorization)
            try:
                changed = await mutate(entry)
            except Exception:
                await session.rollback()
                raise
            if not changed:
                await session.rollback()
                return entry

            _apply_entry(entry, response, authorization)
            await session.commit()
            await session.refresh(response)
            await session.refresh(authorization)
            return _models_to_entry(response, authorization)

    async def list_entries(self, listing_id: str) -> list[LedgerEntry]:
        async for session in self._session_factory():
            responses = (
                await session.execute(
                    select(BuyerResponseModel).where(
                        BuyerResponseModel.listing_id == listing_id
                    )
                )
            ).scalars().all()
            authorizations = (
                await session.execute(
                    select(BuyerAuthorizationModel).where(
                        BuyerAuthorizationModel.listing_id == listing_id
                    )
                )
            ).scalars().all()
            responses_by_buyer = {r.buyer_id: r for r in responses}
            return [
                _models_to_entry(responses_by_buyer[a.buyer_id], a)
                for a in authorizations
                if a.buyer_id in responses_by_buyer
            ]
