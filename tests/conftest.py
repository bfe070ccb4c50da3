"""Shared fixtures for gating tests.

Provides:
- InMemoryGateRepository: GateRepository test double (copies on read and
  write, and yields to the event loop on every call so concurrent tests
  actually interleave)
- Service fixtures wired exactly as the application lifespan wires them
- A seeded listing "L1" distributed to buyers A and B
- An ASGI test client over the v1 routers
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.dealflow.config import Settings
from src.dealflow.gate.schemas import (
    BuyerAccount,
    BuyerAccountStatus,
    Distribution,
    LedgerEntry,
    Listing,
    ListingType,
    Recipient,
    RecipientSource,
)
from src.dealflow.main import attach_services


class InMemoryGateRepository:
    """Dict-backed GateRepository."""

    def __init__(self) -> None:
        self.listings: dict[str, Listing] = {}
        self.buyers: dict[str, BuyerAccount] = {}
        self.distributions: dict[str, Distribution] = {}
        self.recipients: dict[str, Recipient] = {}
        self.entries: dict[tuple[str, str], LedgerEntry] = {}

    @staticmethod
    async def _yield() -> None:
        await asyncio.sleep(0)

    async def get_listing(self, listing_id: str) -> Listing | None:
        await self._yield()
        listing = self.listings.get(listing_id)
        return listing.model_copy(deep=True) if listing else None

    async def save_listing(self, listing: Listing) -> Listing:
        await self._yield()
        self.listings[listing.id] = listing.model_copy(deep=True)
        return listing.model_copy(deep=True)

    async def get_buyer(self, buyer_id: str) -> BuyerAccount | None:
        await self._yield()
        buyer = self.buyers.get(buyer_id)
        return buyer.model_copy() if buyer else None

    async def find_buyer_by_email(self, email: str) -> BuyerAccount | None:
        await self._yield()
        for buyer in self.buyers.values():
            if buyer.email == email.lower():
                return buyer.model_copy()
        return None

    async def create_buyer(
        self, email: str, name: str | None, status: BuyerAccountStatus
    ) -> BuyerAccount:
        await self._yield()
        buyer = BuyerAccount(
            id=f"buyer-{uuid.uuid4().hex[:8]}", email=email.lower(), name=name, status=status
        )
        self.buyers[buyer.id] = buyer
        return buyer.model_copy()

    def add_buyer(self, buyer_id: str, email: str | None = None) -> BuyerAccount:
        """Synchronous helper for seeding a buyer with a fixed id."""
        buyer = BuyerAccount(id=buyer_id, email=email or f"{buyer_id.lower()}@example.com")
        self.buyers[buyer_id] = buyer
        return buyer

    def _seed_entry(self, listing_id: str, buyer_id: str) -> None:
        key = (listing_id, buyer_id)
        if key not in self.entries:
            self.entries[key] = LedgerEntry(listing_id=listing_id, buyer_id=buyer_id)

    def _insert_recipient(
        self, distribution: Distribution, buyer_id: str, source: RecipientSource
    ) -> Recipient:
        recipient = Recipient(
            id=f"rcp-{uuid.uuid4().hex[:8]}",
            distribution_id=distribution.id,
            buyer_id=buyer_id,
            source=source,
        )
        self.recipients[recipient.id] = recipient
        self._seed_entry(distribution.listing_id, buyer_id)
        return recipient

    async def create_distribution(
        self, listing_id: str, listing_type: ListingType, buyer_ids: list[str]
    ) -> Distribution:
        await self._yield()
        distribution = Distribution(
            id=f"dist-{uuid.uuid4().hex[:8]}", listing_id=listing_id, listing_type=listing_type
        )
        self.distributions[distribution.id] = distribution
        for buyer_id in buyer_ids:
            self._insert_recipient(distribution, buyer_id, RecipientSource.MANUAL)
        return self._with_recipients(distribution)

    def _with_recipients(self, distribution: Distribution) -> Distribution:
        copy = distribution.model_copy(deep=True)
        copy.recipients = [
            r.model_copy(deep=True)
            for r in self.recipients.values()
            if r.distribution_id == distribution.id
        ]
        return copy

    async def get_distribution(self, distribution_id: str) -> Distribution | None:
        await self._yield()
        distribution = self.distributions.get(distribution_id)
        return self._with_recipients(distribution) if distribution else None

    async def list_distributions(self, listing_id: str) -> list[Distribution]:
        await self._yield()
        return [
            self._with_recipients(d)
            for d in self.distributions.values()
            if d.listing_id == listing_id
        ]

    async def add_recipient(
        self, distribution: Distribution, buyer_id: str, source: RecipientSource
    ) -> Recipient:
        await self._yield()
        return self._insert_recipient(distribution, buyer_id, source).model_copy(deep=True)

    async def get_recipient(self, recipient_id: str) -> Recipient | None:
        await self._yield()
        recipient = self.recipients.get(recipient_id)
        return recipient.model_copy(deep=True) if recipient else None

    async def save_recipient(self, recipient: Recipient) -> Recipient:
        await self._yield()
        self.recipients[recipient.id] = recipient.model_copy(deep=True)
        return recipient.model_copy(deep=True)

    async def list_recipients(self, listing_id: str) -> list[Recipient]:
        await self._yield()
        return [
            r.model_copy(deep=True)
            for r in self.recipients.values()
            if self.distributions[r.distribution_id].listing_id == listing_id
        ]

    async def get_entry(self, listing_id: str, buyer_id: str) -> LedgerEntry | None:
        await self._yield()
        entry = self.entries.get((listing_id, buyer_id))
        return entry.model_copy(deep=True) if entry else None

    async def update_entry(self, listing_id: str, buyer_id: str, mutate) -> LedgerEntry | None:
        await self._yield()
        stored = self.entries.get((listing_id, buyer_id))
        if stored is None:
            return None
        entry = stored.model_copy(deep=True)
        # An exception from mutate leaves the stored entry untouched.
        if await mutate(entry):
            self.entries[(listing_id, buyer_id)] = entry.model_copy(deep=True)
        return entry.model_copy(deep=True)

    async def list_entries(self, listing_id: str) -> list[LedgerEntry]:
        await self._yield()
        return [
            e.model_copy(deep=True)
            for (lid, _), e in self.entries.items()
            if lid == listing_id
        ]


class Services:
    """Attribute bag mirroring app.state after attach_services()."""


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BULK_MAX_CONCURRENCY=4,
        BULK_DEFAULT_DECLINE_REASON="Not a fit",
        DEAL_SERVICE_URL="",
    )


@pytest.fixture
def repo() -> InMemoryGateRepository:
    return InMemoryGateRepository()


@pytest.fixture
def deal_client() -> AsyncMock:
    """Deal-creation collaborator double returning a fixed deal id."""
    client = AsyncMock()
    client.create_deal.return_value = "deal-123"
    return client


@pytest.fixture
def services(repo, deal_client, settings) -> Services:
    state = Services()
    attach_services(state, repo, deal_client, settings)
    return state


@pytest_asyncio.fixture
async def listing_l1(repo, services) -> Listing:
    """Listing L1 distributed to buyers A and B."""
    repo.add_buyer("A")
    repo.add_buyer("B")
    listing = await services.registry.register_listing("L1", ListingType.PRIVATE)
    await services.registry.create_distribution("L1", ListingType.PRIVATE, ["A", "B"])
    return listing


@pytest_asyncio.fixture
async def api_client(repo, deal_client, settings):
    """ASGI client over the v1 routers with in-memory services on app.state."""
    from src.dealflow.api.v1.router import router

    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    attach_services(app.state, repo, deal_client, settings)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
