"""Tests for DealProgressionController.

Tests cover:
- advance_to_active_dd: authorized-buyer gate, idempotence, no reverse moves
- convert_to_deal: end-to-end scenario, unmet-condition reporting, NDA gating,
  exactly-once collaborator call, conversion record
- Lock-protected re-check against a concurrent revoke
"""

from __future__ import annotations

import asyncio

import pytest

from src.dealflow.errors import DealCreationError, NotFoundError, PreconditionError
from src.dealflow.gate.progression import (
    UNMET_NDA_NOT_SIGNED,
    UNMET_NO_AUTHORIZED_BUYER,
    UNMET_NOT_ACTIVE_DD,
    UNMET_NOT_AUTHORIZED,
)
from src.dealflow.gate.schemas import DealPhase, ResponseType


async def _sign(services, listing_id: str, buyer_id: str) -> None:
    await services.ledger.authorize(listing_id, buyer_id)
    await services.ledger.send_nda(listing_id, buyer_id)
    await services.ledger.confirm_nda_signed(listing_id, buyer_id)


# ── advance_to_active_dd ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_advance_requires_authorized_buyer(services, listing_l1):
    await services.ledger.record_response("L1", "A", ResponseType.INTERESTED)

    with pytest.raises(PreconditionError) as exc_info:
        await services.progression.advance_to_active_dd("L1")

    assert exc_info.value.unmet == [UNMET_NO_AUTHORIZED_BUYER]
    listing = await services.registry.get_listing("L1")
    assert listing.phase == DealPhase.DISTRIBUTED


@pytest.mark.asyncio
async def test_advance_with_authorized_buyer(services, listing_l1):
    await services.ledger.authorize("L1", "B")

    listing = await services.progression.advance_to_active_dd("L1")
    again = await services.progression.advance_to_active_dd("L1")

    assert listing.phase == DealPhase.ACTIVE_DD
    assert again.phase == DealPhase.ACTIVE_DD


@pytest.mark.asyncio
async def test_advance_unknown_listing(services):
    with pytest.raises(NotFoundError):
        await services.progression.advance_to_active_dd("L404")


# ── convert_to_deal ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_full_scenario(services, listing_l1, deal_client):
    await _sign(services, "L1", "A")
    await services.progression.advance_to_active_dd("L1")

    deal_id = await services.progression.convert_to_deal("L1", "A", "closed")

    assert deal_id == "deal-123"
    deal_client.create_deal.assert_awaited_once()
    listing_arg, buyer_arg, notes_arg = deal_client.create_deal.await_args.args
    assert listing_arg.id == "L1"
    assert buyer_arg == "A"
    assert notes_arg == "closed"

    listing = await services.registry.get_listing("L1")
    assert listing.phase == DealPhase.CONVERTED
    assert listing.external_deal_id == "deal-123"
    assert listing.winning_buyer_id == "A"
    assert listing.conversion_notes == "closed"
    assert listing.converted_at is not None

    with pytest.raises(PreconditionError) as exc_info:
        await services.progression.convert_to_deal("L1", "B", "second")
    assert UNMET_NOT_ACTIVE_DD in exc_info.value.unmet
    deal_client.create_deal.assert_awaited_once()


@pytest.mark.asyncio
async def test_convert_reports_every_unmet_condition(services, listing_l1, deal_client):
    with pytest.raises(PreconditionError) as exc_info:
        await services.progression.convert_to_deal("L1", "B")

    assert exc_info.value.unmet == [
        UNMET_NOT_ACTIVE_DD,
        UNMET_NOT_AUTHORIZED,
        UNMET_NDA_NOT_SIGNED,
    ]
    deal_client.create_deal.assert_not_awaited()


@pytest.mark.asyncio
async def test_convert_authorized_without_signed_nda_fails(services, listing_l1, deal_client):
    await services.ledger.authorize("L1", "A")
    await services.ledger.send_nda("L1", "A")
    await services.progression.advance_to_active_dd("L1")

    with pytest.raises(PreconditionError) as exc_info:
        await services.progression.convert_to_deal("L1", "A")

    assert exc_info.value.unmet == [UNMET_NDA_NOT_SIGNED]
    deal_client.create_deal.assert_not_awaited()


@pytest.mark.asyncio
async def test_convert_unknown_buyer(services, listing_l1):
    await _sign(services, "L1", "A")
    await services.progression.advance_to_active_dd("L1")

    with pytest.raises(NotFoundError):
        await services.progression.convert_to_deal("L1", "stranger")


@pytest.mark.asyncio
async def test_convert_collaborator_failure_leaves_listing(services, listing_l1, deal_client):
    deal_client.create_deal.side_effect = DealCreationError("service down")
    await _sign(services, "L1", "A")
    await services.progression.advance_to_active_dd("L1")

    with pytest.raises(DealCreationError):
        await services.progression.convert_to_deal("L1", "A")

    listing = await services.registry.get_listing("L1")
    assert listing.phase == DealPhase.ACTIVE_DD
    assert listing.external_deal_id is None


@pytest.mark.asyncio
async def test_concurrent_conversions_call_collaborator_once(services, listing_l1, deal_client):
    await _sign(services, "L1", "A")
    await _sign(services, "L1", "B")
    await services.progression.advance_to_active_dd("L1")

    results = await asyncio.gather(
        services.progression.convert_to_deal("L1", "A"),
        services.progression.convert_to_deal("L1", "B"),
        return_exceptions=True,
    )

    deal_ids = [r for r in results if isinstance(r, str)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert deal_ids == ["deal-123"]
    assert len(errors) == 1 and isinstance(errors[0], PreconditionError)
    deal_client.create_deal.assert_awaited_once()


@pytest.mark.asyncio
async def test_revoke_during_conversion_waits_for_winner_lock(services, listing_l1, deal_client):
    """A revoke racing the collaborator call lands only after the deal exists."""
    await _sign(services, "L1", "A")
    await services.progression.advance_to_active_dd("L1")

    release = asyncio.Event()

    async def slow_create(listing, buyer_id, notes=None):
        await release.wait()
        return "deal-slow"

    deal_client.create_deal.side_effect = slow_create

    convert_task = asyncio.create_task(services.progression.convert_to_deal("L1", "A"))
    while not deal_client.create_deal.await_count:
        await asyncio.sleep(0)
    revoke_task = asyncio.create_task(services.ledger.revoke("L1", "A", "late"))
    await asyncio.sleep(0.01)
    assert not revoke_task.done()

    release.set()
    assert await convert_task == "deal-slow"
    entry = await revoke_task
    assert entry.authorization.decline_reason == "late"


@pytest.mark.asyncio
async def test_convert_rechecks_winner_inside_locked_update(
    services, repo, listing_l1, deal_client, monkeypatch
):
    """A revoke committed elsewhere after the first read still blocks conversion."""
    await _sign(services, "L1", "A")
    await services.progression.advance_to_active_dd("L1")
    stale = await repo.get_entry("L1", "A")
    await services.ledger.revoke("L1", "A", "committed by another worker")

    async def stale_get_entry(listing_id, buyer_id):
        return stale.model_copy(deep=True)

    monkeypatch.setattr(repo, "get_entry", stale_get_entry)

    with pytest.raises(PreconditionError):
        await services.progression.convert_to_deal("L1", "A")

    deal_client.create_deal.assert_not_awaited()
    listing = await services.registry.get_listing("L1")
    assert listing.phase == DealPhase.ACTIVE_DD
