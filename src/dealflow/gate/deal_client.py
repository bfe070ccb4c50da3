"""Deal-creation collaborator clients.

Conversion hands the winning buyer to an external deal service that creates
the durable transaction record. HttpDealCreationClient calls that service with
retry logic (tenacity, 3 attempts, exponential backoff 1-10s). Every request
carries an Idempotency-Key derived from the listing id, so a retried call can
never create a second deal for the same listing.

LocalDealCreationClient mints ids in-process and is the default when no
service URL is configured.
"""

from __future__ import annotations

import uuid
from typing import Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.dealflow.config import Settings
from src.dealflow.errors import DealCreationError
from src.dealflow.gate.schemas import Listing

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Retry transport failures and 5xx responses; 4xx are final."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


_deal_service_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class DealCreationClient(Protocol):
    """Creates the closed-deal record for a converted listing."""

    async def create_deal(
        self, listing: Listing, winning_buyer_id: str, notes: str | None = None
    ) -> str: ...


class LocalDealCreationClient:
    """Mints ``deal-<uuid>`` identifiers without calling out."""

    async def create_deal(
        self, listing: Listing, winning_buyer_id: str, notes: str | None = None
    ) -> str:
        deal_id = f"deal-{uuid.uuid4()}"
        logger.info(
            "deal_client.local_deal_created",
            deal_id=deal_id,
            listing_id=listing.id,
            buyer_id=winning_buyer_id,
        )
        return deal_id


class HttpDealCreationClient:
    """Async client for the external deal service.

    Args:
        base_url: Service root, e.g. ``https://deals.internal/api``.
        api_key: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (used to inject a mock in tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_deal_service_retry
    async def _post_deal(self, payload: dict, idempotency_key: str) -> object:
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/deals",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            response.raise_for_status()
            return response.json()

    async def create_deal(
        self, listing: Listing, winning_buyer_id: str, notes: str | None = None
    ) -> str:
        """Create the deal and return its id.

        POST /deals with the listing, winner and notes.

        Raises:
            DealCreationError: If the service fails after retries or its
                response does not carry a deal id in a JSON object.
        """
        payload = {
            "listing_id": listing.id,
            "listing_type": listing.listing_type.value,
            "buyer_id": winning_buyer_id,
            "notes": notes,
            "source": "distribution",
        }
        try:
            data = await self._post_deal(payload, f"convert-{listing.id}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "deal_client.create_failed",
                listing_id=listing.id,
                buyer_id=winning_buyer_id,
                error=str(exc),
            )
            raise DealCreationError(
                f"Deal service failed for listing {listing.id}: {exc}",
                context={"listing_id": listing.id},
            ) from exc

        if not isinstance(data, dict):
            raise DealCreationError(
                "Deal service response was not a JSON object",
                context={"listing_id": listing.id},
            )

        deal_id = data.get("id") or data.get("deal_id")
        if not deal_id:
            raise DealCreationError(
                "Deal service response did not include a deal id",
                context={"listing_id": listing.id},
            )

        logger.info(
            "deal_client.deal_created",
            deal_id=deal_id,
            listing_id=listing.id,
            buyer_id=winning_buyer_id,
        )
        return str(deal_id)


def build_deal_client(settings: Settings) -> DealCreationClient:
    """HTTP client when DEAL_SERVICE_URL is set, local minting otherwise."""
    if settings.DEAL_SERVICE_URL:
        return HttpDealCreationClient(
            settings.DEAL_SERVICE_URL,
            api_key=settings.DEAL_SERVICE_API_KEY,
            timeout=settings.DEAL_SERVICE_TIMEOUT,
        )
    return LocalDealCreationClient()
