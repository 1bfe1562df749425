"""Marketplace REST client used for escrow discovery."""

import logging

import httpx

from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.schemas.marketplace import ApiEscrow, EscrowPage

logger = logging.getLogger(__name__)

ROLES = ("seller", "buyer")


class MarketplaceClient:
    def __init__(
        self,
        base_url: str,
        *,
        page_size: int = 50,
        max_escrows: int = 500,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_escrows = max_escrows
        self.timeout = timeout
        self._transport = transport

    async def list_escrows(self, address: str) -> list[ApiEscrow]:
        """Escrows where ``address`` is seller or buyer, paginated, capped.

        Raises WatchError on any failed page so the caller can count the
        failure toward its circuit breaker.
        """
        found: dict[int, ApiEscrow] = {}
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            for role in ROLES:
                offset = 0
                while len(found) < self.max_escrows:
                    page = await self._fetch_page(client, role, address, offset)
                    before = len(found)
                    for escrow in page:
                        found.setdefault(escrow.id, escrow)
                    if len(page) < self.page_size or len(found) == before:
                        break
                    offset += self.page_size

        escrows = list(found.values())[: self.max_escrows]
        logger.debug("Marketplace reported %d escrows for %s", len(escrows), address)
        return escrows

    async def _fetch_page(
        self, client: httpx.AsyncClient, role: str, address: str, offset: int
    ) -> list[ApiEscrow]:
        params = {role: address, "limit": self.page_size, "offset": offset}
        try:
            resp = await client.get("/escrows", params=params)
        except httpx.TimeoutException:
            logger.error("Marketplace API timed out listing %s escrows", role)
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, "Marketplace API timed out") from None
        except httpx.RequestError as e:
            logger.error("Marketplace API request failed: %s", e)
            raise WatchError(ErrorCode.API_ERROR, "Failed to reach marketplace API") from None

        if resp.status_code == 429:
            raise WatchError(ErrorCode.RATE_LIMITED, "Marketplace API rate limited", "Wait and retry")
        if resp.status_code != 200:
            logger.error("Marketplace /escrows returned %d: %s", resp.status_code, resp.text[:500])
            raise WatchError(
                ErrorCode.API_ERROR,
                f"Marketplace escrow listing failed (status {resp.status_code})",
            )

        try:
            return EscrowPage.model_validate(resp.json()).escrows
        except ValueError as e:
            # pydantic's ValidationError is a ValueError, as is bad JSON
            logger.error("Malformed marketplace response: %s", e)
            raise WatchError(ErrorCode.API_ERROR, "Malformed marketplace response") from None
