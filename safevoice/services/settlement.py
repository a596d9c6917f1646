"""
safevoice.services.settlement — Claim settlement clients
=========================================================

A claim moves pending $VOICE to "claimed" only after an external
settlement succeeds.  The ledger awaits a :class:`SettlementClient`; with
none configured it settles locally.  :class:`HttpSettlementClient` posts
the claim to a wallet bridge over HTTP.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from safevoice.errors import ExternalClaimFailure

logger = logging.getLogger(__name__)


class SettlementClient(Protocol):
    async def settle(self, user_id: str, amount: int, wallet_address: str | None) -> dict[str, Any]:
        """Return a receipt, or raise :class:`ExternalClaimFailure`."""
        ...


class HttpSettlementClient:
    """POST ``{user_id, amount, wallet_address}`` to a settlement endpoint.

    Any transport error or non-2xx response is an
    :class:`ExternalClaimFailure`; the caller does not retry.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def settle(self, user_id: str, amount: int, wallet_address: str | None) -> dict[str, Any]:
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=transport) as client:
                resp = await client.post(
                    self.url,
                    json={"user_id": user_id, "amount": amount, "wallet_address": wallet_address},
                )
        except httpx.HTTPError as exc:
            raise ExternalClaimFailure(f"Settlement request failed: {exc}") from exc

        if resp.status_code // 100 != 2:
            raise ExternalClaimFailure(f"Settlement rejected with HTTP {resp.status_code}")
        try:
            receipt = resp.json()
        except ValueError:
            receipt = {}
        if not isinstance(receipt, dict):
            receipt = {"result": receipt}
        logger.info("Settled %d VOICE for %s", amount, user_id)
        return receipt
