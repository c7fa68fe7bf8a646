"""Provider charge clients as seen by the core.

Each real client talks to its vendor API (Click HMAC header, Payme X-Auth,
Uzcard basic auth); here they only have to satisfy ``ProviderClient``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    receipt_id: str | None = None
    qr_code_url: str | None = None
    error_code: str | int | None = None


class ProviderClient(Protocol):
    async def charge(self, token: str, amount: int, correlation_id: str) -> ChargeResult: ...

    async def revoke(self, token: str) -> bool: ...


class ChargeDispatcher:
    """Routes calls by the card's provider tag and bounds each one with a timeout."""

    def __init__(self, clients: dict | None = None, timeout: float | None = None):
        self.clients: dict[str, ProviderClient] = dict(clients or {})
        self.timeout = config.CHARGE_TIMEOUT_SECONDS if timeout is None else timeout

    def register(self, provider: str, client: ProviderClient) -> None:
        self.clients[provider] = client

    def supports(self, provider: str) -> bool:
        return provider in self.clients

    def missing(self, providers=config.Provider.ALL) -> list[str]:
        return [p for p in providers if p not in self.clients]

    async def charge(self, provider: str, token: str, amount: int, correlation_id: str) -> ChargeResult:
        """Raises LookupError when no client is registered for ``provider``.

        That is a wiring error, not a declined charge.
        """
        client = self.clients.get(provider)
        if client is None:
            raise LookupError(f"No client for provider {provider}")

        try:
            result = await asyncio.wait_for(
                client.charge(token, amount, correlation_id), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("%s charge timed out (correlation=%s)", provider, correlation_id)
            return ChargeResult(False, error_code="timeout")
        except Exception:  # noqa: BLE001
            logger.exception("%s charge failed (correlation=%s)", provider, correlation_id)
            return ChargeResult(False, error_code="error")

        # faqat aniq tasdiq = muvaffaqiyat
        if not isinstance(result, ChargeResult) or result.success is not True:
            code = getattr(result, "error_code", None)
            return ChargeResult(False, error_code=code if code is not None else "declined")
        return result

    async def revoke(self, provider: str, token: str) -> bool:
        client = self.clients.get(provider)
        if client is None:
            raise LookupError(f"No client for provider {provider}")
        return bool(await asyncio.wait_for(client.revoke(token), timeout=self.timeout))
