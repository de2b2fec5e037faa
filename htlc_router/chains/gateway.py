"""
REST gateway adapter.

For ledgers reached through an HTTP service that exposes HTLC primitives
(Sui/Hedera-style gateways):

    POST /htlc/lock              {secret_hash, recipient, amount, timelock, asset_id}
                                 -> {lock_ref}
    POST /htlc/{lock_ref}/claim  {secret} -> {claim_ref}
    POST /htlc/{lock_ref}/refund -> {refund_ref}
    GET  /htlc/{lock_ref}        -> {confirmations, expired, timelock, ...}
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import httpx

from ..errors import LedgerError, LockFailed, ClaimFailed, RefundFailed
from .base import LedgerAdapter

log = logging.getLogger(__name__)


class GatewayLedgerAdapter(LedgerAdapter):
    """LedgerAdapter over a REST HTLC gateway."""

    def __init__(self, chain_id: str, base_url: str, api_key: Optional[str] = None,
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(chain_id)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(self, error_cls, method: str, path: str,
                       payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.request(method, path, json=payload),
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise error_cls(f"{method} {path} timed out", chain=self.chain_id, recoverable=True)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text[:200]
            raise error_cls(f"{method} {path} -> HTTP {status}: {detail}",
                            chain=self.chain_id, recoverable=status >= 500)
        except httpx.HTTPError as e:
            raise error_cls(f"{method} {path} failed: {e}", chain=self.chain_id,
                            recoverable=True)
        except ValueError as e:
            raise error_cls(f"{method} {path} returned invalid JSON: {e}",
                            chain=self.chain_id, recoverable=False)

    @staticmethod
    def _field(data: Dict[str, Any], key: str, error_cls, chain: str):
        value = data.get(key)
        if not value:
            raise error_cls(f"Gateway response missing '{key}'", chain=chain, recoverable=False)
        return value

    async def lock(self, secret_hash: str, recipient: str, amount: int,
                   timelock: int, asset_id: str = "") -> str:
        data = await self._request(LockFailed, "POST", "/htlc/lock", {
            "secret_hash": secret_hash,
            "recipient": recipient,
            "amount": str(amount),
            "timelock": timelock,
            "asset_id": asset_id,
        })
        lock_ref = self._field(data, "lock_ref", LockFailed, self.chain_id)
        log.info(f"[{self.chain_id}] Gateway lock {lock_ref}")
        return lock_ref

    async def claim(self, lock_ref: str, secret: str) -> str:
        data = await self._request(ClaimFailed, "POST", f"/htlc/{lock_ref}/claim",
                                   {"secret": secret})
        return self._field(data, "claim_ref", ClaimFailed, self.chain_id)

    async def refund(self, lock_ref: str) -> str:
        data = await self._request(RefundFailed, "POST", f"/htlc/{lock_ref}/refund")
        return self._field(data, "refund_ref", RefundFailed, self.chain_id)

    async def is_expired(self, lock_ref: str) -> bool:
        data = await self._request(LedgerError, "GET", f"/htlc/{lock_ref}")
        return bool(data.get("expired", False))

    async def get_confirmation_count(self, lock_ref: str) -> int:
        data = await self._request(LedgerError, "GET", f"/htlc/{lock_ref}")
        return int(data.get("confirmations", 0))

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
