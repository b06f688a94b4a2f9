"""Order Subsystem client: cancels a session's pending orders.

Talks to the order service over HTTP. With no service URL configured it runs in
mock mode and only logs, which is what local development and tests use.
"""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    success: bool
    cancelled: int = 0
    error: str | None = None
    mock: bool = False


class OrderClient:
    """Async client for the order service."""

    def __init__(self, base_url: str = "", timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._mock_mode = not self.base_url and client is None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def cancel_pending_orders(self, session_id: str) -> CancelResult:
        """Cancel every pending order placed under `session_id`.

        Raises httpx.HTTPError on transport or non-2xx failures.
        """
        if self._mock_mode:
            logger.info(f"[mock] Cancel pending orders for session {session_id}")
            return CancelResult(success=True, mock=True)

        client = await self._ensure_client()
        resp = await client.post(f"/sessions/{session_id}/orders/cancel")
        resp.raise_for_status()
        body = resp.json() if resp.content else {}
        cancelled = int(body.get("cancelled", 0))
        logger.info(f"Cancelled {cancelled} pending orders for session {session_id}")
        return CancelResult(success=True, cancelled=cancelled)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
