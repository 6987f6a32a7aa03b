"""
HTTP client for the external accounting system.

Requests are rate limited client-side with ``asyncio_throttle.Throttler`` so a
migration never exceeds the provider's published request budget, and HTTP
failures are mapped onto transient or permanent submission errors.
"""

from typing import Any, Dict, Mapping, Optional

import httpx
from asyncio_throttle import Throttler

from ..core.exceptions import PermanentSubmissionError, TransientSubmissionError
from ..utils.logger import get_logger, set_log_context
from .base import AccountingClient

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class HttpAccountingClient(AccountingClient):
    """
    Accounting API client on ``httpx.AsyncClient``.

    Records are submitted as time activities; the accounting system keys them
    by the source record id, so resubmitting an already-created record is an
    update rather than a duplicate.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        rate_limit: int = 10,
        rate_period_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Root URL of the accounting API
            api_token: Bearer token sent with every request
            timeout_seconds: Per-request timeout
            rate_limit: Requests allowed per ``rate_period_seconds``
            rate_period_seconds: Length of the rate window
            transport: Optional httpx transport (mock transports in tests)
        """
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport
        )
        self.throttler = Throttler(rate_limit=rate_limit, period=rate_period_seconds)

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="accounting_client")

    async def check_connection(self) -> bool:
        try:
            async with self.throttler:
                response = await self._client.get("/connection")
            return response.status_code == 200
        except httpx.HTTPError as e:
            self.logger.warning(f"Accounting system connection check failed: {e}")
            return False

    async def submit(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        record_id = str(record.get("id"))
        try:
            async with self.throttler:
                response = await self._client.put(
                    f"/time-activities/{record_id}",
                    json=self.to_payload(record)
                )
        except httpx.TransportError as e:
            raise TransientSubmissionError(f"Transport error: {e}", record_id=record_id) from e

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}: {response.text[:200]}"
            if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
                raise TransientSubmissionError(message, status_code=response.status_code, record_id=record_id)
            raise PermanentSubmissionError(message, status_code=response.status_code, record_id=record_id)

        return response.json() if response.content else {"record_id": record_id}

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def to_payload(record: Mapping[str, Any]) -> Dict[str, Any]:
        """Map a source submission onto the accounting system's time activity shape."""
        user = record.get("user") or {}
        lines = []
        for entry in record.get("entries") or []:
            project = entry.get("project") or {}
            lines.append({
                "entry_id": entry.get("id"),
                "client": project.get("client"),
                "project": project.get("name"),
                "minutes": entry.get("duration_minutes"),
                "billable": bool(entry.get("billable")),
                "hourly_rate": entry.get("bill_rate"),
                "description": entry.get("description")
            })
        return {
            "source_id": record.get("id"),
            "employee_email": user.get("email"),
            "approved_at": str(record.get("approved_at")) if record.get("approved_at") else None,
            "lines": lines
        }
