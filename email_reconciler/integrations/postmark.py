"""
Postmark Messages API client used by reconciliation.

Wraps the outbound/inbound message search endpoints (offset pagination) and
the per-message details endpoint. Every request is bounded: a limited number
of attempts with exponential backoff, and a process-local circuit breaker that
stops hammering Postmark while it is down.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from email_reconciler.config import (
    POSTMARK_API_BASE_URL,
    POSTMARK_API_TOKEN,
    POSTMARK_REQUEST_TIMEOUT,
    RECONCILIATION_SETTINGS,
)
from email_reconciler.models.schemas.postmark import (
    InboundMessage,
    MessageEvent,
    OutboundMessage,
    OutboundMessageDetails,
)
from email_reconciler.utils import get_logger
from email_reconciler.utils.backoff import compute_backoff_seconds, max_attempts as default_max_attempts
from email_reconciler.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER

logger = get_logger(__name__)

PROVIDER_NAME = "postmark"

# Postmark's native MessageEvents "Type" values -> webhook-style RecordType names.
EVENT_TYPE_TO_RECORD_TYPE: Dict[str, str] = {
    "Delivered": "Delivery",
    "Bounced": "Bounce",
    "Opened": "Open",
    "LinkClicked": "Click",
    "SpamComplaint": "SpamComplaint",
}

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class PostmarkConfigError(RuntimeError):
    """Raised when the client is used without a server token."""


class PostmarkAPIError(RuntimeError):
    """Non-success response (or circuit denial) from the Postmark API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code in _RETRYABLE_STATUS


def _postmark_date(value: datetime) -> str:
    # Postmark's search filters take a naive "YYYY-MM-DDTHH:MM:SS".
    return value.strftime("%Y-%m-%dT%H:%M:%S")


class PostmarkClient:
    """Async client for the subset of the Postmark API reconciliation needs."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        self.api_token = api_token if api_token is not None else POSTMARK_API_TOKEN
        self.base_url = (base_url or POSTMARK_API_BASE_URL).rstrip("/")
        self.timeout = float(timeout if timeout is not None else POSTMARK_REQUEST_TIMEOUT)
        self.max_attempts = max(1, int(max_attempts or default_max_attempts()))
        self.page_size = int(page_size or RECONCILIATION_SETTINGS["page_size"])
        self.logger = get_logger(f"integration.{PROVIDER_NAME}")
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single GET against the API; raises PostmarkAPIError on non-2xx."""
        headers = {
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.api_token or "",
        }
        session = self._get_session()
        async with session.get(f"{self.base_url}{path}", params=params, headers=headers) as response:
            if response.status >= 400:
                body = await response.text()
                raise PostmarkAPIError(
                    f"Postmark API returned status {response.status}: {body[:200]}",
                    status_code=response.status,
                )
            return await response.json()

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET with circuit breaker and bounded retries."""
        if not self.api_token:
            raise PostmarkConfigError("POSTMARK_API_TOKEN is not configured")

        allow, reason = GLOBAL_CIRCUIT_BREAKER.allow_call(PROVIDER_NAME)
        if not allow:
            self.logger.warning("Postmark call skipped due to circuit breaker", path=path, reason=reason)
            raise PostmarkAPIError(f"Circuit breaker denies call: {reason}")

        attempts = 0
        while True:
            attempts += 1
            try:
                data = await self._get_json(path, params)
                GLOBAL_CIRCUIT_BREAKER.record_success(PROVIDER_NAME)
                return data
            except PostmarkAPIError as e:
                if e.status_code in (401, 403):
                    GLOBAL_CIRCUIT_BREAKER.record_failure(PROVIDER_NAME)
                    self.logger.error("Postmark authentication failed", path=path, status_code=e.status_code)
                    raise
                if not e.retryable:
                    raise
                GLOBAL_CIRCUIT_BREAKER.record_failure(PROVIDER_NAME)
                error: Exception = e
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                GLOBAL_CIRCUIT_BREAKER.record_failure(PROVIDER_NAME)
                error = e

            if attempts >= self.max_attempts:
                self.logger.error(
                    "Postmark request failed after retries",
                    path=path,
                    attempts=attempts,
                    error=str(error),
                )
                if isinstance(error, PostmarkAPIError):
                    raise error
                raise PostmarkAPIError(f"Postmark request failed: {error}") from error

            backoff = compute_backoff_seconds(attempts)
            self.logger.warning(
                "Postmark request retry scheduled",
                path=path,
                attempt=attempts,
                backoff_seconds=round(backoff, 2),
                error=str(error),
            )
            await asyncio.sleep(backoff)

    async def _paginate(self, path: str, items_key: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._request(path, {**params, "count": self.page_size, "offset": offset})
            batch = page.get(items_key) or []
            items.extend(batch)
            total = int(page.get("TotalCount") or 0)
            if not batch or offset + self.page_size >= total:
                break
            offset += self.page_size
        self.logger.debug("Postmark pagination complete", path=path, fetched=len(items))
        return items

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #
    async def get_all_outbound_messages(self, from_date: datetime, to_date: datetime) -> List[OutboundMessage]:
        raw = await self._paginate(
            "/messages/outbound",
            "Messages",
            {"fromdate": _postmark_date(from_date), "todate": _postmark_date(to_date)},
        )
        return self._parse_all(raw, OutboundMessage)

    async def get_all_inbound_messages(self, from_date: datetime, to_date: datetime) -> List[InboundMessage]:
        raw = await self._paginate(
            "/messages/inbound",
            "InboundMessages",
            {"fromdate": _postmark_date(from_date), "todate": _postmark_date(to_date)},
        )
        return self._parse_all(raw, InboundMessage)

    async def get_outbound_message_details(self, message_id: str) -> Optional[OutboundMessageDetails]:
        try:
            data = await self._request(f"/messages/outbound/{message_id}/details")
        except PostmarkAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return OutboundMessageDetails.model_validate(data)

    async def get_message_events(self, message_id: str) -> List[MessageEvent]:
        """Delivery history of one outbound message as webhook-style events."""
        details = await self.get_outbound_message_details(message_id)
        if details is None:
            return []

        events: List[MessageEvent] = []
        if details.status in ("Sent", "Delivered"):
            events.append(MessageEvent(
                message_id=message_id,
                record_type="Delivery",
                received_at=details.received_at,
                recipient=details.to[0].email if details.to else None,
                metadata=details.metadata,
            ))

        for raw in details.message_events:
            record_type = raw.get("RecordType") or EVENT_TYPE_TO_RECORD_TYPE.get(raw.get("Type", ""), raw.get("Type"))
            if not record_type or not raw.get("ReceivedAt"):
                self.logger.debug("Skipping unusable message event", message_id=message_id, raw_type=raw.get("Type"))
                continue
            try:
                events.append(MessageEvent.model_validate({
                    **raw,
                    "MessageID": raw.get("MessageID") or message_id,
                    "RecordType": record_type,
                }))
            except ValidationError as e:
                self.logger.warning("Invalid message event payload", message_id=message_id, error=str(e))
        return events

    async def health_check(self) -> bool:
        try:
            await self._request("/server")
            return True
        except Exception as e:
            self.logger.warning("Postmark health check failed", error=str(e))
            return False

    def _parse_all(self, raw_items: List[Dict[str, Any]], model):
        parsed = []
        for raw in raw_items:
            try:
                parsed.append(model.model_validate(raw))
            except ValidationError as e:
                self.logger.warning(
                    "Skipping unparsable Postmark message",
                    message_id=raw.get("MessageID"),
                    error=str(e),
                )
        return parsed


__all__ = [
    "PostmarkClient",
    "PostmarkAPIError",
    "PostmarkConfigError",
    "EVENT_TYPE_TO_RECORD_TYPE",
]
