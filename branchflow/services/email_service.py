"""Notification sender interface + Resend and dry-run implementations."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

import httpx

from branchflow.core.config import settings
from branchflow.core.structured_logging import mask_email

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0
RESEND_TIMEOUT_SECONDS = 20.0

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


class EmailSendError(Exception):
    """Outbound email could not be delivered to the transport."""

    pass


class EmailSender(Protocol):
    key: str

    async def send(
        self,
        *,
        to_email: str,
        subject: str,
        html: str,
        idempotency_key: str | None = None,
    ) -> str | None:
        """Send an email; return the provider message id. Raise EmailSendError on failure."""


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    return delay + random.uniform(0, delay / 2) if delay else 0.0


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request, retrying transport errors and retryable statuses."""
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    last_attempt = max_attempts - 1

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= last_attempt:
                raise
            logger.warning("Email transport request failed, retrying", exc_info=exc)
        else:
            if response.status_code not in statuses or attempt >= last_attempt:
                return response
            logger.warning("Email transport returned %s, retrying", response.status_code)

        delay = _backoff_delay(attempt, base_delay, max_delay)
        if delay:
            await asyncio.sleep(delay)

    raise EmailSendError("Email transport retries exhausted")


class ResendEmailSender:
    """Send through the Resend HTTP API."""

    key = "resend"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._client = client

    @property
    def from_header(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_email

    async def send(
        self,
        *,
        to_email: str,
        subject: str,
        html: str,
        idempotency_key: str | None = None,
    ) -> str | None:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        payload = {
            "from": self.from_header,
            "to": [to_email],
            "subject": subject,
            "html": html,
        }

        async def _post(client: httpx.AsyncClient) -> httpx.Response:
            return await request_with_retries(
                lambda: client.post(RESEND_SEND_URL, json=payload, headers=headers),
                max_attempts=RESEND_MAX_ATTEMPTS,
                base_delay=RESEND_RETRY_BASE_DELAY,
                max_delay=RESEND_RETRY_MAX_DELAY,
            )

        try:
            if self._client is not None:
                response = await _post(self._client)
            else:
                async with httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS) as client:
                    response = await _post(client)
        except httpx.HTTPError as exc:
            raise EmailSendError(f"Resend request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise EmailSendError(
                f"Resend API error {response.status_code}: {response.text[:200]}"
            )

        message_id = response.json().get("id")
        logger.info("Email sent via Resend to %s id=%s", mask_email(to_email), message_id)
        return message_id


class DryRunEmailSender:
    """Log instead of sending (no API key configured)."""

    key = "dry_run"

    async def send(
        self,
        *,
        to_email: str,
        subject: str,
        html: str,
        idempotency_key: str | None = None,
    ) -> str | None:
        logger.info("[DRY RUN] Would send email to %s: %s", mask_email(to_email), subject)
        return None


@dataclass(frozen=True)
class SenderSelection:
    sender: EmailSender
    dry_run: bool


def select_sender() -> SenderSelection:
    """Pick Resend when an API key is configured, otherwise dry-run."""
    if settings.RESEND_API_KEY:
        return SenderSelection(
            sender=ResendEmailSender(
                settings.RESEND_API_KEY,
                settings.EMAIL_FROM,
                settings.EMAIL_FROM_NAME,
            ),
            dry_run=False,
        )
    return SenderSelection(sender=DryRunEmailSender(), dry_run=True)
