"""
email_client.py
---------------
AgentForge — Claims Automation Engine — Resend email client
------------------------------------------------------------
Async EmailSender over the Resend HTTP API (POST /emails).

The sender is optional infrastructure: when RESEND_API_KEY is unset the
client reports is_configured == False and the communication executors skip
with a neutral result instead of failing the action.

Usage (async context manager — preferred):
    async with ResendEmailClient() as client:
        message_id = await client.send("adjuster@carrier.com", "Subject", "Body")

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_FROM_EMAIL = "noreply@agentforge.local"
RESEND_BASE_URL = "https://api.resend.com"


class EmailSendError(Exception):
    """Raised when the email provider rejects a send or cannot be reached."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Email send failed {status_code}: {body}")


class ResendEmailClient:
    """
    Async Resend client.

    Args:
        api_key:    Resend API key. Defaults to ``RESEND_API_KEY``.
        from_email: Sender address. Defaults to ``RESEND_FROM_EMAIL``, then
                    ``noreply@agentforge.local``.
        base_url:   API base URL (overridable for tests).
        timeout:    HTTP request timeout in seconds.
        transport:  Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        base_url: str = RESEND_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("RESEND_API_KEY", "")
        self.from_email = from_email or os.getenv("RESEND_FROM_EMAIL", DEFAULT_FROM_EMAIL)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("ResendEmailClient: HTTP transport initialised.")

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("ResendEmailClient: HTTP transport closed.")

    async def __aenter__(self) -> "ResendEmailClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Send ─────────────────────────────────────────────────────────────────

    async def send(self, to: str, subject: str, body: str) -> str:
        """
        Send a plain-text email.

        Args:
            to: Recipient address.
            subject: Subject line.
            body: Plain-text body.

        Returns:
            str: Provider message id.

        Raises:
            EmailSendError: if the client is unconfigured, the request fails
                at transport level (status_code 0), or Resend returns non-2xx.
        """
        if not self.is_configured:
            raise EmailSendError(0, "RESEND_API_KEY is not configured")
        await self.connect()
        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "text": body,
        }
        try:
            resp = await self._http.post(
                f"{self.base_url}/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EmailSendError(0, str(exc)) from exc

        if resp.status_code not in (200, 201, 202):
            raise EmailSendError(resp.status_code, resp.text)

        message_id = str(resp.json().get("id", ""))
        logger.info("ResendEmailClient: sent '%s' to %s (id=%s).", subject, to, message_id)
        return message_id
