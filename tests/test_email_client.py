"""
test_email_client.py
--------------------
AgentForge — Claims Automation Engine — Tests for the Resend email client
-------------------------------------------------------------------------
Uses httpx.MockTransport so no request leaves the process.

Run: pytest tests/test_email_client.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio
import json

import httpx
import pytest

from email_client import EmailSendError, ResendEmailClient


def _client(handler, api_key="re_test"):
    return ResendEmailClient(
        api_key=api_key,
        from_email="claims@agentforge.test",
        base_url="https://resend.test",
        transport=httpx.MockTransport(handler),
    )


class TestResendEmailClient:
    def test_send_posts_payload(self):
        """send() POSTs /emails with bearer auth and returns the message id."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg_123"})

        async def scenario():
            async with _client(handler) as client:
                return await client.send("adjuster@carrier.example", "Subject", "Body")

        assert asyncio.run(scenario()) == "msg_123"
        assert seen["url"] == "https://resend.test/emails"
        assert seen["auth"] == "Bearer re_test"
        assert seen["body"] == {
            "from": "claims@agentforge.test",
            "to": ["adjuster@carrier.example"],
            "subject": "Subject",
            "text": "Body",
        }

    def test_non_2xx_raises(self):
        """A provider rejection raises EmailSendError with the status code."""
        def handler(request):
            return httpx.Response(422, json={"message": "invalid to"})

        async def scenario():
            async with _client(handler) as client:
                await client.send("bad", "s", "b")

        with pytest.raises(EmailSendError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status_code == 422

    def test_transport_error_raises(self):
        """A connection failure raises EmailSendError with status 0."""
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        async def scenario():
            async with _client(handler) as client:
                await client.send("a@b.c", "s", "b")

        with pytest.raises(EmailSendError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status_code == 0

    def test_unconfigured(self, monkeypatch):
        """Without an API key the client reports unconfigured and refuses to send."""
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        client = ResendEmailClient()
        assert client.is_configured is False
        with pytest.raises(EmailSendError):
            asyncio.run(client.send("a@b.c", "s", "b"))
