import json
import logging

import httpx
import pytest


@pytest.fixture
def no_backoff(monkeypatch):
    from branchflow.services import email_service

    async def _no_sleep(_seconds):
        return None

    monkeypatch.setattr(email_service.asyncio, "sleep", _no_sleep)


def _sender(handler):
    from branchflow.services.email_service import ResendEmailSender

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResendEmailSender("re_test_key", "no-reply@branch.test", "Downtown Branch", client=client)


@pytest.mark.asyncio
async def test_resend_posts_message_with_idempotency_key():
    from branchflow.services.email_service import RESEND_SEND_URL

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_123"})

    message_id = await _sender(handler).send(
        to_email="ada@example.com",
        subject="Reminder",
        html="<p>Hi</p>",
        idempotency_key="reminder-7",
    )

    assert message_id == "msg_123"
    [request] = seen
    assert str(request.url) == RESEND_SEND_URL
    assert request.headers["Authorization"] == "Bearer re_test_key"
    assert request.headers["Idempotency-Key"] == "reminder-7"
    body = json.loads(request.content)
    assert body == {
        "from": "Downtown Branch <no-reply@branch.test>",
        "to": ["ada@example.com"],
        "subject": "Reminder",
        "html": "<p>Hi</p>",
    }


@pytest.mark.asyncio
async def test_resend_retries_transient_status(no_backoff):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"id": "msg_ok"})

    assert await _sender(handler).send(to_email="a@example.com", subject="s", html="h") == "msg_ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_resend_gives_up_after_max_attempts(no_backoff):
    from branchflow.services.email_service import RESEND_MAX_ATTEMPTS, EmailSendError

    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    with pytest.raises(EmailSendError, match="503"):
        await _sender(handler).send(to_email="a@example.com", subject="s", html="h")

    assert len(calls) == RESEND_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_resend_client_error_not_retried(no_backoff):
    from branchflow.services.email_service import EmailSendError

    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(422, json={"message": "invalid to address"})

    with pytest.raises(EmailSendError, match="Resend API error 422"):
        await _sender(handler).send(to_email="bad", subject="s", html="h")

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_resend_transport_error_wrapped(no_backoff):
    from branchflow.services.email_service import EmailSendError

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EmailSendError, match="ConnectError"):
        await _sender(handler).send(to_email="a@example.com", subject="s", html="h")


@pytest.mark.asyncio
async def test_dry_run_logs_masked_recipient(caplog):
    from branchflow.services.email_service import DryRunEmailSender

    with caplog.at_level(logging.INFO, logger="branchflow.services.email_service"):
        result = await DryRunEmailSender().send(
            to_email="ada@example.com", subject="Reminder", html="<p>Hi</p>"
        )

    assert result is None
    assert "[DRY RUN]" in caplog.text
    assert "a***@example.com" in caplog.text
    assert "ada@example.com" not in caplog.text


def test_select_sender_dry_run_without_key(monkeypatch):
    from branchflow.core.config import settings
    from branchflow.services import email_service

    monkeypatch.setattr(settings, "RESEND_API_KEY", "")

    selection = email_service.select_sender()

    assert selection.dry_run is True
    assert selection.sender.key == "dry_run"


def test_select_sender_resend_with_key(monkeypatch):
    from branchflow.core.config import settings
    from branchflow.services import email_service

    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_live")
    monkeypatch.setattr(settings, "EMAIL_FROM", "hello@branch.test")

    selection = email_service.select_sender()

    assert selection.dry_run is False
    assert selection.sender.key == "resend"
    assert selection.sender.from_header == "Branchflow <hello@branch.test>"
