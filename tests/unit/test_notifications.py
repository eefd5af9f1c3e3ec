import json

import httpx
import pytest

from ticketflow.errors import NotificationError
from ticketflow.notifications import InMemoryDispatcher, get_dispatcher
from ticketflow.notifications.resend import ResendDispatcher
from ticketflow.config import NotificationConfig, TicketflowConfig


def _resend(handler) -> ResendDispatcher:
    return ResendDispatcher(
        api_key="re_test",
        sender="Helpdesk <help@example.com>",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_resend_posts_email_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email-123"})

    dispatcher = _resend(handler)
    receipt = await dispatcher.send(
        to="tech@example.com",
        subject="Step completed: Approve",
        category="default",
        body_html="<p>done</p>",
        severity="success",
    )
    await dispatcher.close()

    assert receipt.message_id == "email-123"
    assert receipt.backend == "resend"
    assert seen["url"] == "https://api.resend.com/emails"
    assert seen["auth"] == "Bearer re_test"
    assert seen["body"]["from"] == "Helpdesk <help@example.com>"
    assert seen["body"]["to"] == ["tech@example.com"]
    assert {"name": "severity", "value": "success"} in seen["body"]["tags"]


@pytest.mark.asyncio
async def test_resend_rejection_raises_notification_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid to"})

    dispatcher = _resend(handler)
    with pytest.raises(NotificationError, match="422"):
        await dispatcher.send(
            to="nobody", subject="x", category="default", body_html="<p>x</p>"
        )
    await dispatcher.close()


@pytest.mark.asyncio
async def test_resend_network_failure_raises_notification_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = _resend(handler)
    with pytest.raises(NotificationError, match="Could not reach Resend"):
        await dispatcher.send(
            to="tech@example.com", subject="x", category="reminder", body_html="<p>x</p>"
        )
    await dispatcher.close()


@pytest.mark.asyncio
async def test_inmemory_dispatcher_collects_outbox():
    dispatcher = InMemoryDispatcher()
    await dispatcher.send(
        to="a@example.com", subject="New ticket", category="new_ticket", body_html="<p>hi</p>"
    )
    assert [m.subject for m in dispatcher.outbox] == ["New ticket"]
    assert dispatcher.outbox[0].severity == "info"


def test_get_dispatcher_backends():
    off = TicketflowConfig()
    assert get_dispatcher(config=off) is None
    assert isinstance(get_dispatcher("inmemory", config=off), InMemoryDispatcher)

    with pytest.raises(ValueError):
        get_dispatcher("resend", config=off)
    with pytest.raises(ValueError):
        get_dispatcher("pigeon", config=off)

    configured = TicketflowConfig(
        notifications=NotificationConfig(backend="resend", api_key="re_key")
    )
    assert isinstance(get_dispatcher(config=configured), ResendDispatcher)


@pytest.mark.asyncio
async def test_resend_unreadable_success_body_raises_notification_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    dispatcher = _resend(handler)
    with pytest.raises(NotificationError, match="unreadable response"):
        await dispatcher.send(
            to="tech@example.com", subject="x", category="default", body_html="<p>x</p>"
        )
    await dispatcher.close()
