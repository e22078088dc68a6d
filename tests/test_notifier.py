import hashlib
import hmac
import json
import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock
from research_app.models.job import ResearchJob
from research_app.models.report import Report, ReportSection
from research_app.services.notifier import WebhookNotifier, sign_payload


def completed_job():
    job = ResearchJob(query="Acme Corp", template_id="company-profile")
    job.mark_completed(Report(title="Acme Corp Profile", sections=[ReportSection(id="o", title="O", content="c")]))
    return job


@pytest.fixture
def mock_httpx_client():
    client = MagicMock()
    client.post = AsyncMock(return_value=MagicMock(raise_for_status=lambda: None))
    client.aclose = AsyncMock()
    return client


def test_sign_payload():
    body = b'{"event": "research.completed"}'
    expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
    assert sign_payload(body, "secret") == expected


def test_build_payload_for_completed_and_failed_jobs():
    payload = WebhookNotifier.build_payload(completed_job())
    assert payload["event"] == "research.completed"
    assert payload["data"]["report_title"] == "Acme Corp Profile"
    assert "error" not in payload["data"]

    failed = ResearchJob(query="Acme Corp", template_id="company-profile")
    failed.mark_failed("no_search_results", "Nothing found")
    payload = WebhookNotifier.build_payload(failed)
    assert payload["event"] == "research.failed"
    assert payload["data"]["error"] == "no_search_results"


@pytest.mark.asyncio
async def test_notify_signs_body(mock_httpx_client):
    """Test that the X-Signature header matches the posted body."""
    notifier = WebhookNotifier(["https://hooks.example.com/a"], secret="secret", client=mock_httpx_client)

    delivered = await notifier.notify(completed_job())

    assert delivered == 1
    args, kwargs = mock_httpx_client.post.call_args
    assert args == ("https://hooks.example.com/a",)
    assert kwargs["headers"]["X-Signature"] == sign_payload(kwargs["content"], "secret")
    assert json.loads(kwargs["content"])["event"] == "research.completed"


@pytest.mark.asyncio
async def test_notify_without_secret_has_no_signature(mock_httpx_client):
    notifier = WebhookNotifier(["https://hooks.example.com/a"], client=mock_httpx_client)
    await notifier.notify(completed_job())
    _, kwargs = mock_httpx_client.post.call_args
    assert "X-Signature" not in kwargs["headers"]


@pytest.mark.asyncio
async def test_notify_isolates_failed_deliveries(mock_httpx_client):
    """Test that one failing endpoint does not stop delivery to the others."""
    ok = MagicMock(raise_for_status=lambda: None)
    mock_httpx_client.post.side_effect = [
        httpx.ConnectError("refused", request=httpx.Request("POST", "https://down.example.com")),
        ok,
    ]
    notifier = WebhookNotifier(["https://down.example.com", "https://up.example.com"], client=mock_httpx_client)

    assert await notifier.notify(completed_job()) == 1
    assert mock_httpx_client.post.call_count == 2


@pytest.mark.asyncio
async def test_notify_without_urls(mock_httpx_client):
    notifier = WebhookNotifier([], client=mock_httpx_client)
    assert await notifier.notify(completed_job()) == 0
    mock_httpx_client.post.assert_not_called()
