"""
Tests for the provider client and Slack notifier against a mocked transport.
"""

import asyncio
import json

import httpx
import pytest

from enrich_batch.models import EnrichmentError, EnrichmentPayload
from enrichment_client import EnrichmentClient, SlackNotifier, format_run_summary
from identifiers import normalize_social_profile, normalize_website


def _call(handler, identifier, **kwargs):
    async def scenario():
        async with EnrichmentClient(
            base_url="http://provider.test",
            transport=httpx.MockTransport(handler),
            **kwargs,
        ) as client:
            return await client(identifier, {"mode": "domain"})

    return asyncio.run(scenario())


def test_website_request_and_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "company_summary": "Makes anvils.",
            "company_industry": "Manufacturing",
            "classification": "unqualified",
            "sales_action": "exclude",
            "confidence_score": "42",
            "product_types": ["Anvils", "", 7],
        })

    payload = _call(handler, normalize_website("https://www.acme.io/about"), api_key="secret")
    assert seen["path"] == "/api/companysummary"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["domain"] == "acme.io"
    assert seen["body"]["url"] == "https://acme.io"
    assert isinstance(payload, EnrichmentPayload)
    assert payload.classification == "NOT_QUALIFIED"
    assert payload.sales_action == "EXCLUDE"
    assert payload.confidence_score == 42.0
    assert payload.product_types == ("Anvils",)
    assert payload.industry == "Manufacturing"


def test_profile_response_is_unwrapped():
    def handler(request):
        assert request.url.path == "/api/instagram-profile"
        assert json.loads(request.content)["username"] == "AcmeCo"
        return httpx.Response(200, json={
            "profile": {"followers": 1200},
            "qualificationData": {
                "profile_summary": "Handmade goods.",
                "classification": "MAYBE",
                "sales_action": "somethingelse",
            },
        })

    payload = _call(handler, normalize_social_profile("instagram.com/AcmeCo"))
    assert payload.summary == "Handmade goods."
    assert payload.classification == "MAYBE"
    assert payload.sales_action == "MANUAL_REVIEW"


@pytest.mark.parametrize("response, reason", [
    (httpx.Response(500, json={"error": "boom"}), "http_500: boom"),
    (httpx.Response(404), "http_404"),
    (httpx.Response(200, text="<html>"), "provider returned a non-JSON body"),
    (httpx.Response(200, json=["not", "an", "object"]), "no usable data"),
    (httpx.Response(200, json={"classification": "GREAT"}), "invalid classification: 'GREAT'"),
])
def test_provider_errors_become_enrichment_errors(response, reason):
    with pytest.raises(EnrichmentError) as excinfo:
        _call(lambda request: response, normalize_website("acme.io"))
    assert str(excinfo.value) == reason


def test_transport_timeout_is_reported():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(EnrichmentError) as excinfo:
        _call(handler, normalize_website("acme.io"))
    assert "timeout" in str(excinfo.value)


def test_client_requires_context_manager():
    client = EnrichmentClient(base_url="http://provider.test")
    with pytest.raises(RuntimeError):
        asyncio.run(client(normalize_website("acme.io")))


def test_slack_notifier_posts_and_swallows_failures():
    posted = []

    def ok_handler(request):
        posted.append(json.loads(request.content)["text"])
        return httpx.Response(200, text="ok")

    notifier = SlackNotifier("https://hooks.slack.test/x", transport=httpx.MockTransport(ok_handler))
    assert asyncio.run(notifier.notify("hello"))
    assert posted == ["hello"]

    failing = SlackNotifier(
        "https://hooks.slack.test/x",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    assert asyncio.run(failing.notify("hello")) is False
    assert asyncio.run(SlackNotifier("").notify("hello")) is False


def test_format_run_summary():
    text = format_run_summary({
        "status": "stopped",
        "counts": {"processed": 2, "total": 5, "ok": 1, "failed": 1, "rows": 7},
        "warnings": ["Resumed from saved progress at 2/5 identifiers."],
    })
    assert text.splitlines() == [
        "Bulk enrichment stopped: 2/5 identifiers",
        "ok=1 failed=1 rows=7",
        "- Resumed from saved progress at 2/5 identifiers.",
    ]
