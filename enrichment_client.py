"""
HTTP boundary for bulk enrichment: the classification provider and the
Slack notification webhook.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from enrich_batch.models import EnrichmentError, EnrichmentPayload
from identifiers import SOCIAL_PROFILE, WEBSITE, Identifier


logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = os.getenv("ENRICH_API_BASE_URL", "http://127.0.0.1:3000")
DEFAULT_API_KEY = os.getenv("ENRICH_API_KEY", "")
DEFAULT_TIMEOUT_SECONDS = float(os.getenv("ENRICH_TIMEOUT", "30"))
DEFAULT_SLACK_WEBHOOK_URL = os.getenv("ENRICH_SLACK_WEBHOOK_URL", "")

ENDPOINTS = {
    WEBSITE: "/api/companysummary",
    SOCIAL_PROFILE: "/api/instagram-profile",
}

REQUEST_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body.get("detail") or "").strip()[:200]
    return ""


def _request_body(identifier: Identifier, context: Optional[dict]) -> dict:
    if identifier.kind == WEBSITE:
        body = {"url": identifier.url, "domain": identifier.value}
    else:
        body = {"username": identifier.value, "url": identifier.url}
    if context:
        body["context"] = context
    return body


def _unwrap(kind: str, body: Any) -> Any:
    # The profile endpoint nests the classification next to the raw profile.
    if kind == SOCIAL_PROFILE and isinstance(body, dict) and isinstance(body.get("qualificationData"), dict):
        return body["qualificationData"]
    if isinstance(body, dict) and isinstance(body.get("summary"), dict):
        return body["summary"]
    return body


class EnrichmentClient:
    """
    Async classification client, usable as the pipeline's `enrich` callback.

    One request per call, no retries; transport and provider errors surface as
    EnrichmentError with a short human-readable reason.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        api_key: str = DEFAULT_API_KEY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = str(base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)
        self.max_connections = max(1, int(max_connections))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "EnrichmentClient":
        headers = dict(REQUEST_HEADERS)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        timeout = httpx.Timeout(self.timeout_seconds, connect=min(self.timeout_seconds, 10.0))
        limits = httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=max(5, self.max_connections // 2),
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(self, identifier: Identifier, context: Optional[dict] = None) -> EnrichmentPayload:
        if self._client is None:
            raise RuntimeError("EnrichmentClient must be used as an async context manager.")
        endpoint = ENDPOINTS[identifier.kind]
        try:
            response = await self._client.post(endpoint, json=_request_body(identifier, context))
        except httpx.TimeoutException as exc:
            raise EnrichmentError(f"timeout contacting provider for {identifier.value}") from exc
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            reason = f"http_{response.status_code}"
            raise EnrichmentError(f"{reason}: {detail}" if detail else reason)
        try:
            body = response.json()
        except ValueError as exc:
            raise EnrichmentError("provider returned a non-JSON body") from exc
        return EnrichmentPayload.from_response(identifier.kind, _unwrap(identifier.kind, body))


class SlackNotifier:
    """Posts run summaries to a Slack incoming webhook. Never raises."""

    def __init__(
        self,
        webhook_url: str = DEFAULT_SLACK_WEBHOOK_URL,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = str(webhook_url or "").strip()
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, text: str) -> bool:
        if not self.enabled:
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json={"text": text})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Slack notification failed: %s", exc)
            return False
        return True


def format_run_summary(result: dict) -> str:
    status = str(result.get("status") or "unknown")
    counts = dict(result.get("counts") or {})
    lines = [
        f"Bulk enrichment {status}: {counts.get('processed', 0)}/{counts.get('total', 0)} identifiers",
        f"ok={counts.get('ok', 0)} failed={counts.get('failed', 0)} rows={counts.get('rows', 0)}",
    ]
    for warning in list(result.get("warnings") or [])[:5]:
        lines.append(f"- {warning}")
    return "\n".join(lines)
