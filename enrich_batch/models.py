from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from identifiers import SOCIAL_PROFILE, WEBSITE


CLASSIFICATIONS = ("QUALIFIED", "NOT_QUALIFIED", "MAYBE", "EXPIRED")
SALES_ACTIONS = ("OUTREACH", "EXCLUDE", "PARTNERSHIP", "MANUAL_REVIEW")
DEFAULT_SALES_ACTION = "MANUAL_REVIEW"

# Provider field names per identifier kind.
SUMMARY_FIELDS = {
    WEBSITE: ("company_summary", "company_industry"),
    SOCIAL_PROFILE: ("profile_summary", "profile_industry"),
}


class EnrichmentError(Exception):
    """Raised when the provider returns nothing usable for an identifier."""


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_confidence(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class EnrichmentPayload:
    kind: str
    summary: str = ""
    industry: str = ""
    opener: str = ""
    classification: str = ""
    sales_action: str = DEFAULT_SALES_ACTION
    confidence_score: Optional[float] = None
    product_types: tuple[str, ...] = ()
    email: str = ""
    phone: str = ""

    @classmethod
    def from_response(cls, kind: str, data: Any) -> "EnrichmentPayload":
        """
        Build a payload from a provider response body.

        Raises EnrichmentError when the body is not an object or has no valid
        classification, which is the one field every merged row relies on.
        """
        if kind not in SUMMARY_FIELDS:
            raise ValueError(f"Unknown identifier kind: {kind!r}")
        if not isinstance(data, dict):
            raise EnrichmentError("no usable data")
        summary_key, industry_key = SUMMARY_FIELDS[kind]
        classification = _clean_text(data.get("classification")).upper()
        if classification == "UNQUALIFIED":
            classification = "NOT_QUALIFIED"
        if classification not in CLASSIFICATIONS:
            raise EnrichmentError(f"invalid classification: {data.get('classification')!r}")
        sales_action = _clean_text(data.get("sales_action")).upper()
        if sales_action not in SALES_ACTIONS:
            sales_action = DEFAULT_SALES_ACTION
        raw_products = data.get("product_types")
        products: tuple[str, ...] = ()
        if isinstance(raw_products, list):
            products = tuple(p.strip() for p in raw_products if isinstance(p, str) and p.strip())
        return cls(
            kind=kind,
            summary=_clean_text(data.get(summary_key)),
            industry=_clean_text(data.get(industry_key)),
            opener=_clean_text(data.get("sales_opener_sentence")),
            classification=classification,
            sales_action=sales_action,
            confidence_score=_parse_confidence(data.get("confidence_score")),
            product_types=products,
            email=_clean_text(data.get("email")),
            phone=_clean_text(data.get("phone")),
        )

    def to_response(self) -> dict:
        summary_key, industry_key = SUMMARY_FIELDS[self.kind]
        body = {
            summary_key: self.summary,
            industry_key: self.industry,
            "sales_opener_sentence": self.opener,
            "classification": self.classification,
            "sales_action": self.sales_action,
            "product_types": list(self.product_types),
        }
        if self.confidence_score is not None:
            body["confidence_score"] = self.confidence_score
        if self.email:
            body["email"] = self.email
        if self.phone:
            body["phone"] = self.phone
        return body


@dataclass(frozen=True)
class Success:
    payload: EnrichmentPayload
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failure:
    reason: str
    ok: bool = field(default=False, init=False)


EnrichmentOutcome = Union[Success, Failure]


def outcome_to_dict(outcome: EnrichmentOutcome) -> dict:
    if isinstance(outcome, Success):
        return {"ok": True, "kind": outcome.payload.kind, "payload": outcome.payload.to_response()}
    return {"ok": False, "reason": outcome.reason}


def outcome_from_dict(data: dict) -> EnrichmentOutcome:
    if data.get("ok"):
        return Success(EnrichmentPayload.from_response(str(data.get("kind") or ""), data.get("payload")))
    return Failure(str(data.get("reason") or "unknown_error"))
