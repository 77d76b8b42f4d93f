"""
Tests for website / Instagram identifier normalization and the host blocklist.
"""

import pytest

from identifiers import (
    SOCIAL_PROFILE,
    STATUS_EMPTY,
    STATUS_EXCLUDED,
    STATUS_INVALID,
    STATUS_OK,
    WEBSITE,
    Identifier,
    build_blocked_hosts,
    classify_input,
    is_blocked_host,
    normalize_social_profile,
    normalize_website,
)


@pytest.mark.parametrize("raw, expected", [
    ("shop.example.com", "shop.example.com"),
    ("  SHOP.EXAMPLE.COM/about?x=1 ", "shop.example.com"),
    ("https://www.Acme.io/pricing", "acme.io"),
    ("http://acme.io:8080/", "acme.io"),
    ("jane@acme.io", "acme.io"),
    ("acme.io.", "acme.io"),
])
def test_normalize_website_canonical_host(raw, expected):
    identifier = normalize_website(raw)
    assert identifier is not None, f"{raw!r} should normalize"
    assert identifier.value == expected
    assert identifier.kind == WEBSITE


def test_normalize_website_keeps_scheme_in_url():
    assert normalize_website("http://www.acme.io/about").url == "http://acme.io"
    assert normalize_website("acme.io").url == "https://acme.io"


@pytest.mark.parametrize("raw", ["", "   ", "localhost", "not a domain", None])
def test_normalize_website_rejects_non_domains(raw):
    assert normalize_website(raw) is None


def test_website_identifiers_compare_case_insensitively():
    assert normalize_website("ACME.io") == normalize_website("https://acme.IO/x")
    assert hash(normalize_website("ACME.io")) == hash(normalize_website("acme.io"))


@pytest.mark.parametrize("raw, expected", [
    ("instagram.com/BrandX", "BrandX"),
    ("https://www.instagram.com/brand.x/", "brand.x"),
    ("http://m.instagram.com/@brandx?hl=en", "brandx"),
])
def test_normalize_social_profile_preserves_handle_case(raw, expected):
    identifier = normalize_social_profile(raw)
    assert identifier is not None
    assert identifier.value == expected
    assert identifier.kind == SOCIAL_PROFILE
    assert identifier.url == f"https://instagram.com/{expected}"


@pytest.mark.parametrize("raw", [
    "brandx",
    "https://tiktok.com/@brandx",
    "instagram.com/p/Cx123",
    "instagram.com/reel/abc",
    "notinstagram.com/brandx",
])
def test_normalize_social_profile_rejects_other_inputs(raw):
    assert normalize_social_profile(raw) is None


def test_blocked_hosts_match_exact_and_subdomains():
    assert is_blocked_host("linkedin.com") == "linkedin.com"
    assert is_blocked_host("uk.linkedin.com") == "linkedin.com"
    assert is_blocked_host("notlinkedin.com") is None
    assert is_blocked_host("acme.io", ["acme.io"]) == "acme.io"


def test_build_blocked_hosts_adds_custom_entries_once():
    hosts = build_blocked_hosts(["www.Wix.com", "wix.com", ""])
    assert hosts.count("wix.com") == 1
    assert "facebook.com" in hosts


def test_classify_input_reports_each_status():
    assert classify_input("", WEBSITE).status == STATUS_EMPTY
    assert classify_input("nodot", WEBSITE).status == STATUS_INVALID

    excluded = classify_input("https://www.facebook.com/acme", WEBSITE)
    assert excluded.status == STATUS_EXCLUDED
    assert excluded.blocked_host == "facebook.com"
    assert excluded.identifier is None

    ok = classify_input("acme.io", WEBSITE)
    assert ok.status == STATUS_OK and ok.usable
    assert classify_input("instagram.com/acme", SOCIAL_PROFILE).identifier.value == "acme"


def test_classify_input_rejects_unknown_kind():
    with pytest.raises(ValueError):
        classify_input("acme.io", "email")


def test_identifier_key_round_trip():
    identifier = Identifier.from_key("social_profile:BrandX")
    assert identifier == Identifier("BrandX", SOCIAL_PROFILE)
    assert identifier.key == "social_profile:BrandX"
    with pytest.raises(ValueError):
        Identifier.from_key("bogus")
