"""
Tests for building the deduplicated identifier index from a row table.
"""

import pytest

from enrich_batch.table import RowTable, TableError
from enrich_batch.work_index import (
    MODE_DOMAIN,
    MODE_DUAL,
    MODE_INSTAGRAM,
    SKIP_ALREADY_CLASSIFIED,
    SKIP_EMPTY,
    SKIP_INVALID,
    ColumnSelection,
    build_work_index,
    table_fingerprint,
)
from identifiers import SOCIAL_PROFILE, WEBSITE, Identifier


def _table(rows, headers=None):
    headers = headers or list(rows[0].keys())
    return RowTable(headers=headers, rows=[{h: row.get(h, "") for h in headers} for row in rows])


def test_duplicate_urls_collapse_to_one_identifier():
    table = _table([
        {"url": "shop.example.com"},
        {"url": "SHOP.EXAMPLE.COM/about"},
        {"url": "instagram.com/brandx"},
    ])
    index = build_work_index(table, ColumnSelection(website_column="url"))

    assert index.keys == ["website:shop.example.com"]
    shop = Identifier("shop.example.com", WEBSITE)
    assert index.references[shop] == [(0, "url"), (1, "url")]
    assert index.rows_for(shop) == [0, 1]
    assert index.skipped == {2: "skipped: excluded host (instagram.com)"}
    assert index.counts["excluded"] == 1


def test_order_is_first_appearance_and_stable():
    table = _table([
        {"site": "b.com"},
        {"site": "a.com"},
        {"site": "https://b.com/x"},
        {"site": "c.com"},
    ])
    selection = ColumnSelection(website_column="site")
    first = build_work_index(table, selection)
    second = build_work_index(table, selection)
    assert first.keys == ["website:b.com", "website:a.com", "website:c.com"]
    assert first.keys == second.keys


def test_skip_reasons_for_empty_invalid_and_classified_rows():
    table = _table([
        {"site": "", "Classification": ""},
        {"site": "nodot", "Classification": ""},
        {"site": "done.com", "Classification": "qualified"},
        {"site": "again.com", "Classification": "EXPIRED"},
    ])
    index = build_work_index(table, ColumnSelection(website_column="site"))

    assert index.skipped[0] == SKIP_EMPTY
    assert index.skipped[1] == SKIP_INVALID
    assert index.skipped[2] == SKIP_ALREADY_CLASSIFIED
    # EXPIRED results are researched again.
    assert index.keys == ["website:again.com"]
    assert index.counts["already_classified"] == 1


def test_dual_mode_collects_one_identifier_per_column():
    table = _table([
        {"site": "acme.io", "ig": "instagram.com/AcmeCo"},
        {"site": "facebook.com/acme", "ig": "instagram.com/AcmeCo"},
        {"site": "beta.io", "ig": ""},
    ])
    selection = ColumnSelection(website_column="site", profile_column="ig")
    index = build_work_index(table, selection)

    assert selection.mode == MODE_DUAL
    assert index.keys == ["website:acme.io", "social_profile:AcmeCo", "website:beta.io"]
    assert index.row_identifiers[0] == [Identifier("acme.io", WEBSITE), Identifier("AcmeCo", SOCIAL_PROFILE)]
    # The excluded website cell does not hide the usable profile cell.
    assert index.row_identifiers[1] == [Identifier("AcmeCo", SOCIAL_PROFILE)]
    assert 1 not in index.skipped
    assert index.rows_for(Identifier("AcmeCo", SOCIAL_PROFILE)) == [0, 1]


def test_selection_modes():
    assert ColumnSelection(website_column="a").mode == MODE_DOMAIN
    assert ColumnSelection(profile_column="b").mode == MODE_INSTAGRAM


def test_structural_errors_raise_before_work():
    table = _table([{"site": "acme.io"}])
    with pytest.raises(TableError):
        build_work_index(table, ColumnSelection())
    with pytest.raises(TableError):
        build_work_index(table, ColumnSelection(website_column="missing"))
    with pytest.raises(TableError):
        build_work_index(RowTable(headers=[], rows=[]), ColumnSelection(website_column="site"))


def test_fingerprint_tracks_headers_columns_and_mode():
    table = _table([{"site": "acme.io", "ig": ""}])
    domain = table_fingerprint(table, ColumnSelection(website_column="site"))
    dual = table_fingerprint(table, ColumnSelection(website_column="site", profile_column="ig"))
    assert domain != dual
    assert domain == table_fingerprint(table, ColumnSelection(website_column="site"))
    assert domain.to_dict()["columns"] == {"website": "site", "profile": ""}
