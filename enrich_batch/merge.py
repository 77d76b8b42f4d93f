from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping

from identifiers import SOCIAL_PROFILE, Identifier

from .models import EnrichmentOutcome, EnrichmentPayload, Failure, Success
from .table import RowTable
from .work_index import WorkIndex


SUMMARY_COLUMN = "Company Summary"
INDUSTRY_COLUMN = "Company Industry"
OPENER_COLUMN = "Sales Opener Sentence"
CLASSIFICATION_COLUMN = "Classification"
CONFIDENCE_COLUMN = "Confidence Score"
PRODUCT_TYPES_COLUMN = "Product Types"
SALES_ACTION_COLUMN = "Sales Action"
EMAIL_COLUMN = "Email"
PHONE_COLUMN = "Phone"
CLEANED_URL_COLUMN = "Cleaned URL"
STATUS_COLUMN = "Research Status"

DERIVED_COLUMNS = [
    SUMMARY_COLUMN,
    INDUSTRY_COLUMN,
    OPENER_COLUMN,
    CLASSIFICATION_COLUMN,
    CONFIDENCE_COLUMN,
    PRODUCT_TYPES_COLUMN,
    SALES_ACTION_COLUMN,
    EMAIL_COLUMN,
    PHONE_COLUMN,
    CLEANED_URL_COLUMN,
    STATUS_COLUMN,
]

PRODUCT_COLUMN_PREFIX = "PRODUCT"
PRODUCT_COLUMN_RE = re.compile(r"^PRODUCT(\d+)$")

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"


def product_column(position: int) -> str:
    return f"{PRODUCT_COLUMN_PREFIX}{position}"


def join_human(items: list[str]) -> str:
    """Join list items for display: `A`, `A and B`, `A, B, and C`."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} and {items[1]}"
    return f"{', '.join(items[:-1])}, and {items[-1]}"


def _format_score(score: float) -> str:
    if float(score).is_integer():
        return str(int(score))
    return str(score)


def _apply_success(row: dict[str, str], identifier: Identifier, payload: EnrichmentPayload):
    # An empty provider value keeps whatever the row already had.
    row[SUMMARY_COLUMN] = payload.summary or row.get(SUMMARY_COLUMN, "")
    row[INDUSTRY_COLUMN] = payload.industry or row.get(INDUSTRY_COLUMN, "")
    row[OPENER_COLUMN] = payload.opener or row.get(OPENER_COLUMN, "")
    row[CLASSIFICATION_COLUMN] = payload.classification or row.get(CLASSIFICATION_COLUMN, "")
    if payload.confidence_score is not None:
        row[CONFIDENCE_COLUMN] = _format_score(payload.confidence_score)
    products = list(payload.product_types)
    if products:
        row[PRODUCT_TYPES_COLUMN] = join_human(products)
        for position, product in enumerate(products, start=1):
            row[product_column(position)] = product
        for column in row:
            match = PRODUCT_COLUMN_RE.match(column)
            if match and int(match.group(1)) > len(products):
                row[column] = ""
    row[SALES_ACTION_COLUMN] = payload.sales_action or row.get(SALES_ACTION_COLUMN, "")
    if payload.email and not row.get(EMAIL_COLUMN):
        row[EMAIL_COLUMN] = payload.email
    if payload.phone and not row.get(PHONE_COLUMN):
        row[PHONE_COLUMN] = payload.phone


def _merge_order(identifiers: list[Identifier]) -> list[Identifier]:
    # Profile results first so website results win where both have a value.
    return sorted(identifiers, key=lambda ident: 0 if ident.kind == SOCIAL_PROFILE else 1)


def _max_product_count(table: RowTable, index: WorkIndex, outcomes: Mapping[str, EnrichmentOutcome]) -> int:
    longest = 0
    for header in table.headers:
        match = PRODUCT_COLUMN_RE.match(header)
        if match:
            longest = max(longest, int(match.group(1)))
    for identifier in index.identifiers:
        outcome = outcomes.get(identifier.key)
        if isinstance(outcome, Success):
            longest = max(longest, len(outcome.payload.product_types))
    return longest


def output_headers(table: RowTable, index: WorkIndex, outcomes: Mapping[str, EnrichmentOutcome]) -> list[str]:
    headers = list(table.headers)
    for column in DERIVED_COLUMNS:
        if column not in headers:
            headers.append(column)
    for position in range(1, _max_product_count(table, index, outcomes) + 1):
        column = product_column(position)
        if column not in headers:
            headers.append(column)
    return headers


def merge_outcomes(
    table: RowTable,
    index: WorkIndex,
    outcomes: Mapping[str, EnrichmentOutcome],
) -> RowTable:
    """
    Project outcomes onto every row that referenced their identifier.

    Returns a new rectangular table; the input rows are not modified, so merging
    the same outcome map into the same rows always yields identical output.
    """
    headers = output_headers(table, index, outcomes)
    merged_rows: list[dict[str, str]] = []
    for row_index, source in enumerate(table.rows):
        row = {column: str(source.get(column, "") or "") for column in headers}
        identifiers = index.row_identifiers.get(row_index)
        if not identifiers:
            row[STATUS_COLUMN] = index.skipped.get(row_index, row.get(STATUS_COLUMN, ""))
            merged_rows.append(row)
            continue

        succeeded = False
        failures: list[str] = []
        for identifier in _merge_order(identifiers):
            outcome = outcomes.get(identifier.key)
            if isinstance(outcome, Success):
                _apply_success(row, identifier, outcome.payload)
                succeeded = True
            elif isinstance(outcome, Failure):
                failures.append(outcome.reason)

        if succeeded:
            row[CLEANED_URL_COLUMN] = " | ".join(identifier.url for identifier in identifiers)
            row[STATUS_COLUMN] = STATUS_COMPLETED
        elif failures:
            row[STATUS_COLUMN] = "; ".join(failures)
        else:
            row[STATUS_COLUMN] = STATUS_PENDING
        merged_rows.append(row)
    return RowTable(headers=headers, rows=merged_rows)


@dataclass
class PartitionedOutput:
    headers: list[str]
    processed_rows: list[dict[str, str]]
    pending_rows: list[dict[str, str]]

    @property
    def processed(self) -> RowTable:
        return RowTable(headers=list(self.headers), rows=self.processed_rows)

    @property
    def pending(self) -> RowTable:
        return RowTable(headers=list(self.headers), rows=self.pending_rows)


def row_has_outcome(row_index: int, index: WorkIndex, outcomes: Mapping[str, EnrichmentOutcome]) -> bool:
    identifiers = index.row_identifiers.get(row_index)
    if not identifiers:
        # Skipped rows already carry a terminal status.
        return True
    return any(identifier.key in outcomes for identifier in identifiers)


def partition_rows(
    merged: RowTable,
    index: WorkIndex,
    outcomes: Mapping[str, EnrichmentOutcome],
) -> PartitionedOutput:
    processed: list[dict[str, str]] = []
    pending: list[dict[str, str]] = []
    for row_index, row in enumerate(merged.rows):
        if row_has_outcome(row_index, index, outcomes):
            processed.append(row)
        else:
            pending.append(row)
    return PartitionedOutput(headers=list(merged.headers), processed_rows=processed, pending_rows=pending)
