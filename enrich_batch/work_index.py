from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from identifiers import (
    SOCIAL_PROFILE,
    STATUS_EMPTY,
    STATUS_EXCLUDED,
    STATUS_INVALID,
    WEBSITE,
    Identifier,
    build_blocked_hosts,
    classify_input,
)

from .table import RowTable, TableError


MODE_DOMAIN = "domain"
MODE_INSTAGRAM = "instagram"
MODE_DUAL = "dual"

CLASSIFICATION_COLUMN = "Classification"
TERMINAL_CLASSIFICATIONS = {"QUALIFIED", "NOT_QUALIFIED", "MAYBE"}

SKIP_ALREADY_CLASSIFIED = "skipped: already classified"
SKIP_EMPTY = "skipped: empty input"
SKIP_INVALID = "skipped: invalid input"


class NoIdentifiersError(ValueError):
    """No row produced a usable identifier; there is nothing to enrich."""


@dataclass(frozen=True)
class ColumnSelection:
    website_column: Optional[str] = None
    profile_column: Optional[str] = None

    @property
    def mode(self) -> str:
        if self.website_column and self.profile_column:
            return MODE_DUAL
        if self.profile_column:
            return MODE_INSTAGRAM
        return MODE_DOMAIN

    def active_columns(self) -> list[tuple[str, str]]:
        """(column, identifier kind) pairs, website column first."""
        out = []
        if self.website_column:
            out.append((self.website_column, WEBSITE))
        if self.profile_column:
            out.append((self.profile_column, SOCIAL_PROFILE))
        return out


@dataclass(frozen=True)
class Fingerprint:
    headers: tuple[str, ...]
    website_column: str
    profile_column: str
    mode: str

    def to_dict(self) -> dict:
        return {
            "headers": list(self.headers),
            "columns": {"website": self.website_column, "profile": self.profile_column},
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fingerprint":
        columns = dict(data.get("columns") or {})
        return cls(
            headers=tuple(str(h) for h in data.get("headers") or []),
            website_column=str(columns.get("website") or ""),
            profile_column=str(columns.get("profile") or ""),
            mode=str(data.get("mode") or ""),
        )


def table_fingerprint(table: RowTable, selection: ColumnSelection) -> Fingerprint:
    return Fingerprint(
        headers=tuple(table.headers),
        website_column=selection.website_column or "",
        profile_column=selection.profile_column or "",
        mode=selection.mode,
    )


@dataclass
class WorkIndex:
    identifiers: list[Identifier] = field(default_factory=list)
    references: dict[Identifier, list[tuple[int, str]]] = field(default_factory=dict)
    row_identifiers: dict[int, list[Identifier]] = field(default_factory=dict)
    skipped: dict[int, str] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def keys(self) -> list[str]:
        return [identifier.key for identifier in self.identifiers]

    def rows_for(self, identifier: Identifier) -> list[int]:
        seen: list[int] = []
        for row_index, _column in self.references.get(identifier, []):
            if row_index not in seen:
                seen.append(row_index)
        return seen


def _row_skip_reason(statuses: list[tuple[str, str]]) -> str:
    # Report the most specific reason across the row's active columns.
    for status, blocked_host in statuses:
        if status == STATUS_EXCLUDED:
            return f"skipped: excluded host ({blocked_host})"
    for status, _ in statuses:
        if status == STATUS_INVALID:
            return SKIP_INVALID
    return SKIP_EMPTY


def build_work_index(
    table: RowTable,
    selection: ColumnSelection,
    blocked_hosts: Optional[Iterable[str]] = None,
) -> WorkIndex:
    """
    Scan rows in order and collect unique identifiers with their back references.

    The unique list keeps first-appearance order (website column before the
    profile column within a row) so repeated runs over the same table produce
    the same ordering, which checkpoint replay depends on.
    """
    if not table.headers:
        raise TableError("Input table has no headers.")
    active = selection.active_columns()
    if not active:
        raise TableError("Select a website column, a profile column, or both.")
    for column, _kind in active:
        if column not in table.headers:
            raise TableError(f"Column not found in input headers: {column}")

    blocked = list(blocked_hosts) if blocked_hosts is not None else build_blocked_hosts()
    index = WorkIndex()
    counts = {
        "rows": len(table.rows),
        "already_classified": 0,
        STATUS_EMPTY: 0,
        STATUS_INVALID: 0,
        STATUS_EXCLUDED: 0,
        "referenced_rows": 0,
    }

    for row_index, row in enumerate(table.rows):
        existing = str(row.get(CLASSIFICATION_COLUMN) or "").strip().upper()
        if existing in TERMINAL_CLASSIFICATIONS:
            index.skipped[row_index] = SKIP_ALREADY_CLASSIFIED
            counts["already_classified"] += 1
            continue

        found: list[Identifier] = []
        statuses: list[tuple[str, str]] = []
        for column, kind in active:
            result = classify_input(row.get(column, ""), kind, blocked)
            if not result.usable:
                counts[result.status] += 1
                statuses.append((result.status, result.blocked_host))
                continue
            identifier = result.identifier
            if identifier not in index.references:
                index.references[identifier] = []
                index.identifiers.append(identifier)
            index.references[identifier].append((row_index, column))
            found.append(identifier)

        if found:
            index.row_identifiers[row_index] = found
            counts["referenced_rows"] += 1
        else:
            index.skipped[row_index] = _row_skip_reason(statuses)

    counts["unique_identifiers"] = len(index.identifiers)
    index.counts = counts
    return index
