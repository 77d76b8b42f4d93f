from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path

import polars as pl


class TableError(ValueError):
    """Structural problem with the input table (no headers, unknown column)."""


@dataclass
class RowTable:
    headers: list[str]
    rows: list[dict[str, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def column_values(self, column: str) -> list[str]:
        return [row.get(column, "") for row in self.rows]


def _frame_to_table(df: pl.DataFrame) -> RowTable:
    headers = [str(col) for col in df.columns]
    rows = []
    for record in df.iter_rows(named=True):
        rows.append({col: "" if record.get(col) is None else str(record.get(col)) for col in headers})
    return RowTable(headers=headers, rows=rows)


def _table_to_frame(table: RowTable) -> pl.DataFrame:
    return pl.DataFrame(
        {col: [row.get(col, "") or "" for row in table.rows] for col in table.headers},
        schema={col: pl.Utf8 for col in table.headers},
    )


def parse_table(text: str) -> RowTable:
    """Parse CSV text with every column kept as text."""
    raw = str(text or "")
    if not raw.strip():
        raise TableError("CSV file is empty or has no headers.")
    try:
        df = pl.read_csv(io.BytesIO(raw.encode("utf-8")), infer_schema_length=0, truncate_ragged_lines=True)
    except pl.exceptions.PolarsError as exc:
        raise TableError(f"Could not parse CSV: {exc}") from exc
    if df.width == 0:
        raise TableError("CSV file is empty or has no headers.")
    return _frame_to_table(df)


def read_table(path: Path) -> RowTable:
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    suffix = path.suffix.lower()
    try:
        if suffix in {".parquet", ".pq"}:
            df = pl.read_parquet(str(path))
            df = df.select([pl.col(col).cast(pl.Utf8, strict=False) for col in df.columns])
        else:
            df = pl.read_csv(str(path), infer_schema_length=0, truncate_ragged_lines=True)
    except pl.exceptions.PolarsError as exc:
        raise TableError(f"Could not read {path.name}: {exc}") from exc
    if df.width == 0:
        raise TableError("Input file has no columns.")
    return _frame_to_table(df)


def serialize_table(table: RowTable) -> str:
    return _table_to_frame(table).write_csv()


def write_table(table: RowTable, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    _table_to_frame(table).write_csv(str(path))
    return path
