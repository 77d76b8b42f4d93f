"""
Durable record of successful enrichments, keyed by identifier.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from checkpoint_store import runtime_data_dir
from enrich_batch.models import EnrichmentPayload
from identifiers import Identifier


def default_record_db_path() -> Path:
    data_dir = runtime_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "enrichment_records.db"


class RecordStore:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else default_record_db_path()
        self._initialized = False

    async def init(self):
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS enrichment_records (
                    identifier TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    value TEXT NOT NULL,
                    classification TEXT NOT NULL,
                    result_json TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_classification
                ON enrichment_records(classification)
            """)
            await db.commit()
        self._initialized = True

    async def upsert(self, identifier: Identifier, payload: EnrichmentPayload):
        """Insert or replace the record for `identifier`."""
        await self.init()
        encoded = json.dumps(payload.to_response(), ensure_ascii=True, separators=(",", ":"))
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                INSERT OR REPLACE INTO enrichment_records
                (identifier, kind, value, classification, result_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                identifier.key,
                identifier.kind,
                identifier.value,
                payload.classification,
                encoded,
                datetime.now(tz=timezone.utc).isoformat(),
            ))
            await db.commit()

    async def get(self, identifier: Identifier) -> Optional[EnrichmentPayload]:
        await self.init()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT kind, result_json FROM enrichment_records WHERE identifier = ?",
                (identifier.key,),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        return EnrichmentPayload.from_response(str(row["kind"]), json.loads(str(row["result_json"])))

    async def count(self) -> int:
        await self.init()
        async with aiosqlite.connect(str(self.db_path)) as db:
            async with db.execute("SELECT COUNT(*) FROM enrichment_records") as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
