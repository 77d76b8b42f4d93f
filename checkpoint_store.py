"""
Checkpoint persistence for bulk enrichment runs using SQLite.
Stores one versioned JSON snapshot per key so an interrupted run can resume.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from enrich_batch.models import (
    EnrichmentError,
    EnrichmentOutcome,
    Failure,
    Success,
    outcome_from_dict,
    outcome_to_dict,
)
from enrich_batch.work_index import Fingerprint


logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "csv-processing-progress"
CHECKPOINT_VERSION = 1
CHECKPOINT_TTL_DAYS = 7
DEFAULT_MAX_BYTES = int(os.getenv("ENRICH_CHECKPOINT_MAX_BYTES", str(4 * 1024 * 1024)))
AUTO_SAVE_INTERVAL_SECONDS = 5.0
AUTO_SAVE_BATCH_SIZE = 10

SAVE_FULL = "full"
SAVE_DEGRADED = "degraded"
SAVE_FAILED = "failed"


class CheckpointQuotaExceeded(Exception):
    """The checkpoint medium refused the write for lack of space."""


def runtime_data_dir() -> Path:
    raw = str(os.getenv("ENRICH_DATA_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path(__file__).resolve().parent


def default_checkpoint_db_path() -> Path:
    data_dir = runtime_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "checkpoints.db"


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _safe_parse_saved_at(value: str) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CheckpointState:
    fingerprint: Fingerprint
    identifier_keys: list[str]
    processed: list[int] = field(default_factory=list)
    outcomes: dict[str, EnrichmentOutcome] = field(default_factory=dict)
    saved_at: str = ""
    degraded: bool = False

    def counts(self) -> dict[str, int]:
        ok = sum(1 for outcome in self.outcomes.values() if isinstance(outcome, Success))
        failed = sum(1 for outcome in self.outcomes.values() if isinstance(outcome, Failure))
        return {
            "total": len(self.identifier_keys),
            "processed": len(self.processed),
            "ok": ok,
            "failed": failed,
        }


def encode_state(state: CheckpointState, include_outcomes: bool = True) -> str:
    payload = {
        "version": CHECKPOINT_VERSION,
        "fingerprint": state.fingerprint.to_dict(),
        "identifiers": list(state.identifier_keys),
        "processed": list(state.processed),
        "counts": state.counts(),
        "savedAt": state.saved_at or _now_iso(),
        "degraded": not include_outcomes,
    }
    if include_outcomes:
        payload["outcomes"] = {key: outcome_to_dict(value) for key, value in state.outcomes.items()}
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":"))


def decode_state(encoded: str) -> Optional[CheckpointState]:
    try:
        payload = json.loads(encoded)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict) or payload.get("version") != CHECKPOINT_VERSION:
        return None
    try:
        identifier_keys = [str(key) for key in payload.get("identifiers") or []]
        processed = [int(i) for i in payload.get("processed") or []]
        raw_outcomes = dict(payload.get("outcomes") or {})
        fingerprint = Fingerprint.from_dict(dict(payload.get("fingerprint") or {}))
    except (TypeError, ValueError):
        return None
    outcomes = {}
    for key, value in raw_outcomes.items():
        # An unreadable entry only costs that identifier; resume stops at it.
        try:
            outcomes[str(key)] = outcome_from_dict(dict(value))
        except (TypeError, ValueError, EnrichmentError) as exc:
            logger.warning("Dropping unreadable checkpoint outcome for %s: %s", key, exc)
    if any(i < 0 or i >= len(identifier_keys) for i in processed):
        return None
    return CheckpointState(
        fingerprint=fingerprint,
        identifier_keys=identifier_keys,
        processed=processed,
        outcomes=outcomes,
        saved_at=str(payload.get("savedAt") or ""),
        degraded=bool(payload.get("degraded")),
    )


class CheckpointStore:
    """
    Single-key snapshot store backed by a SQLite file.

    `max_bytes` models the practical size ceiling of the medium; a payload above
    it is refused with CheckpointQuotaExceeded, as is SQLite's own disk-full error.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        key: str = CHECKPOINT_KEY,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl: timedelta = timedelta(days=CHECKPOINT_TTL_DAYS),
    ):
        self.db_path = Path(db_path) if db_path else default_checkpoint_db_path()
        self.key = key
        self.max_bytes = int(max_bytes)
        self.ttl = ttl
        self._initialized = False

    async def init(self):
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    saved_at TIMESTAMP NOT NULL
                )
            """)
            await db.commit()
        self._initialized = True

    async def _write(self, encoded: str, saved_at: str):
        if len(encoded.encode("utf-8")) > self.max_bytes:
            raise CheckpointQuotaExceeded(
                f"checkpoint payload of {len(encoded)} bytes exceeds {self.max_bytes} bytes"
            )
        try:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute("""
                    INSERT OR REPLACE INTO checkpoints (key, payload, saved_at)
                    VALUES (?, ?, ?)
                """, (self.key, encoded, saved_at))
                await db.commit()
        except sqlite3.OperationalError as exc:
            if "full" in str(exc).lower():
                raise CheckpointQuotaExceeded(str(exc)) from exc
            raise

    async def save(self, state: CheckpointState) -> str:
        """
        Persist `state`, degrading under quota pressure.

        Returns SAVE_FULL, SAVE_DEGRADED (outcome map dropped) or SAVE_FAILED.
        A failed save never raises; the run continues without durability.
        """
        await self.init()
        state.saved_at = _now_iso()
        try:
            await self._write(encode_state(state), state.saved_at)
            return SAVE_FULL
        except CheckpointQuotaExceeded as exc:
            logger.warning("Checkpoint quota exceeded (%s); clearing old snapshot and retrying.", exc)
        except (aiosqlite.Error, OSError) as exc:
            logger.error("Failed to save checkpoint: %s", exc)
            return SAVE_FAILED

        try:
            await self.clear()
            await self._write(encode_state(state), state.saved_at)
            return SAVE_FULL
        except CheckpointQuotaExceeded as exc:
            logger.warning("Checkpoint still too large after clearing (%s); saving bookkeeping only.", exc)
        except (aiosqlite.Error, OSError) as exc:
            logger.error("Failed to save checkpoint after clearing: %s", exc)
            return SAVE_FAILED

        try:
            await self._write(encode_state(state, include_outcomes=False), state.saved_at)
        except (CheckpointQuotaExceeded, aiosqlite.Error, OSError) as exc:
            logger.error("Failed to save even minimal checkpoint: %s", exc)
            return SAVE_FAILED
        logger.warning(
            "Saved degraded checkpoint for %d/%d identifiers; enrichment results were not persisted.",
            len(state.processed),
            len(state.identifier_keys),
        )
        return SAVE_DEGRADED

    async def _read(self) -> Optional[tuple[str, str]]:
        await self.init()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT payload, saved_at FROM checkpoints WHERE key = ?",
                (self.key,),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        return str(row["payload"]), str(row["saved_at"])

    async def _load_fresh(self) -> Optional[CheckpointState]:
        found = await self._read()
        if not found:
            return None
        encoded, saved_at_raw = found
        saved_at = _safe_parse_saved_at(saved_at_raw)
        if not saved_at or datetime.now(tz=timezone.utc) - saved_at > self.ttl:
            await self.clear()
            return None
        state = decode_state(encoded)
        if state is None:
            logger.warning("Discarding unreadable checkpoint under key %s.", self.key)
        return state

    async def load(self, fingerprint: Fingerprint) -> Optional[CheckpointState]:
        """Return the snapshot only if it is fresh and was taken for `fingerprint`."""
        state = await self._load_fresh()
        if state is None:
            return None
        if state.fingerprint != fingerprint:
            return None
        return state

    async def exists(self) -> bool:
        return await self._load_fresh() is not None

    async def info(self) -> Optional[dict]:
        state = await self._load_fresh()
        if state is None:
            return None
        return {
            "key": self.key,
            "savedAt": state.saved_at,
            "mode": state.fingerprint.mode,
            "columns": state.fingerprint.to_dict()["columns"],
            "degraded": state.degraded,
            **state.counts(),
        }

    async def clear(self):
        await self.init()
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("DELETE FROM checkpoints WHERE key = ?", (self.key,))
            await db.commit()


def should_auto_save(
    last_saved_at: Optional[float],
    items_since_save: int,
    now: Optional[float] = None,
    interval_seconds: float = AUTO_SAVE_INTERVAL_SECONDS,
    batch_size: int = AUTO_SAVE_BATCH_SIZE,
) -> bool:
    """Time-based OR count-based save policy, whichever comes first."""
    if last_saved_at is None:
        return True
    current = time.monotonic() if now is None else now
    return (current - last_saved_at) >= interval_seconds or items_since_save >= batch_size
