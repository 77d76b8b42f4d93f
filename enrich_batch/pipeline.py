from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from tqdm import tqdm

from checkpoint_store import (
    AUTO_SAVE_BATCH_SIZE,
    AUTO_SAVE_INTERVAL_SECONDS,
    SAVE_FAILED,
    CheckpointState,
    CheckpointStore,
    should_auto_save,
)
from enrichment_client import (
    DEFAULT_API_BASE_URL,
    DEFAULT_API_KEY,
    DEFAULT_SLACK_WEBHOOK_URL,
    DEFAULT_TIMEOUT_SECONDS,
    EnrichmentClient,
    SlackNotifier,
    format_run_summary,
)
from identifiers import Identifier, build_blocked_hosts
from record_store import RecordStore

from .merge import merge_outcomes, partition_rows
from .models import EnrichmentError, EnrichmentOutcome, EnrichmentPayload, Failure, Success
from .table import RowTable, TableError, read_table, write_table
from .work_index import (
    ColumnSelection,
    Fingerprint,
    NoIdentifiersError,
    WorkIndex,
    build_work_index,
    table_fingerprint,
)


logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = int(os.getenv("ENRICH_CONCURRENCY", "5"))

RUN_COMPLETED = "completed"
RUN_STOPPED = "stopped"
RUN_FAILED = "failed"

EnrichCallback = Callable[[Identifier, dict], Awaitable[Any]]
ProgressCallback = Callable[[dict], None]


@dataclass
class RunState:
    """
    Progress owned by the controlling coroutine of one run.

    `processed` and `outcomes` are only mutated between chunks, so the
    checkpoint written after a chunk is always consistent.
    """

    identifiers: list[Identifier]
    processed: list[int] = field(default_factory=list)
    outcomes: dict[str, EnrichmentOutcome] = field(default_factory=dict)
    last_saved_at: Optional[float] = None
    items_since_save: int = 0
    stop_requested: bool = False
    stopped: bool = False
    resumed_from: int = 0
    save_results: list[str] = field(default_factory=list)

    @property
    def next_index(self) -> int:
        return len(self.processed)

    @property
    def total(self) -> int:
        return len(self.identifiers)

    def request_stop(self):
        self.stop_requested = True

    def counts(self) -> dict[str, int]:
        ok = sum(1 for outcome in self.outcomes.values() if isinstance(outcome, Success))
        return {
            "total": self.total,
            "processed": len(self.processed),
            "ok": ok,
            "failed": len(self.outcomes) - ok,
        }

    def to_checkpoint(self, fingerprint: Fingerprint) -> CheckpointState:
        return CheckpointState(
            fingerprint=fingerprint,
            identifier_keys=[identifier.key for identifier in self.identifiers],
            processed=list(self.processed),
            outcomes=dict(self.outcomes),
        )

    @classmethod
    def from_checkpoint(cls, identifiers: list[Identifier], snapshot: CheckpointState) -> "RunState":
        """Resume from the longest processed prefix whose outcomes survived."""
        keys = [identifier.key for identifier in identifiers]
        resumed = 0
        for position, processed_index in enumerate(snapshot.processed):
            if processed_index != position or keys[position] not in snapshot.outcomes:
                break
            resumed = position + 1
        return cls(
            identifiers=identifiers,
            processed=list(range(resumed)),
            outcomes={keys[i]: snapshot.outcomes[keys[i]] for i in range(resumed)},
            resumed_from=resumed,
        )


def _failure_reason(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


async def _enrich_one(enrich: EnrichCallback, identifier: Identifier, context: dict) -> EnrichmentOutcome:
    try:
        result = await enrich(identifier, context)
    except Exception as exc:
        return Failure(_failure_reason(exc))
    # Payloads go through the same validation as raw bodies so every stored
    # Success can be read back from a checkpoint.
    if not isinstance(result, (EnrichmentPayload, dict)):
        return Failure("no usable data")
    try:
        if isinstance(result, EnrichmentPayload):
            return Success(EnrichmentPayload.from_response(result.kind, result.to_response()))
        return Success(EnrichmentPayload.from_response(identifier.kind, result))
    except (EnrichmentError, KeyError, ValueError) as exc:
        return Failure(_failure_reason(exc))


async def _record_success(record_sink, identifier: Identifier, payload: EnrichmentPayload):
    try:
        await record_sink.upsert(identifier, payload)
    except Exception as exc:
        logger.warning("Record sink failed for %s: %s", identifier.key, exc)


def _emit_progress(progress_callback: Optional[ProgressCallback], payload: dict):
    if not progress_callback:
        return
    try:
        progress_callback(payload)
    except Exception as exc:
        logger.warning("Progress callback failed: %s", exc)


async def _save_checkpoint(state: RunState, checkpoint: CheckpointStore, fingerprint: Fingerprint):
    result = await checkpoint.save(state.to_checkpoint(fingerprint))
    state.save_results.append(result)
    if result != SAVE_FAILED:
        state.last_saved_at = time.monotonic()
        state.items_since_save = 0


def _item_context(identifier: Identifier, index: Optional[WorkIndex], mode: str) -> dict:
    context: dict[str, Any] = {"mode": mode, "kind": identifier.kind}
    if index is not None:
        references = index.references.get(identifier, [])
        context["rows"] = index.rows_for(identifier)
        context["columns"] = sorted({column for _row, column in references})
    return context


async def run_batches(
    state: RunState,
    enrich: EnrichCallback,
    concurrency: int = DEFAULT_CONCURRENCY,
    index: Optional[WorkIndex] = None,
    mode: str = "",
    checkpoint: Optional[CheckpointStore] = None,
    fingerprint: Optional[Fingerprint] = None,
    record_sink=None,
    should_stop: Optional[Callable[[], bool]] = None,
    progress_callback: Optional[ProgressCallback] = None,
    save_interval_seconds: float = AUTO_SAVE_INTERVAL_SECONDS,
    save_batch_size: int = AUTO_SAVE_BATCH_SIZE,
    show_progress: bool = True,
) -> RunState:
    """
    Enrich `state.identifiers[state.next_index:]` one chunk of `concurrency` at a time.

    Every member of a chunk finishes (success or failure) before the next chunk
    starts. The stop flag is only consulted between chunks; when it is set the
    loop exits, a checkpoint is forced, and `state.stopped` is True.
    """
    chunk_size = max(1, int(concurrency))
    total = state.total
    start = state.next_index
    can_save = checkpoint is not None and fingerprint is not None
    progress = tqdm(total=total, initial=start, desc="Enrichment", unit="id", disable=not show_progress)
    started_at = time.time()

    def _snapshot(done: bool) -> dict:
        counts = state.counts()
        elapsed = max(0.001, time.time() - started_at)
        return {
            "phase": "enrich",
            "processed": counts["processed"],
            "total": total,
            "ok": counts["ok"],
            "fail": counts["failed"],
            "ratePerSec": float((counts["processed"] - start) / elapsed),
            "stopped": state.stopped,
            "done": done,
        }

    try:
        for chunk_start in range(start, total, chunk_size):
            if state.stop_requested or (should_stop is not None and should_stop()):
                state.stop_requested = True
                state.stopped = True
                break
            positions = list(range(chunk_start, min(chunk_start + chunk_size, total)))
            chunk = [state.identifiers[position] for position in positions]
            results = await asyncio.gather(*[
                _enrich_one(enrich, identifier, _item_context(identifier, index, mode))
                for identifier in chunk
            ])

            for position, identifier, outcome in zip(positions, chunk, results):
                state.outcomes[identifier.key] = outcome
                state.processed.append(position)
            state.items_since_save += len(positions)

            if record_sink is not None:
                await asyncio.gather(*[
                    _record_success(record_sink, identifier, outcome.payload)
                    for identifier, outcome in zip(chunk, results)
                    if isinstance(outcome, Success)
                ])

            if can_save and should_auto_save(
                state.last_saved_at,
                state.items_since_save,
                interval_seconds=save_interval_seconds,
                batch_size=save_batch_size,
            ):
                await _save_checkpoint(state, checkpoint, fingerprint)

            progress.update(len(positions))
            counts = state.counts()
            progress.set_postfix({"ok": counts["ok"], "fail": counts["failed"]})
            _emit_progress(progress_callback, _snapshot(done=False))
    finally:
        progress.close()

    if state.stopped and can_save:
        await _save_checkpoint(state, checkpoint, fingerprint)
    _emit_progress(progress_callback, _snapshot(done=True))
    return state


@dataclass
class RunResult:
    status: str
    tables: dict[str, RowTable] = field(default_factory=dict)
    outputs: dict[str, Path] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "outputs": {name: str(path) for name, path in self.outputs.items()},
            "counts": dict(self.counts),
            "warnings": list(self.warnings),
        }


async def _load_resume_state(
    index: WorkIndex,
    fingerprint: Fingerprint,
    checkpoint: CheckpointStore,
    warnings: list[str],
) -> RunState:
    snapshot = await checkpoint.load(fingerprint)
    if snapshot is None:
        return RunState(identifiers=index.identifiers)
    if snapshot.identifier_keys != index.keys:
        warnings.append("Saved progress does not match this input's identifiers; starting fresh.")
        return RunState(identifiers=index.identifiers)
    state = RunState.from_checkpoint(index.identifiers, snapshot)
    lost = len(snapshot.processed) - state.resumed_from
    if lost > 0:
        warnings.append(f"{lost} previously processed identifiers had no saved results and will be enriched again.")
    if state.resumed_from:
        warnings.append(f"Resumed from saved progress at {state.resumed_from}/{state.total} identifiers.")
    return state


async def _execute_run(
    table: RowTable,
    selection: ColumnSelection,
    enrich: EnrichCallback,
    output_dir: Optional[Path] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    resume: bool = True,
    checkpoint: Optional[CheckpointStore] = None,
    record_sink=None,
    blocked_hosts: Optional[list[str]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    progress_callback: Optional[ProgressCallback] = None,
    output_stem: str = "enriched",
    save_interval_seconds: float = AUTO_SAVE_INTERVAL_SECONDS,
    save_batch_size: int = AUTO_SAVE_BATCH_SIZE,
    show_progress: bool = True,
) -> RunResult:
    index = build_work_index(table, selection, blocked_hosts)
    if not index.identifiers:
        raise NoIdentifiersError("No valid identifiers found in the selected column(s).")
    fingerprint = table_fingerprint(table, selection)
    warnings: list[str] = []

    if checkpoint is not None and resume:
        state = await _load_resume_state(index, fingerprint, checkpoint, warnings)
    else:
        state = RunState(identifiers=index.identifiers)
        if checkpoint is not None:
            await checkpoint.clear()

    await run_batches(
        state,
        enrich,
        concurrency=concurrency,
        index=index,
        mode=selection.mode,
        checkpoint=checkpoint,
        fingerprint=fingerprint,
        record_sink=record_sink,
        should_stop=should_stop,
        progress_callback=progress_callback,
        save_interval_seconds=save_interval_seconds,
        save_batch_size=save_batch_size,
        show_progress=show_progress,
    )

    if SAVE_FAILED in state.save_results:
        warnings.append("Progress could not be saved at least once; an interruption may lose recent work.")

    merged = merge_outcomes(table, index, state.outcomes)
    result = RunResult(status=RUN_STOPPED if state.stopped else RUN_COMPLETED, warnings=warnings)
    if state.stopped:
        parts = partition_rows(merged, index, state.outcomes)
        result.tables = {"processed": parts.processed, "pending": parts.pending}
    else:
        result.tables = {"result": merged}
        if checkpoint is not None:
            await checkpoint.clear()

    if output_dir is not None:
        for name, part in result.tables.items():
            suffix = "" if name == "result" else f"_{name}"
            result.outputs[name] = write_table(part, Path(output_dir) / f"{output_stem}{suffix}.csv")

    result.counts = {
        **state.counts(),
        "rows": len(table.rows),
        "skippedRows": len(index.skipped),
        "excluded": index.counts.get("excluded", 0),
        "invalid": index.counts.get("invalid", 0),
        "alreadyClassified": index.counts.get("already_classified", 0),
        "resumedFrom": state.resumed_from,
        "processedRows": len(result.tables.get("processed", merged).rows),
        "pendingRows": len(result.tables["pending"].rows) if "pending" in result.tables else 0,
    }

    return result


async def run_enrichment(
    table: RowTable,
    selection: ColumnSelection,
    enrich: EnrichCallback,
    notifier=None,
    **options,
) -> RunResult:
    """
    Run the whole batch: index, enrich (resuming if possible), merge, partition.

    Structural problems (no headers, unknown column, nothing to enrich) raise
    before any enrichment call is made. The notifier gets a summary for every
    terminal outcome, including a run that raised.
    """
    try:
        result = await _execute_run(table, selection, enrich, **options)
    except Exception as exc:
        if notifier is not None:
            await notifier.notify(format_run_summary({
                "status": RUN_FAILED,
                "counts": {"rows": len(table.rows)},
                "warnings": [f"{type(exc).__name__}: {exc}"],
            }))
        raise
    if notifier is not None:
        await notifier.notify(format_run_summary(result.to_dict()))
    return result


def _install_stop_handler(state_box: dict):
    loop = asyncio.get_running_loop()

    def _request_stop():
        if not state_box.get("stop"):
            print("\nStop requested; finishing the current chunk...")
        state_box["stop"] = True

    try:
        loop.add_signal_handler(signal.SIGINT, _request_stop)
    except (NotImplementedError, RuntimeError):
        pass


async def run_pipeline_async(args):
    input_path = Path(args.input).expanduser().resolve()
    output_dir = Path(args.output).expanduser().resolve()

    print(f"Loading rows from {input_path}")
    table = read_table(input_path)
    print(f"Rows loaded: {len(table.rows):,}")

    selection = ColumnSelection(
        website_column=args.column or None,
        profile_column=args.profile_column or None,
    )
    checkpoint = CheckpointStore(db_path=Path(args.checkpoint_db) if args.checkpoint_db else None)
    stop_box = {"stop": False}
    _install_stop_handler(stop_box)

    async with EnrichmentClient(
        base_url=args.api_base_url,
        api_key=args.api_key,
        timeout_seconds=args.timeout,
        max_connections=max(1, args.concurrency),
    ) as client:
        result = await run_enrichment(
            table,
            selection,
            client,
            output_dir=output_dir,
            concurrency=args.concurrency,
            resume=not args.no_resume,
            checkpoint=checkpoint,
            record_sink=None if args.no_records else RecordStore(),
            notifier=SlackNotifier(args.slack_webhook_url) if args.slack_webhook_url else None,
            blocked_hosts=build_blocked_hosts(args.block),
            should_stop=lambda: bool(stop_box["stop"]),
            output_stem=input_path.stem or "enriched",
        )

    for warning in result.warnings:
        print(f"Warning: {warning}")
    counts = result.counts
    print(
        f"{result.status.capitalize()}: {counts['processed']}/{counts['total']} identifiers "
        f"(ok={counts['ok']}, failed={counts['failed']}), {counts['rows']:,} rows"
    )
    for name, path in result.outputs.items():
        print(f"{name.capitalize()} output: {path}")
    return result


async def show_status_async(args):
    checkpoint = CheckpointStore(db_path=Path(args.checkpoint_db) if args.checkpoint_db else None)
    info = await checkpoint.info()
    if not info:
        print("No saved progress.")
        return None
    print(
        f"Saved progress ({info['mode']} mode): {info['processed']}/{info['total']} identifiers, "
        f"ok={info['ok']}, failed={info['failed']}, saved at {info['savedAt']}"
        + (" [degraded]" if info["degraded"] else "")
    )
    return info


async def clear_checkpoint_async(args):
    checkpoint = CheckpointStore(db_path=Path(args.checkpoint_db) if args.checkpoint_db else None)
    await checkpoint.clear()
    print("Saved progress cleared.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m enrich_batch",
        description="Bulk CSV enrichment (dedup by identifier, bounded concurrency, resumable checkpoints).",
    )
    parser.add_argument("command", choices=["run", "status", "clear"], help="Pipeline command.")
    parser.add_argument("--input", default="", help="Input CSV/Parquet with website and/or Instagram columns.")
    parser.add_argument("--output", default="enrich_output", help="Output directory for CSV artifacts.")
    parser.add_argument("--column", default="", help="Website/domain column name.")
    parser.add_argument("--profile-column", default="", help="Instagram profile column name (dual mode with --column).")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY)
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS)
    parser.add_argument("--api-base-url", default=DEFAULT_API_BASE_URL)
    parser.add_argument("--api-key", default=DEFAULT_API_KEY)
    parser.add_argument("--slack-webhook-url", default=DEFAULT_SLACK_WEBHOOK_URL)
    parser.add_argument("--checkpoint-db", default="", help="Optional checkpoint database path.")
    parser.add_argument("--block", action="append", default=[], help="Extra host to exclude (repeatable).")
    parser.add_argument("--no-resume", action="store_true", help="Ignore saved progress and start fresh.")
    parser.add_argument("--no-records", action="store_true", help="Do not upsert results into the record store.")
    parser.add_argument("--log-level", default=os.getenv("ENRICH_LOG_LEVEL", "warning"))
    return parser


def main():
    args = build_parser().parse_args()
    logging.basicConfig(level=str(args.log_level).upper(), format="%(levelname)s %(name)s: %(message)s")
    if args.command == "status":
        asyncio.run(show_status_async(args))
        return
    if args.command == "clear":
        asyncio.run(clear_checkpoint_async(args))
        return
    if not args.input:
        raise SystemExit("--input is required for `run`.")
    if not args.column and not args.profile_column:
        raise SystemExit("Pass --column, --profile-column, or both.")
    try:
        asyncio.run(run_pipeline_async(args))
    except (TableError, NoIdentifiersError, FileNotFoundError) as exc:
        raise SystemExit(str(exc)) from exc
