#!/usr/bin/env python3
"""
Bulk Enrichment API — FastAPI + Polars
Upload a CSV, pick the website and/or Instagram column, and run a resumable
enrichment job with stop, progress and processed/pending downloads.
"""

import argparse
import asyncio
import io
import os
import sys
import time
import traceback
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from checkpoint_store import CheckpointStore
from enrich_batch.pipeline import DEFAULT_CONCURRENCY, run_enrichment
from enrich_batch.table import RowTable, TableError, parse_table, serialize_table
from enrich_batch.work_index import ColumnSelection, build_work_index
from enrichment_client import EnrichmentClient, SlackNotifier
from identifiers import build_blocked_hosts
from record_store import RecordStore

app = FastAPI(title="Bulk Enrichment")

APP_BASE_DIR = Path(__file__).resolve().parent


def _resolve_data_dir_from_env() -> Path:
    raw = str(os.getenv("ENRICH_DATA_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser()
    if getattr(sys, "frozen", False):
        return Path.home() / ".bulk-enrich"
    return APP_BASE_DIR


DATA_DIR = _resolve_data_dir_from_env()
APP_BOOT_TS = time.time()

MAX_UPLOAD_BYTES = 50 * 1024 * 1024
MAX_CONCURRENCY = 50
JOB_STORE: dict[str, dict] = {}
ACTIVE_STATUSES = {"running", "stopping"}
DOWNLOAD_PARTS = {"result", "processed", "pending"}


def _refresh_data_paths_from_env() -> None:
    global DATA_DIR
    DATA_DIR = _resolve_data_dir_from_env()


def _checkpoint_store() -> CheckpointStore:
    return CheckpointStore(db_path=DATA_DIR / "checkpoints.db")


def _record_store() -> RecordStore:
    return RecordStore(db_path=DATA_DIR / "enrichment_records.db")


def _build_enricher() -> EnrichmentClient:
    return EnrichmentClient()


def _build_notifier() -> Optional[SlackNotifier]:
    notifier = SlackNotifier()
    return notifier if notifier.enabled else None


@app.get("/api/health")
async def health():
    active = sum(1 for job in JOB_STORE.values() if job.get("status") in ACTIVE_STATUSES)
    return {
        "status": "ok",
        "uptimeSeconds": round(time.time() - APP_BOOT_TS, 1),
        "activeJobs": active,
    }


@app.on_event("startup")
async def startup_event():
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def ensure_csv_filename(file_name: Optional[str]) -> None:
    if not file_name or not str(file_name).lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only CSV files are supported.")


async def read_upload_bytes(file: UploadFile, max_bytes: int = MAX_UPLOAD_BYTES) -> bytes:
    buf = io.BytesIO()
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(status_code=413, detail=f"File too large (max {max_bytes // (1024 * 1024)} MB).")
        buf.write(chunk)
    return buf.getvalue()


def _parse_form_bool(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _parse_blocked_hosts_payload(payload: Optional[str]) -> list[str]:
    raw = str(payload or "").replace("\n", ",")
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _serialize_job(job: dict, include_result: bool = True) -> dict[str, Any]:
    payload = {
        "jobId": job.get("jobId"),
        "status": job.get("status"),
        "message": job.get("message", ""),
        "processed": int(job.get("processed", 0)),
        "total": int(job.get("total", 0)),
        "ok": int(job.get("ok", 0)),
        "fail": int(job.get("fail", 0)),
        "ratePerSec": float(job.get("ratePerSec", 0.0)),
        "progress": float(job.get("progress", 0.0)),
        "stopRequested": bool(job.get("stopRequested")),
        "mode": job.get("mode", ""),
        "startedAt": job.get("startedAt"),
        "finishedAt": job.get("finishedAt"),
        "error": job.get("error", ""),
        "parts": sorted((job.get("tables") or {}).keys()),
    }
    if include_result:
        payload["result"] = job.get("result")
    return payload


def _get_job(job_id: str) -> dict:
    job = JOB_STORE.get(str(job_id or ""))
    if not isinstance(job, dict):
        raise HTTPException(status_code=404, detail="Unknown enrichment job.")
    return job


async def _run_enrich_job(
    job_id: str,
    table: RowTable,
    selection: ColumnSelection,
    concurrency: int,
    resume: bool,
    blocked_hosts: list[str],
) -> None:
    job = JOB_STORE[job_id]

    def _on_progress(payload: dict) -> None:
        processed = int(payload.get("processed", 0))
        total = int(payload.get("total", 0))
        job.update({
            "processed": processed,
            "total": total,
            "ok": int(payload.get("ok", 0)),
            "fail": int(payload.get("fail", 0)),
            "ratePerSec": float(payload.get("ratePerSec", 0.0)),
            "progress": min(processed / max(total, 1), 1.0),
            "message": f"Enriching ({processed}/{total})...",
        })

    try:
        async with _build_enricher() as enrich:
            result = await run_enrichment(
                table,
                selection,
                enrich,
                concurrency=concurrency,
                resume=resume,
                checkpoint=_checkpoint_store(),
                record_sink=_record_store(),
                notifier=_build_notifier(),
                blocked_hosts=blocked_hosts,
                should_stop=lambda: bool(job.get("stopRequested")),
                progress_callback=_on_progress,
                show_progress=False,
            )
        stopped = result.status == "stopped"
        job.update({
            "status": result.status,
            "message": (
                "Stopped. Processed and pending rows are ready to download."
                if stopped
                else "Enrichment complete."
            ),
            "progress": 1.0 if not stopped else job.get("progress", 0.0),
            "finishedAt": time.time(),
            "tables": result.tables,
            "result": result.to_dict(),
        })
    except Exception as exc:
        job.update({
            "status": "error",
            "message": "Enrichment failed.",
            "error": f"{type(exc).__name__}: {exc}",
            "finishedAt": time.time(),
        })
        traceback.print_exc()


@app.post("/api/enrich/start")
async def enrich_start(
    file: UploadFile = File(...),
    websiteColumn: str = Form(""),
    profileColumn: str = Form(""),
    concurrency: int = Form(DEFAULT_CONCURRENCY),
    resume: str = Form("true"),
    blockedHosts: str = Form(""),
):
    """Start a background enrichment job for an uploaded CSV."""
    if any(job.get("status") in ACTIVE_STATUSES for job in JOB_STORE.values()):
        raise HTTPException(status_code=409, detail="An enrichment job is already running. Stop it before starting another.")

    ensure_csv_filename(file.filename)
    raw = await read_upload_bytes(file)
    try:
        table = parse_table(raw.decode("utf-8-sig", errors="replace"))
    except TableError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    selection = ColumnSelection(
        website_column=websiteColumn.strip() or None,
        profile_column=profileColumn.strip() or None,
    )
    blocked_hosts = build_blocked_hosts(_parse_blocked_hosts_payload(blockedHosts))
    try:
        index = build_work_index(table, selection, blocked_hosts)
    except TableError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not index.identifiers:
        raise HTTPException(status_code=400, detail="No valid identifiers found in the selected column(s).")

    job_id = uuid4().hex
    JOB_STORE[job_id] = {
        "jobId": job_id,
        "status": "running",
        "message": "Preparing enrichment job...",
        "processed": 0,
        "total": len(index.identifiers),
        "ok": 0,
        "fail": 0,
        "ratePerSec": 0.0,
        "progress": 0.0,
        "stopRequested": False,
        "mode": selection.mode,
        "startedAt": time.time(),
        "finishedAt": None,
        "error": "",
        "tables": {},
        "result": None,
        "fileName": file.filename,
    }
    asyncio.create_task(
        _run_enrich_job(
            job_id=job_id,
            table=table,
            selection=selection,
            concurrency=max(1, min(int(concurrency), MAX_CONCURRENCY)),
            resume=_parse_form_bool(resume),
            blocked_hosts=blocked_hosts,
        )
    )
    payload = _serialize_job(JOB_STORE[job_id], include_result=False)
    payload["skippedRows"] = len(index.skipped)
    return payload


@app.get("/api/enrich/progress")
async def enrich_progress(jobId: str):
    return _serialize_job(_get_job(jobId), include_result=True)


@app.post("/api/enrich/stop")
async def enrich_stop(jobId: str = Form(...)):
    """Ask a running job to stop after its current chunk."""
    job = _get_job(jobId)
    if job.get("status") in ACTIVE_STATUSES:
        job["stopRequested"] = True
        job["status"] = "stopping"
        job["message"] = "Stop requested. Finishing the current chunk..."
    return _serialize_job(job, include_result=False)


@app.get("/api/enrich/download")
async def enrich_download(jobId: str, part: str = "result"):
    job = _get_job(jobId)
    if part not in DOWNLOAD_PARTS:
        raise HTTPException(status_code=400, detail=f"Unknown part: {part}")
    table = (job.get("tables") or {}).get(part)
    if table is None:
        raise HTTPException(status_code=404, detail=f"No {part} output for this job.")
    stem = Path(str(job.get("fileName") or "enriched.csv")).stem or "enriched"
    suffix = "" if part == "result" else f"_{part}"
    buf = io.BytesIO(serialize_table(table).encode("utf-8"))
    return StreamingResponse(
        buf,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={stem}{suffix}.csv"},
    )


@app.get("/api/checkpoint")
async def checkpoint_info():
    """Describe saved progress, if any."""
    info = await _checkpoint_store().info()
    if not info:
        return {"exists": False}
    return {"exists": True, **info}


@app.post("/api/checkpoint/clear")
async def checkpoint_clear():
    await _checkpoint_store().clear()
    return {"status": "success", "message": "Saved progress cleared"}


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the bulk enrichment API server.")
    parser.add_argument("--host", default=os.getenv("ENRICH_HOST", "127.0.0.1"), help="Bind host")
    parser.add_argument("--port", type=int, default=int(os.getenv("ENRICH_PORT", "8000")), help="Bind port")
    parser.add_argument("--data-dir", default=str(_resolve_data_dir_from_env()), help="Writable data directory")
    parser.add_argument("--log-level", default=os.getenv("ENRICH_LOG_LEVEL", "info"), help="uvicorn log level")
    return parser


def main() -> None:
    args = _build_arg_parser().parse_args()
    os.environ["ENRICH_DATA_DIR"] = str(args.data_dir)
    _refresh_data_paths_from_env()
    import uvicorn

    uvicorn.run(
        app,
        host=str(args.host),
        port=int(args.port),
        log_level=str(args.log_level).lower(),
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":
    main()
