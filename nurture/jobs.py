# nurture/jobs.py
"""
🧠 Scheduled Job Router
-----------------------
Run-once triggers for the nurture sweep and the snooze expirer, callable by
an external scheduler over HTTP or from the command line:

    POST /jobs/nurture-cycle
    POST /jobs/expire-snoozes?apply=true|dry_run=true
    python -m nurture.jobs nurture-cycle | expire-snoozes [--apply]
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from nurture.config import settings
from nurture.datastore import Repository
from nurture.errors import StoreError
from nurture.runtime import configure_logging, get_logger, iso_now
from nurture.sender import TelnyxSender
from nurture.snooze import expire_snoozes
from nurture.sweep import run_nurture_cycle

log = get_logger("jobs")

router = APIRouter(prefix="/jobs", tags=["jobs"])


# -------------------------------------------------------------------
# Auth Guard
# -------------------------------------------------------------------
def _extract_token(request: Request, qp_token: Optional[str], h_cron: Optional[str]) -> str:
    if qp_token:
        return qp_token
    if h_cron:
        return h_cron
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1]
    return ""


def require_cron(
    request: Request,
    token: Optional[str] = Query(default=None),
    x_cron_token: Optional[str] = Header(default=None),
) -> None:
    """Require CRON_TOKEN in header, query, or bearer token."""
    expected = settings().CRON_TOKEN
    if not expected:
        return
    provided = _extract_token(request, token, x_cron_token)
    if provided != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def _std_envelope(ok: bool, typ: str, payload: Dict[str, Any], started_at: float) -> Dict[str, Any]:
    return {
        "ok": ok,
        "type": typ,
        "server_now": iso_now(),
        "duration_ms": int((time.time() - started_at) * 1000),
        **(payload or {}),
    }


def nurture_cycle_job(repository: Optional[Repository] = None, transport: Optional[TelnyxSender] = None) -> Dict[str, Any]:
    """One sweep with per-invocation clients. StoreError on the due list propagates."""
    started = time.time()
    repository = repository or Repository.from_settings()
    if transport is not None:
        result = run_nurture_cycle(repository, transport)
    else:
        with TelnyxSender.from_settings() as sender:
            result = run_nurture_cycle(repository, sender)
    return _std_envelope(True, "nurture-cycle", result.as_dict(), started)


def expire_snoozes_job(repository: Optional[Repository] = None, *, apply: bool = False) -> Dict[str, Any]:
    started = time.time()
    result = expire_snoozes(repository or Repository.from_settings(), apply=apply)
    return _std_envelope(True, "expire-snoozes", result.as_dict(), started)


def _store_failure(typ: str, exc: StoreError, started_at: float) -> JSONResponse:
    log.error("❌ Job %s aborted: %s", typ, exc)
    body = _std_envelope(False, typ, {"error": str(exc), "action": exc.action, "table": exc.table}, started_at)
    return JSONResponse(status_code=503, content=body)


# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------
@router.post("/nurture-cycle", dependencies=[Depends(require_cron)])
def nurture_cycle_route():
    started = time.time()
    try:
        return nurture_cycle_job()
    except StoreError as exc:
        return _store_failure("nurture-cycle", exc, started)


@router.post("/expire-snoozes", dependencies=[Depends(require_cron)])
def expire_snoozes_route(
    apply: bool = Query(default=False),
    dry_run: bool = Query(default=False),
    dry: bool = Query(default=False),
):
    """Dry-run by default; ``apply=true`` schedules the expired leads now. ``dry_run`` wins over ``apply``."""
    started = time.time()
    if dry_run or dry:
        apply = False
    try:
        return expire_snoozes_job(apply=apply)
    except StoreError as exc:
        return _store_failure("expire-snoozes", exc, started)


# -------------------------------------------------------------------
# CLI
# -------------------------------------------------------------------
def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="nurture.jobs", description="Run one nurture job and exit.")
    sub = parser.add_subparsers(dest="job", required=True)
    sub.add_parser("nurture-cycle", help="Send due nurture messages once")
    snooze = sub.add_parser("expire-snoozes", help="List (or apply) expired snoozes")
    snooze.add_argument("--apply", action="store_true", help="Schedule expired leads for now")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        if args.job == "nurture-cycle":
            out = nurture_cycle_job()
        else:
            out = expire_snoozes_job(apply=args.apply)
    except StoreError as exc:
        log.error("❌ Job %s aborted: %s", args.job, exc)
        print(json.dumps({"ok": False, "type": args.job, "error": str(exc)}))
        return 1
    print(json.dumps(out, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
