"""
Nurture Engine: FastAPI app
- Inbound SMS webhooks (Twilio / SignalWire / Telnyx)
- CRON-triggered run-once jobs under /jobs
- Health endpoints
"""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from nurture.config import env_int, env_str, settings
from nurture.datastore import DataConnector
from nurture.inbound_webhook import router as inbound_router
from nurture.jobs import router as jobs_router
from nurture.runtime import configure_logging, iso_now

configure_logging()

app = FastAPI(title="SMS Nurture Engine", version="0.1.0")
app.include_router(inbound_router)  # → /inbound, /telnyx-inbound, ...
app.include_router(jobs_router)  # → /jobs/...


@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": iso_now()}


@app.get("/health")
async def health():
    s = settings()
    return {
        "ok": True,
        "timestamp": iso_now(),
        "timezone": s.NURTURE_TZ,
        "store": "memory" if DataConnector(s).in_memory else "airtable",
        "transport_dry_run": s.TRANSPORT_DRY_RUN,
    }


def run() -> None:
    """Serve the app (``nurture-api`` console script)."""
    uvicorn.run(
        "nurture.main:app",
        host=env_str("HOST", "0.0.0.0"),
        port=env_int("PORT", 8000),
        log_level=(env_str("NURTURE_LOG_LEVEL", "info") or "info").lower(),
    )


if __name__ == "__main__":
    run()
