# nurture/sweep.py
"""
Nurture Sweep
-------------
One invocation of the scheduled follow-up loop:

    due leads → claim → render stage template → send → log message → advance stage

Leads are processed on a bounded worker pool. A per-lead failure is recorded
and never aborts the batch; only a failure reading the due list propagates.
"""

from __future__ import annotations

import random
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from nurture.config import settings
from nurture.datastore import Repository
from nurture.errors import NurtureError, StoreError, TransportError, ValidationError
from nurture.models import Lead, MessageRecord, lead_fields
from nurture.runtime import get_logger, normalize_phone, utc_now
from nurture.schema import MessageDirection, NurtureStage, NurtureStatus
from nurture.templates import render_stage
from nurture.timing import next_stage, resolve_tz

logger = get_logger("sweep")

SENT = "sent"
SKIPPED = "skipped"


class Transport(Protocol):
    def send(self, to: str, text: str) -> Any:
        ...


@dataclass
class SweepResult:
    sent: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    stopped_early: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "stopped_early": self.stopped_early,
        }


def _current_stage(lead: Lead) -> Optional[NurtureStage]:
    # A lead that was never staged starts the loop at DAY_1.
    if lead.nurture_stage is None and lead.raw_stage is None:
        return NurtureStage.DAY_1
    return lead.nurture_stage


def _process_lead(
    repository: Repository,
    transport: Transport,
    lead: Lead,
    now: datetime,
    clock: Callable[[], datetime],
    rng: Optional[random.Random],
) -> str:
    cfg = settings()
    claimed = repository.claim_lead(lead.id, now, timedelta(seconds=cfg.CLAIM_TTL_SEC))
    if claimed is None:
        logger.info("Lead %s already claimed or no longer due; skipping", lead.id)
        return SKIPPED

    stage = _current_stage(claimed)
    try:
        to = normalize_phone(claimed.phone)
        if not to:
            raise ValidationError(f"Invalid phone {claimed.phone!r}")
        body = render_stage(stage, claimed, cfg.AGENT_NAME)
        result = transport.send(to, body)
    except ValidationError:
        # Never retried; parked out of the due list.
        repository.park_lead(claimed.id)
        raise
    except TransportError:
        repository.release_claim(claimed.id)
        raise

    sent_at = clock()
    message = MessageRecord(
        direction=MessageDirection.OUTBOUND,
        body=body,
        created_at=sent_at,
        lead_id=claimed.id,
        is_auto=True,
        from_phone=cfg.TELNYX_FROM_NUMBER,
        to_phone=to,
        provider_message_id=getattr(result, "provider_message_id", None),
    )
    try:
        repository.insert_message(message)
    except StoreError as exc:
        logger.error("Outbound message log failed for lead %s: %s", claimed.id, exc)

    successor = next_stage(stage, sent_at, tz=resolve_tz(claimed.timezone), rng=rng)
    if successor.terminal:
        update = lead_fields(
            nurture_status=NurtureStatus.ACTIVE,
            last_nurture_sent_at=sent_at,
            next_nurture_at=None,
            nurture_locked_until=None,
        )
    else:
        update = lead_fields(
            nurture_status=NurtureStatus.ACTIVE,
            last_nurture_sent_at=sent_at,
            next_nurture_at=successor.send_at,
            nurture_stage=successor.stage,
            nurture_locked_until=None,
        )
    if not repository.advance_if_claimed(claimed.id, claimed.nurture_locked_until, update, sent_at):
        return SENT
    logger.info(
        "✅ Nurture sent lead=%s stage=%s next=%s at=%s",
        claimed.id,
        stage.value,
        successor.stage.value if successor.stage else "-",
        successor.send_at.isoformat() if successor.send_at else "-",
    )
    return SENT


def run_nurture_cycle(
    repository: Repository,
    transport: Transport,
    *,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    max_workers: Optional[int] = None,
    rng: Optional[random.Random] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> SweepResult:
    """
    Send the current stage to every due lead and advance it.

    Raises StoreError only when the due list cannot be read. Everything that
    goes wrong for a single lead lands in ``SweepResult.errors``.
    """
    cfg = settings()
    fixed_now = now
    now = now or utc_now()
    clock: Callable[[], datetime] = (lambda: fixed_now) if fixed_now is not None else utc_now
    batch = cfg.SWEEP_BATCH_SIZE if limit is None else limit
    workers = max(1, max_workers or cfg.SWEEP_MAX_WORKERS)

    started = time.time()
    due = repository.due_leads(now, batch)
    result = SweepResult()
    if not due:
        logger.info("No due leads at %s", now.isoformat())
        return result

    futures: Dict[Future, Lead] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nurture") as pool:
        for lead in due:
            if should_stop and should_stop():
                result.stopped_early = True
                logger.warning("Sweep stop requested; %d leads not submitted", len(due) - len(futures))
                break
            futures[pool.submit(_process_lead, repository, transport, lead, now, clock, rng)] = lead

    for fut, lead in futures.items():
        try:
            outcome = fut.result()
        except ValidationError as exc:
            logger.warning("Skipping lead %s: %s", lead.id, exc)
            result.skipped += 1
            continue
        except NurtureError as exc:
            logger.error("Nurture failed for lead %s: %s", lead.id, exc)
            result.errors.append({"lead_id": lead.id, "error": str(exc), "type": type(exc).__name__})
            continue
        except Exception as exc:
            logger.exception("Unexpected error for lead %s", lead.id)
            result.errors.append({"lead_id": lead.id, "error": str(exc), "type": type(exc).__name__})
            continue
        if outcome == SENT:
            result.sent += 1
        else:
            result.skipped += 1

    logger.info(
        "Sweep done: sent=%d skipped=%d errors=%d in %dms",
        result.sent,
        result.skipped,
        len(result.errors),
        int((time.time() - started) * 1000),
    )
    return result


__all__ = ["SweepResult", "Transport", "run_nurture_cycle"]
