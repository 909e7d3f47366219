# nurture/router.py
"""
Nurture Router
--------------
Maps a classified inbound intent onto the lead's nurture record.

    STOP      → STOPPED, schedule + lock cleared
    POSITIVE  → ENGAGED, schedule + lock cleared, high-priority task for the agent
    NOT_NOW   → ACTIVE on the LONG_TERM stage, next touch in NOT_NOW_DAYS
    NEGATIVE  → CLOSED, schedule + lock cleared
    QUESTION / UNKNOWN → no change

The router is pure: it returns the write to apply and never talks to the
store. Applying the same intent to the same lead snapshot yields the same
status write; suppressing a second task is up to the caller.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from nurture.config import settings
from nurture.models import Lead, TaskDraft, lead_fields
from nurture.runtime import get_logger, utc_now
from nurture.schema import Intent, NurtureStage, NurtureStatus, TaskPriority, leads_field_map

logger = get_logger("router")


@dataclass(frozen=True)
class RouteDecision:
    intent: Intent
    status_update: Optional[Dict[str, Any]] = None
    task: Optional[TaskDraft] = None

    @property
    def changed(self) -> bool:
        return bool(self.status_update)


def _close_out(status: NurtureStatus) -> Dict[str, Any]:
    return lead_fields(nurture_status=status, next_nurture_at=None, nurture_locked_until=None)


def _hot_task(lead: Lead, body: str, now: datetime) -> TaskDraft:
    who = lead.name or lead.phone or lead.id
    return TaskDraft(
        lead_id=lead.id,
        agent_id=lead.agent_id,
        title=f"Follow up with {who} (hot reply)",
        notes=f'Lead replied: "{(body or "").strip()}"',
        due_at=now,
        priority=TaskPriority.HIGH,
    )


def route(lead: Lead, intent: Intent, message_body: str, *, now: Optional[datetime] = None) -> RouteDecision:
    """Decide the nurture write (and optional task) for one inbound reply."""
    now = now or utc_now()

    if intent == Intent.STOP:
        decision = RouteDecision(intent, _close_out(NurtureStatus.STOPPED))
    elif intent == Intent.POSITIVE:
        decision = RouteDecision(intent, _close_out(NurtureStatus.ENGAGED), _hot_task(lead, message_body, now))
    elif intent == Intent.NOT_NOW:
        update = lead_fields(
            nurture_status=NurtureStatus.ACTIVE,
            nurture_stage=NurtureStage.LONG_TERM,
            next_nurture_at=now + timedelta(days=settings().NOT_NOW_DAYS),
            nurture_locked_until=None,
        )
        decision = RouteDecision(intent, update)
    elif intent == Intent.NEGATIVE:
        decision = RouteDecision(intent, _close_out(NurtureStatus.CLOSED))
    else:
        decision = RouteDecision(intent)

    logger.info(
        "Routed lead=%s intent=%s status=%s task=%s",
        lead.id,
        intent.value,
        (decision.status_update or {}).get(leads_field_map()["NURTURE_STATUS"], "unchanged"),
        bool(decision.task),
    )
    return decision


__all__ = ["RouteDecision", "route"]
