# nurture/inbound.py
"""
Inbound reply handler (provider-agnostic core).

    sender phone → lead lookup → classify → route
      → status write (first, so STOP sticks even if later steps fail)
      → inbound message log → agent task → optional HOT LEAD alert

Store failures raise StoreError so the provider webhook is retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from nurture.config import settings
from nurture.datastore import Repository
from nurture.errors import TransportError, ValidationError
from nurture.intent import classify
from nurture.models import Lead, MessageRecord
from nurture.router import route
from nurture.runtime import get_logger, last_10_digits, normalize_phone, utc_now
from nurture.schema import Intent, MessageDirection
from nurture.sweep import Transport

logger = get_logger("inbound")


@dataclass(frozen=True)
class InboundResult:
    intent: Intent
    lead_id: Optional[str] = None
    matched: Optional[str] = None
    status_update: Optional[Dict[str, Any]] = None
    message_id: Optional[str] = None
    task_id: Optional[str] = None
    alert_sent: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "lead_id": self.lead_id,
            "matched": self.matched,
            "status_update": self.status_update,
            "message_id": self.message_id,
            "task_id": self.task_id,
            "alert_sent": self.alert_sent,
        }


def _alert_text(lead: Lead, from_phone: str, body: str) -> str:
    return f'HOT LEAD: {lead.name or from_phone} replied:\n"{body}"'


def _send_agent_alert(transport: Optional[Transport], lead: Lead, from_phone: str, body: str) -> bool:
    alert_to = normalize_phone(settings().AGENT_ALERT_NUMBER)
    if not (transport and alert_to):
        return False
    try:
        transport.send(alert_to, _alert_text(lead, from_phone, body))
    except TransportError as exc:
        logger.error("Agent alert failed for lead %s: %s", lead.id, exc)
        return False
    logger.info("🔥 Agent alerted for lead %s", lead.id)
    return True


def handle_inbound(
    repository: Repository,
    from_phone: str,
    text: Optional[str],
    *,
    transport: Optional[Transport] = None,
    to_phone: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InboundResult:
    """Classify one inbound SMS and apply its routing decision to the matched lead."""
    now = now or utc_now()
    if not last_10_digits(from_phone):
        raise ValidationError(f"Invalid from phone {from_phone!r}")
    sender = normalize_phone(from_phone) or from_phone
    body = text or ""

    lead = repository.find_lead_by_phone(sender)
    classified = classify(body)

    status_update = None
    task = None
    if lead is not None:
        decision = route(lead, classified.intent, body, now=now)
        status_update = decision.status_update
        task = decision.task
        if status_update:
            repository.update_lead(lead.id, status_update)
    else:
        logger.info("No lead matched inbound from %s (intent=%s)", sender, classified.intent.value)

    message = repository.insert_message(
        MessageRecord(
            direction=MessageDirection.INBOUND,
            body=body,
            created_at=now,
            lead_id=lead.id if lead else None,
            from_phone=sender,
            to_phone=to_phone,
            provider_message_id=provider_message_id,
        )
    )

    task_id = None
    if task is not None:
        task_id = repository.insert_task(task, now)["id"]

    alert_sent = False
    if lead is not None and classified.intent == Intent.POSITIVE:
        alert_sent = _send_agent_alert(transport, lead, sender, body)

    logger.info(
        "📥 Inbound from=%s lead=%s intent=%s matched=%s task=%s",
        sender,
        lead.id if lead else None,
        classified.intent.value,
        classified.matched,
        task_id,
    )
    return InboundResult(
        intent=classified.intent,
        lead_id=lead.id if lead else None,
        matched=classified.matched,
        status_update=status_update,
        message_id=message.get("id"),
        task_id=task_id,
        alert_sent=alert_sent,
    )


__all__ = ["InboundResult", "handle_inbound"]
