"""Typed views over store records (leads, outbound/inbound messages, tasks)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from nurture.runtime import parse_timestamp, to_iso
from nurture.schema import (
    MessageDirection,
    NurtureStage,
    NurtureStatus,
    TaskPriority,
    leads_field_map,
    messages_field_map,
    tasks_field_map,
)


def _enum_or_none(enum_cls, value):
    if value in (None, ""):
        return None
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        return None


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value is not None else None


@dataclass(frozen=True)
class Lead:
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    timezone: Optional[str] = None
    agent_id: Optional[str] = None
    nurture_status: Optional[NurtureStatus] = None
    nurture_stage: Optional[NurtureStage] = None
    next_nurture_at: Optional[datetime] = None
    last_nurture_sent_at: Optional[datetime] = None
    nurture_locked_until: Optional[datetime] = None
    # Raw stage value as stored, kept so unknown stages can be reported.
    raw_stage: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Lead":
        f = record.get("fields", {}) or {}
        m = leads_field_map()
        raw_stage = f.get(m["NURTURE_STAGE"])
        return cls(
            id=record["id"],
            name=f.get(m["NAME"]) or None,
            phone=f.get(m["PHONE"]) or None,
            timezone=f.get(m["TIMEZONE"]) or None,
            agent_id=f.get(m["AGENT_ID"]) or None,
            nurture_status=_enum_or_none(NurtureStatus, f.get(m["NURTURE_STATUS"])),
            nurture_stage=_enum_or_none(NurtureStage, raw_stage),
            next_nurture_at=parse_timestamp(f.get(m["NEXT_NURTURE_AT"])),
            last_nurture_sent_at=parse_timestamp(f.get(m["LAST_NURTURE_SENT_AT"])),
            nurture_locked_until=parse_timestamp(f.get(m["NURTURE_LOCKED_UNTIL"])),
            raw_stage=str(raw_stage) if raw_stage not in (None, "") else None,
        )

    def is_released(self) -> bool:
        # SNOOZED leads carry no schedule until the snooze expirer sets one.
        return self.nurture_status == NurtureStatus.SNOOZED and self.next_nurture_at is not None

    def is_due(self, now: datetime) -> bool:
        if self.next_nurture_at is None or self.next_nurture_at > now:
            return False
        return self.nurture_status == NurtureStatus.ACTIVE or self.is_released()

    def is_locked(self, now: datetime) -> bool:
        return self.nurture_locked_until is not None and self.nurture_locked_until > now

    def first_name(self) -> str:
        if not self.name or not str(self.name).strip():
            return "there"
        return str(self.name).strip().split(" ")[0]


def lead_fields(**values: Any) -> Dict[str, Any]:
    """
    Build a Leads column payload from logical names.

    Enums are stored by value and datetimes as ISO strings; explicit None
    clears the column.
    """
    m = leads_field_map()
    keys = {
        "nurture_status": "NURTURE_STATUS",
        "nurture_stage": "NURTURE_STAGE",
        "next_nurture_at": "NEXT_NURTURE_AT",
        "last_nurture_sent_at": "LAST_NURTURE_SENT_AT",
        "nurture_locked_until": "NURTURE_LOCKED_UNTIL",
        "name": "NAME",
        "phone": "PHONE",
        "timezone": "TIMEZONE",
        "agent_id": "AGENT_ID",
    }
    out: Dict[str, Any] = {}
    for logical, value in values.items():
        column = m[keys[logical]]
        if isinstance(value, datetime):
            value = to_iso(value)
        elif hasattr(value, "value"):
            value = value.value
        out[column] = value
    return out


@dataclass(frozen=True)
class MessageRecord:
    direction: MessageDirection
    body: str
    created_at: datetime
    lead_id: Optional[str] = None
    is_auto: bool = False
    channel: str = "SMS"
    from_phone: Optional[str] = None
    to_phone: Optional[str] = None
    provider_message_id: Optional[str] = None

    def to_fields(self) -> Dict[str, Any]:
        m = messages_field_map()
        return {
            m["LEAD_ID"]: self.lead_id,
            m["DIRECTION"]: self.direction.value,
            m["CHANNEL"]: self.channel,
            m["BODY"]: self.body,
            m["IS_AUTO"]: self.is_auto,
            m["FROM"]: self.from_phone,
            m["TO"]: self.to_phone,
            m["PROVIDER_MESSAGE_ID"]: self.provider_message_id,
            m["CREATED_AT"]: to_iso(self.created_at),
        }


@dataclass(frozen=True)
class TaskDraft:
    lead_id: str
    title: str
    notes: str
    due_at: datetime
    priority: TaskPriority = TaskPriority.HIGH
    agent_id: Optional[str] = None

    def to_fields(self, created_at: datetime) -> Dict[str, Any]:
        m = tasks_field_map()
        return {
            m["LEAD_ID"]: self.lead_id,
            m["AGENT_ID"]: self.agent_id,
            m["TITLE"]: self.title,
            m["NOTES"]: self.notes,
            m["DUE_AT"]: _iso_or_none(self.due_at),
            m["PRIORITY"]: self.priority.value,
            m["IS_COMPLETED"]: False,
            m["CREATED_AT"]: to_iso(created_at),
        }
