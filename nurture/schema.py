"""
Central nurture schema: enumerations plus table/field definitions.

Business logic imports the logical keys from here instead of hard-coding
Airtable column names. Environment variables can override individual field
names (to align with custom base copies), but the defaults here reflect the
live schema.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents a store column.

    Args:
        default: Canonical column name.
        env_vars: Ordered env vars that can override the column name
                  (first non-empty wins).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key].resolve()

    def field_names(self) -> Dict[str, str]:
        return {key: f.resolve() for key, f in self.fields.items()}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class NurtureStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SNOOZED = "SNOOZED"
    ENGAGED = "ENGAGED"
    STOPPED = "STOPPED"
    CLOSED = "CLOSED"


class NurtureStage(str, Enum):
    DAY_1 = "DAY_1"
    DAY_2 = "DAY_2"
    DAY_3 = "DAY_3"
    DAY_5 = "DAY_5"
    DAY_7 = "DAY_7"
    LONG_TERM = "LONG_TERM"


class Intent(str, Enum):
    STOP = "STOP"
    POSITIVE = "POSITIVE"
    NOT_NOW = "NOT_NOW"
    NEGATIVE = "NEGATIVE"
    # Reserved: no detector produces it yet.
    QUESTION = "QUESTION"
    UNKNOWN = "UNKNOWN"


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

LEADS_TABLE = TableDefinition(
    default="Leads",
    env_vars=("LEADS_TABLE",),
    fields={
        "NAME": FieldDefinition("name", ("LEAD_NAME_FIELD",)),
        "PHONE": FieldDefinition("phone", ("LEAD_PHONE_FIELD",)),
        "TIMEZONE": FieldDefinition("timezone"),
        "AGENT_ID": FieldDefinition("agent_id"),
        "NURTURE_STATUS": FieldDefinition("nurture_status"),
        "NURTURE_STAGE": FieldDefinition("nurture_stage"),
        "NEXT_NURTURE_AT": FieldDefinition("next_nurture_at"),
        "LAST_NURTURE_SENT_AT": FieldDefinition("last_nurture_sent_at"),
        "NURTURE_LOCKED_UNTIL": FieldDefinition("nurture_locked_until"),
    },
)

MESSAGES_TABLE = TableDefinition(
    default="Messages",
    env_vars=("MESSAGES_TABLE",),
    fields={
        "LEAD_ID": FieldDefinition("lead_id"),
        "DIRECTION": FieldDefinition("direction"),
        "CHANNEL": FieldDefinition("channel"),
        "BODY": FieldDefinition("body"),
        "IS_AUTO": FieldDefinition("is_auto"),
        "FROM": FieldDefinition("from_phone"),
        "TO": FieldDefinition("to_phone"),
        "PROVIDER_MESSAGE_ID": FieldDefinition("provider_message_id"),
        "CREATED_AT": FieldDefinition("created_at"),
    },
)

TASKS_TABLE = TableDefinition(
    default="Tasks",
    env_vars=("TASKS_TABLE",),
    fields={
        "LEAD_ID": FieldDefinition("lead_id"),
        "AGENT_ID": FieldDefinition("agent_id"),
        "TITLE": FieldDefinition("title"),
        "NOTES": FieldDefinition("notes"),
        "DUE_AT": FieldDefinition("due_at"),
        "PRIORITY": FieldDefinition("priority"),
        "IS_COMPLETED": FieldDefinition("is_completed"),
        "CREATED_AT": FieldDefinition("created_at"),
    },
)


def leads_field_map() -> Dict[str, str]:
    return LEADS_TABLE.field_names()


def messages_field_map() -> Dict[str, str]:
    return MESSAGES_TABLE.field_names()


def tasks_field_map() -> Dict[str, str]:
    return TASKS_TABLE.field_names()
