"""Airtable-backed nurture store with an in-memory table for local runs and tests."""

from __future__ import annotations

import itertools
import re
import threading
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import requests
from pyairtable import Api

from nurture.config import Settings, settings
from nurture.errors import StoreError
from nurture.models import Lead, MessageRecord, TaskDraft, lead_fields
from nurture.runtime import get_logger, iso_now, last_10_digits, parse_timestamp, retry, to_iso
from nurture.schema import (
    LEADS_TABLE,
    MESSAGES_TABLE,
    TASKS_TABLE,
    NurtureStatus,
    leads_field_map,
    tasks_field_map,
)

T = TypeVar("T")

logger = get_logger(__name__)

LEAD_FIELDS = leads_field_map()
TASK_FIELDS = tasks_field_map()

_RETRYABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionResetError)
_FORMULA_EQ = re.compile(r"\{([^}]+)\}\s*=\s*'([^']*)'")


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{next(self._sequence)}"
            record = {"id": record_id, "fields": dict(fields)}
            self._records[record_id] = record
            return _copy(record)

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return _copy(self._records[record_id])

    def batch_update(self, records: Sequence[Dict[str, Any]]):
        return [self.update(r["id"], r["fields"]) for r in records]

    def get(self, record_id: str):
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            return _copy(record)

    def all(self, **kwargs):
        with self._lock:
            records = [_copy(r) for r in self._records.values()]
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        if max_records is not None:
            records = records[: int(max_records)]
        return records


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": record["id"], "fields": dict(record.get("fields", {}))}


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    """Supports AND-ed ``{Field}='value'`` equalities, which is all this module emits."""
    matches = _FORMULA_EQ.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, expected in matches:
        if str(fields.get(field_name)) != expected:
            return False
    return True


def _eq_formula(**columns: str) -> str:
    parts = [f"{{{name}}}='{value}'" for name, value in columns.items()]
    return parts[0] if len(parts) == 1 else "AND(" + ", ".join(parts) + ")"


def _not_after(column: str, when: datetime) -> str:
    return f"NOT(IS_AFTER({{{column}}}, DATETIME_PARSE('{to_iso(when)}')))"


def _due_formula(now: datetime) -> str:
    """Airtable filter matching ``Lead.is_due`` and an unlocked lead at ``now``."""
    status = LEAD_FIELDS["NURTURE_STATUS"]
    next_at = LEAD_FIELDS["NEXT_NURTURE_AT"]
    locked = LEAD_FIELDS["NURTURE_LOCKED_UNTIL"]
    return (
        "AND("
        f"OR({{{status}}}='{NurtureStatus.ACTIVE.value}', {{{status}}}='{NurtureStatus.SNOOZED.value}'), "
        f"{{{next_at}}}!='', "
        f"{_not_after(next_at, now)}, "
        f"OR({{{locked}}}='', {_not_after(locked, now)})"
        ")"
    )


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    table_name: str
    last_error: Optional[Dict[str, Any]] = dataclass_field(default=None)


# ============================================================
# CONNECTOR
# ============================================================

# In-memory tables outlive a single connector so every invocation sees the same data.
_MEMORY_TABLES: Dict[str, InMemoryTable] = {}
_MEMORY_GUARD = threading.Lock()


def _memory_table(name: str) -> InMemoryTable:
    with _MEMORY_GUARD:
        if name not in _MEMORY_TABLES:
            _MEMORY_TABLES[name] = InMemoryTable(name)
        return _MEMORY_TABLES[name]


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or settings()
        self._tables: Dict[str, TableHandle] = {}
        self._api: Optional[Api] = None

    @property
    def in_memory(self) -> bool:
        c = self.config
        return c.FORCE_IN_MEMORY or not (c.AIRTABLE_API_KEY and c.AIRTABLE_BASE_ID)

    def _table(self, table_name: str) -> TableHandle:
        if table_name in self._tables:
            return self._tables[table_name]

        if self.in_memory:
            handle = TableHandle(_memory_table(table_name), True, table_name)
        else:
            if self._api is None:
                timeout = self.config.STORE_TIMEOUT_SEC
                self._api = Api(self.config.AIRTABLE_API_KEY, timeout=(timeout, timeout))
            handle = TableHandle(self._api.table(self.config.AIRTABLE_BASE_ID, table_name), False, table_name)
        self._tables[table_name] = handle
        return handle

    def leads(self) -> TableHandle:
        return self._table(LEADS_TABLE.name())

    def messages(self) -> TableHandle:
        return self._table(MESSAGES_TABLE.name())

    def tasks(self) -> TableHandle:
        return self._table(TASKS_TABLE.name())


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if v not in (None, "", [], {}, ())}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    payload: Dict[str, Any] = {"action": action, "error": str(exc), "timestamp": iso_now()}
    if response is not None:
        status = getattr(response, "status_code", "unknown")
        payload.update({"status": status, "body": getattr(response, "text", "")})
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, payload["body"])
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)
    handle.last_error = payload


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, KeyError):
        return True
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) == 404


def _call(handle: TableHandle, action: str, func: Callable[[], T], *, missing_ok: bool = False) -> Optional[T]:
    """Run a table call with retry on transient network errors; any failure becomes StoreError."""
    try:
        return retry(func, retries=2, base_delay=0.5, exceptions=_RETRYABLE, logger=logger)
    except Exception as exc:
        if missing_ok and _is_not_found(exc):
            return None
        _log_airtable_exception(handle, exc, action)
        raise StoreError(f"{action} on {handle.table_name} failed: {exc}", action=action, table=handle.table_name) from exc


# ============================================================
# REPOSITORY
# ============================================================


class Repository:
    """Store operations the nurture engine needs. Every failure raises StoreError."""

    # Serializes claim check-and-set inside one process.
    _claim_lock = threading.Lock()

    def __init__(self, connector: Optional[DataConnector] = None) -> None:
        self.connector = connector or DataConnector()
        self._lead_phone_index: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "Repository":
        return cls(DataConnector(config))

    # Leads
    def get_lead(self, lead_id: str) -> Optional[Lead]:
        if not lead_id:
            return None
        h = self.connector.leads()
        record = _call(h, "get", lambda: h.table.get(lead_id), missing_ok=True)
        return Lead.from_record(record) if record else None

    def create_lead(self, **values: Any) -> Lead:
        h = self.connector.leads()
        record = _call(h, "create", lambda: h.table.create(_compact(lead_fields(**values))))
        digits = last_10_digits(record["fields"].get(LEAD_FIELDS["PHONE"]))
        if digits:
            self._lead_phone_index[digits] = record["id"]
        return Lead.from_record(record)

    def _leads_with_status(self, status: NurtureStatus) -> List[Lead]:
        h = self.connector.leads()
        formula = _eq_formula(**{LEAD_FIELDS["NURTURE_STATUS"]: status.value})
        records = _call(h, "all", lambda: h.table.all(formula=formula))
        return [Lead.from_record(r) for r in records]

    def due_leads(self, now: datetime, limit: int) -> List[Lead]:
        """
        Leads with next_nurture_at <= now and no live lock, oldest-due first.

        ACTIVE leads plus SNOOZED leads the expirer already released.
        """
        h = self.connector.leads()
        if h.in_memory:
            candidates = self._leads_with_status(NurtureStatus.ACTIVE) + self._leads_with_status(NurtureStatus.SNOOZED)
        else:
            options = dict(
                formula=_due_formula(now),
                sort=[LEAD_FIELDS["NEXT_NURTURE_AT"]],
                max_records=max(1, limit),
            )
            candidates = [Lead.from_record(r) for r in _call(h, "all", lambda: h.table.all(**options))]
        due = [lead for lead in candidates if lead.is_due(now) and not lead.is_locked(now)]
        due.sort(key=lambda lead: lead.next_nurture_at)
        return due[: max(0, limit)]

    def expired_snoozes(self, now: datetime, limit: int) -> List[Lead]:
        """SNOOZED leads whose lock has elapsed, oldest expiry first."""
        expired = [
            lead
            for lead in self._leads_with_status(NurtureStatus.SNOOZED)
            if lead.nurture_locked_until is not None and lead.nurture_locked_until <= now
        ]
        expired.sort(key=lambda lead: lead.nurture_locked_until)
        return expired[: max(0, limit)]

    def _refresh_lead_index(self) -> None:
        h = self.connector.leads()
        for r in _call(h, "all", lambda: h.table.all()):
            d = last_10_digits((r.get("fields", {}) or {}).get(LEAD_FIELDS["PHONE"]))
            if d:
                self._lead_phone_index[d] = r["id"]

    def find_lead_by_phone(self, phone: str) -> Optional[Lead]:
        d = last_10_digits(phone)
        if not d:
            return None
        rid = self._lead_phone_index.get(d)
        if rid:
            lead = self.get_lead(rid)
            if lead and last_10_digits(lead.phone) == d:
                return lead
        self._refresh_lead_index()
        rid = self._lead_phone_index.get(d)
        return self.get_lead(rid) if rid else None

    def update_lead(self, lead_id: str, fields: Dict[str, Any]) -> Lead:
        h = self.connector.leads()
        record = _call(h, "update", lambda: h.table.update(lead_id, dict(fields)))
        return Lead.from_record(record)

    def batch_update_leads(self, lead_ids: Sequence[str], fields: Dict[str, Any]) -> List[str]:
        if not lead_ids:
            return []
        h = self.connector.leads()
        rows = [{"id": rid, "fields": dict(fields)} for rid in lead_ids]
        updated = _call(h, "batch_update", lambda: h.table.batch_update(rows))
        return [r["id"] for r in updated]

    def claim_lead(self, lead_id: str, now: datetime, ttl: timedelta) -> Optional[Lead]:
        """
        Re-read the lead and take a short lock if it is still due and unclaimed.

        Returns the claimed snapshot (carrying the new lock) on success, None
        when another run got there first.
        """
        with self._claim_lock:
            lead = self.get_lead(lead_id)
            if lead is None or not lead.is_due(now) or lead.is_locked(now):
                return None
            return self.update_lead(lead_id, lead_fields(nurture_locked_until=now + ttl))

    def release_claim(self, lead_id: str) -> None:
        self.update_lead(lead_id, lead_fields(nurture_locked_until=None))

    def park_lead(self, lead_id: str) -> None:
        """Drop a lead out of the sweep: no schedule, no lock. Status is left alone."""
        self.update_lead(lead_id, lead_fields(next_nurture_at=None, nurture_locked_until=None))

    def advance_if_claimed(
        self,
        lead_id: str,
        claimed_until: Optional[datetime],
        advance: Dict[str, Any],
        sent_at: datetime,
    ) -> bool:
        """
        Write ``advance`` only if the lead still holds this claim and is still sendable.

        A reply that landed mid-send (STOP, ENGAGED, CLOSED, a NOT_NOW reschedule)
        clears or changes the lock; then only ``last_nurture_sent_at`` is recorded.
        Returns True when the advance was written.
        """
        with self._claim_lock:
            lead = self.get_lead(lead_id)
            if lead is None:
                return False
            held = claimed_until is not None and lead.nurture_locked_until == claimed_until
            sendable = lead.nurture_status == NurtureStatus.ACTIVE or lead.is_released()
            if held and sendable:
                self.update_lead(lead_id, advance)
                return True
            fields = lead_fields(last_nurture_sent_at=sent_at)
            if held:
                fields.update(lead_fields(nurture_locked_until=None))
            self.update_lead(lead_id, fields)
            logger.warning(
                "Lead %s changed during send (status=%s); advance skipped",
                lead_id,
                lead.nurture_status.value if lead.nurture_status else None,
            )
            return False

    # Messages
    def insert_message(self, message: MessageRecord) -> Dict[str, Any]:
        h = self.connector.messages()
        return _call(h, "create", lambda: h.table.create(_compact(message.to_fields())))

    # Tasks
    def insert_task(self, task: TaskDraft, created_at: datetime) -> Dict[str, Any]:
        h = self.connector.tasks()
        return _call(h, "create", lambda: h.table.create(_compact(task.to_fields(created_at))))

    def open_tasks_due(self, agent_id: str, now: datetime, within: timedelta = timedelta(hours=1)) -> List[Dict[str, Any]]:
        """Incomplete tasks for an agent due before now + within, soonest first."""
        h = self.connector.tasks()
        formula = _eq_formula(**{TASK_FIELDS["AGENT_ID"]: agent_id})
        horizon = now + within
        rows: List[Tuple[datetime, Dict[str, Any]]] = []
        for r in _call(h, "all", lambda: h.table.all(formula=formula)):
            f = r.get("fields", {}) or {}
            if f.get(TASK_FIELDS["IS_COMPLETED"]):
                continue
            due = parse_timestamp(f.get(TASK_FIELDS["DUE_AT"]))
            if due is not None and due <= horizon:
                rows.append((due, r))
        rows.sort(key=lambda pair: pair[0])
        return [r for _, r in rows]


# ============================================================
# PUBLIC HELPERS
# ============================================================


def reset_state() -> None:
    with _MEMORY_GUARD:
        _MEMORY_TABLES.clear()
    logger.info("🧹 Datastore state and caches cleared.")


__all__ = ["DataConnector", "InMemoryTable", "Repository", "TableHandle", "reset_state"]
