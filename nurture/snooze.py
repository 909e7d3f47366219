# nurture/snooze.py
"""Snooze expirer: surfaces SNOOZED leads whose lock elapsed and, in apply mode, schedules them now."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from nurture.config import settings
from nurture.datastore import Repository
from nurture.models import Lead, lead_fields
from nurture.runtime import get_logger, to_iso, utc_now

logger = get_logger("snooze")


@dataclass
class SnoozeResult:
    server_now: datetime
    leads: List[Lead] = field(default_factory=list)
    applied: bool = False
    updated_ids: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.leads)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "server_now": to_iso(self.server_now),
            "applied": self.applied,
            "count": self.count,
            "updated_ids": list(self.updated_ids),
            "leads": [
                {
                    "id": lead.id,
                    "name": lead.name,
                    "phone": lead.phone,
                    "nurture_status": lead.nurture_status.value if lead.nurture_status else None,
                    "nurture_locked_until": to_iso(lead.nurture_locked_until) if lead.nurture_locked_until else None,
                }
                for lead in self.leads
            ],
        }


def expire_snoozes(
    repository: Repository,
    *,
    now: Optional[datetime] = None,
    apply: bool = False,
    limit: Optional[int] = None,
) -> SnoozeResult:
    """
    List SNOOZED leads whose ``nurture_locked_until`` has passed.

    Dry-run (the default) only reports. ``apply=True`` sets ``next_nurture_at``
    to now on every match in one batch update; status is left as is.
    """
    now = now or utc_now()
    bound = settings().SNOOZE_BATCH_SIZE if limit is None else limit
    expired = repository.expired_snoozes(now, bound)
    result = SnoozeResult(server_now=now, leads=expired)

    if apply and expired:
        ids = [lead.id for lead in expired]
        result.updated_ids = repository.batch_update_leads(ids, lead_fields(next_nurture_at=now))
        result.applied = True

    logger.info("Expired snoozes: count=%d applied=%s", result.count, result.applied)
    return result


__all__ = ["SnoozeResult", "expire_snoozes"]
