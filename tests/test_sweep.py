from datetime import timedelta

import pytest

from nurture.config import settings
from nurture.errors import StoreError
from nurture.inbound import handle_inbound
from nurture.schema import NurtureStage, NurtureStatus
from nurture.sender import SendResult
from nurture.sweep import run_nurture_cycle

from conftest import FailingTransport


def _seed(repo, now, **overrides):
    values = dict(
        name="Jane Doe",
        phone="512-555-0100",
        nurture_status=NurtureStatus.ACTIVE,
        nurture_stage=NurtureStage.DAY_3,
        next_nurture_at=now - timedelta(minutes=1),
    )
    values.update(overrides)
    return repo.create_lead(**values)


def _messages(repo):
    return [r["fields"] for r in repo.connector.messages().table.all()]


def test_day_3_lead_is_sent_and_advanced(repo, transport, now):
    lead = _seed(repo, now)

    result = run_nurture_cycle(repo, transport, now=now)

    assert (result.sent, result.skipped, result.errors) == (1, 0, [])
    to, body = transport.sent[0]
    assert to == "+15125550100"
    assert body.startswith("Hi Jane. Two things usually drive a sale")

    after = repo.get_lead(lead.id)
    assert after.nurture_stage == NurtureStage.DAY_5
    assert after.last_nurture_sent_at == now
    assert now + timedelta(hours=48, minutes=15) <= after.next_nurture_at <= now + timedelta(hours=48, minutes=65)
    assert after.nurture_locked_until is None
    assert after.nurture_status == NurtureStatus.ACTIVE

    logged = _messages(repo)
    assert len(logged) == 1
    assert logged[0]["direction"] == "OUTBOUND"
    assert logged[0]["is_auto"] is True
    assert logged[0]["lead_id"] == lead.id
    assert logged[0]["provider_message_id"] == "msg-1"


def test_transport_failure_leaves_lead_due(repo, now):
    lead = _seed(repo, now)
    failing = FailingTransport(status_code=500)

    result = run_nurture_cycle(repo, failing, now=now)

    assert result.sent == 0
    assert len(result.errors) == 1
    assert result.errors[0]["lead_id"] == lead.id
    assert result.errors[0]["type"] == "TransportError"

    after = repo.get_lead(lead.id)
    assert after.nurture_stage == NurtureStage.DAY_3
    assert after.next_nurture_at == lead.next_nurture_at
    assert after.nurture_locked_until is None
    assert after.last_nurture_sent_at is None
    assert _messages(repo) == []
    assert [l.id for l in repo.due_leads(now, 20)] == [lead.id]


def test_claimed_lead_is_not_selected(repo, transport, now):
    _seed(repo, now, nurture_locked_until=now + timedelta(minutes=5))
    result = run_nurture_cycle(repo, transport, now=now)
    assert (result.sent, result.skipped) == (0, 0)
    assert transport.sent == []


def test_lost_claim_race_is_skipped(repo, transport, now, monkeypatch):
    _seed(repo, now)
    monkeypatch.setattr(repo, "claim_lead", lambda *_a, **_k: None)

    result = run_nurture_cycle(repo, transport, now=now)

    assert (result.sent, result.skipped, result.errors) == (0, 1, [])
    assert transport.sent == []


def test_day_7_is_terminal(repo, transport, now):
    lead = _seed(repo, now, nurture_stage=NurtureStage.DAY_7)

    run_nurture_cycle(repo, transport, now=now)

    after = repo.get_lead(lead.id)
    assert after.nurture_stage == NurtureStage.DAY_7
    assert after.next_nurture_at is None
    assert after.last_nurture_sent_at == now
    assert "neighbor's home" in transport.sent[0][1]


def test_unstaged_lead_starts_at_day_1(repo, transport, now):
    lead = _seed(repo, now, nurture_stage=None)

    run_nurture_cycle(repo, transport, now=now)

    assert "Machaih from Listing Scout" in transport.sent[0][1]
    assert repo.get_lead(lead.id).nurture_stage == NurtureStage.DAY_2


def test_unknown_stage_is_skipped_and_released(repo, transport, now):
    lead = _seed(repo, now)
    repo.update_lead(lead.id, {"nurture_stage": "DAY_99"})

    result = run_nurture_cycle(repo, transport, now=now)

    assert (result.sent, result.skipped) == (0, 1)
    assert transport.sent == []
    assert repo.get_lead(lead.id).nurture_locked_until is None
    assert repo.get_lead(lead.id).next_nurture_at is None


def test_invalid_phone_is_skipped(repo, transport, now):
    lead = _seed(repo, now, phone="123")

    result = run_nurture_cycle(repo, transport, now=now)

    assert (result.sent, result.skipped, result.errors) == (0, 1, [])
    assert transport.sent == []
    assert repo.get_lead(lead.id).nurture_locked_until is None
    assert repo.get_lead(lead.id).next_nurture_at is None
    assert repo.due_leads(now, 20) == []


def test_message_log_failure_still_advances(repo, transport, now, monkeypatch):
    lead = _seed(repo, now)

    def broken_insert(_message):
        raise StoreError("messages down", action="create", table="Messages")

    monkeypatch.setattr(repo, "insert_message", broken_insert)

    result = run_nurture_cycle(repo, transport, now=now)

    assert result.sent == 1
    assert repo.get_lead(lead.id).nurture_stage == NurtureStage.DAY_5


def test_due_list_failure_raises(repo, transport, now, monkeypatch):
    def broken_due(*_a, **_k):
        raise StoreError("leads down", action="all", table="Leads")

    monkeypatch.setattr(repo, "due_leads", broken_due)

    with pytest.raises(StoreError):
        run_nurture_cycle(repo, transport, now=now)


def test_batch_limit_and_order(repo, transport, now):
    first = _seed(repo, now, phone="5125550101", next_nurture_at=now - timedelta(hours=3))
    second = _seed(repo, now, phone="5125550102", next_nurture_at=now - timedelta(hours=2))
    third = _seed(repo, now, phone="5125550103", next_nurture_at=now - timedelta(hours=1))

    result = run_nurture_cycle(repo, transport, now=now, limit=2)

    assert result.sent == 2
    assert sorted(to for to, _ in transport.sent) == ["+15125550101", "+15125550102"]
    assert repo.get_lead(third.id).nurture_stage == NurtureStage.DAY_3
    assert {repo.get_lead(first.id).nurture_stage, repo.get_lead(second.id).nurture_stage} == {NurtureStage.DAY_5}


def test_released_snooze_is_sent_and_reactivated(repo, transport, now):
    released = _seed(repo, now, nurture_status=NurtureStatus.SNOOZED, nurture_locked_until=now - timedelta(hours=1))
    held = _seed(
        repo,
        now,
        phone="5125550102",
        nurture_status=NurtureStatus.SNOOZED,
        next_nurture_at=None,
        nurture_locked_until=now + timedelta(days=2),
    )

    result = run_nurture_cycle(repo, transport, now=now)

    assert result.sent == 1
    after = repo.get_lead(released.id)
    assert after.nurture_status == NurtureStatus.ACTIVE
    assert after.nurture_stage == NurtureStage.DAY_5
    assert repo.get_lead(held.id).nurture_status == NurtureStatus.SNOOZED


def test_should_stop_prevents_submission(repo, transport, now):
    _seed(repo, now)
    result = run_nurture_cycle(repo, transport, now=now, should_stop=lambda: True)
    assert result.stopped_early
    assert result.sent == 0
    assert transport.sent == []


def test_one_failure_does_not_abort_batch(repo, now):
    good = _seed(repo, now, phone="5125550101")
    bad = _seed(repo, now, phone="5125550102")

    class PickyTransport:
        def __init__(self):
            self.sent = []

        def send(self, to, text):
            if to.endswith("0102"):
                FailingTransport().send(to, text)
            self.sent.append(to)
            return None

    result = run_nurture_cycle(repo, PickyTransport(), now=now)

    assert result.sent == 1
    assert [e["lead_id"] for e in result.errors] == [bad.id]
    assert repo.get_lead(good.id).nurture_stage == NurtureStage.DAY_5


class ReplyDuringSend:
    """Delivers an inbound reply for the lead while its nurture text is in flight."""

    def __init__(self, repo, reply):
        self.repo = repo
        self.reply = reply
        self.sent = []

    def send(self, to, text):
        self.sent.append((to, text))
        handle_inbound(self.repo, to, self.reply)
        return SendResult(f"msg-{len(self.sent)}")


def test_stop_reply_during_send_is_not_overwritten(repo, now):
    lead = _seed(repo, now)

    result = run_nurture_cycle(repo, ReplyDuringSend(repo, "STOP"), now=now)

    assert result.sent == 1
    after = repo.get_lead(lead.id)
    assert after.nurture_status == NurtureStatus.STOPPED
    assert after.next_nurture_at is None
    assert after.nurture_locked_until is None
    assert after.nurture_stage == NurtureStage.DAY_3
    assert after.last_nurture_sent_at == now
    assert repo.due_leads(now + timedelta(days=30), 20) == []


def test_not_now_reply_during_send_keeps_long_term_schedule(repo, now):
    lead = _seed(repo, now)

    run_nurture_cycle(repo, ReplyDuringSend(repo, "maybe next year, don't call me"), now=now)

    after = repo.get_lead(lead.id)
    assert after.nurture_status == NurtureStatus.ACTIVE
    assert after.nurture_stage == NurtureStage.LONG_TERM
    assert after.next_nurture_at > now + timedelta(days=29)


def test_invalid_leads_do_not_starve_the_batch(repo, transport, now):
    for i in range(20):
        _seed(repo, now, phone="123", next_nurture_at=now - timedelta(hours=5, minutes=i))
    good = _seed(repo, now, phone="5125550101", next_nurture_at=now - timedelta(minutes=1))

    first = run_nurture_cycle(repo, transport, now=now)
    second = run_nurture_cycle(repo, transport, now=now)

    assert (first.sent, first.skipped) == (0, 20)
    assert (second.sent, second.skipped) == (1, 0)
    assert transport.sent[0][0] == "+15125550101"
    assert repo.get_lead(good.id).nurture_stage == NurtureStage.DAY_5


def test_crash_after_send_resends_once_claim_expires(repo, transport, now, monkeypatch):
    # Known at-least-once tradeoff: a failure between dispatch and advance
    # leaves the lead due, so the next sweep after the claim TTL sends again.
    lead = _seed(repo, now)
    real_advance = repo.advance_if_claimed
    calls = {"n": 0}

    def advance_once_broken(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreError("leads down", action="update", table="Leads")
        return real_advance(*args, **kwargs)

    monkeypatch.setattr(repo, "advance_if_claimed", advance_once_broken)

    crashed = run_nurture_cycle(repo, transport, now=now)
    assert crashed.sent == 0
    assert [e["type"] for e in crashed.errors] == ["StoreError"]

    assert run_nurture_cycle(repo, transport, now=now + timedelta(minutes=5)).sent == 0

    later = now + timedelta(seconds=settings().CLAIM_TTL_SEC)
    retried = run_nurture_cycle(repo, transport, now=later)

    assert retried.sent == 1
    assert len(transport.sent) == 2
    assert transport.sent[0] == transport.sent[1]
    assert repo.get_lead(lead.id).nurture_stage == NurtureStage.DAY_5
