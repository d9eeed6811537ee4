"""
Scheduler runs, the manual trigger and failure retries.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError
from sqlmodel import select

from crm_outreach import store
from crm_outreach.models import AutomationFailure, Lead, OutreachLog
from crm_outreach.services.scheduler import retry_failure, run_lead_outreach_now, run_outreach
from crm_outreach.services.tagging import TagResult

from conftest import FakeChannel, FakeTagger

KEY_Q1 = "crm_outreach:quote_followup:L1:quote_followup_1"


def _rows(session, event=None, key=None):
    stmt = select(OutreachLog)
    if event:
        stmt = stmt.where(OutreachLog.event == event)
    if key:
        stmt = stmt.where(OutreachLog.dedup_key == key)
    return session.exec(stmt).all()


# ============================================================
# 1. PERIODIC RUN
# ============================================================

class TestRun:
    def test_sends_due_step_once(self, session, now, add_lead, channel, tagger):
        add_lead("L1")

        first = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert first.ok
        assert (first.processed, first.sent, first.skipped, first.failed) == (1, 1, 0, 0)

        second = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert second.ok
        assert (second.processed, second.sent) == (0, 0)

        assert len(channel.calls) == 1
        assert len(_rows(session, "sent", KEY_Q1)) == 1
        assert len(_rows(session, "reserved", KEY_Q1)) == 1

    def test_linear_drip(self, session, now, add_lead, channel, tagger):
        # all three quote follow-ups are overdue; one step per run
        add_lead("L1", age=timedelta(hours=80))

        steps = []
        for _ in range(4):
            run_outreach(session, now=now, channel=channel, tagger=tagger)
            steps.append([r.step for r in _rows(session, "sent")])

        assert steps[0] == ["quote_followup_1"]
        assert steps[1] == ["quote_followup_1", "quote_followup_2"]
        assert steps[2] == ["quote_followup_1", "quote_followup_2", "quote_followup_3"]
        assert steps[3] == steps[2]

    def test_payment_reminder_scenario(self, session, now, add_lead, add_payment, channel, tagger):
        add_lead("L1", status="new")
        add_payment("L1", age=timedelta(hours=1))

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert summary.sent == 1

        key = "crm_outreach:payment_reminder:L1:payment_reminder_1"
        assert len(_rows(session, "sent", key)) == 1
        assert channel.calls[0]["variables"]["payment_link"] == "https://rzp.io/i/abc"

        count = len(_rows(session))
        run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert len(_rows(session)) == count

    def test_channel_failure_scenario(self, session, now, add_lead, tagger):
        add_lead("L1")
        channel = FakeChannel(error="twilio_500")

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)

        assert summary.ok and summary.failed == 1 and summary.sent == 0
        assert len(session.exec(select(AutomationFailure)).all()) == 1
        session.expire_all()
        assert session.get(Lead, "L1").meta.get("outreach_count", 0) == 0

    def test_failed_step_retried_until_attempts_exhausted(self, session, now, add_lead, tagger):
        add_lead("L1")
        channel = FakeChannel(error="twilio_500")

        results = [run_outreach(session, now=now, channel=channel, tagger=tagger) for _ in range(4)]

        assert [r.failed for r in results] == [1, 1, 1, 0]
        assert len(channel.calls) == 3
        (failure,) = session.exec(select(AutomationFailure)).all()
        assert failure.attempts == 3
        assert sorted(r.attempt for r in _rows(session, "reserved")) == [1, 2, 3]

    def test_per_lead_throttle(self, session, now, add_lead, add_log, channel, tagger):
        add_lead("L1")
        for i in range(3):
            add_log("sent", f"crm_outreach:payment_reminder:L1:payment_reminder_{i + 1}", "L1",
                    age=timedelta(days=2))

        first = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert (first.sent, first.skipped) == (0, 1)
        assert channel.calls == []
        (skip,) = _rows(session, "skipped")
        assert (skip.dedup_key, skip.reason) == (KEY_Q1, "throttled")

        # still throttled: no second throttle row for the same key
        run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert len(_rows(session, "skipped")) == 1

    def test_throttle_lifts_after_window(self, session, now, add_lead, add_log, channel, tagger):
        add_lead("L1")
        for i in range(3):
            add_log("sent", f"crm_outreach:payment_reminder:L1:payment_reminder_{i + 1}", "L1",
                    age=timedelta(days=8))

        assert run_outreach(session, now=now, channel=channel, tagger=tagger).sent == 1

    def test_run_cap(self, session, now, add_lead, channel, tagger):
        for i in range(80):
            add_lead(f"L{i:03d}", phone=f"+9198765{i:05d}")

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert summary.processed == 50
        assert summary.sent == 50
        assert len(channel.calls) == 50

        rest = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert rest.sent == 30

    def test_excluded_leads_untouched(self, session, now, add_lead, channel, tagger):
        add_lead("W", status="won")
        add_lead("D", meta={"do_not_contact": True})

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert summary.processed == 0
        assert _rows(session) == []

    def test_reservation_held_elsewhere_blocks_send(self, session, now, add_lead, add_log, channel, tagger):
        add_lead("L1")
        # another scheduler reserved attempt 1 but its row is outside our read window
        add_log("reserved", "unrelated", "L1", age=timedelta(days=30), reservation_key=f"{KEY_Q1}#1")

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert (summary.processed, summary.skipped, summary.sent) == (1, 1, 0)
        assert channel.calls == []

    def test_old_sends_are_not_repeated(self, session, now, add_lead, add_log, channel, tagger):
        add_lead("L1", age=timedelta(days=30))
        for n in (1, 2, 3):
            key = f"crm_outreach:quote_followup:L1:quote_followup_{n}"
            add_log("reserved", key, "L1", age=timedelta(days=29), reservation_key=f"{key}#1")
            add_log("sent", key, "L1", age=timedelta(days=29))

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert summary.processed == 0
        assert channel.calls == []

    def test_not_configured(self, session, now, add_lead, outreach_settings, monkeypatch, channel, tagger):
        monkeypatch.setattr(outreach_settings, "WHATSAPP_DRY_RUN", False)
        add_lead("L1")

        summary = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert not summary.ok
        assert summary.reason == "not_configured"
        assert (summary.processed, summary.sent, summary.skipped, summary.failed) == (0, 0, 0, 0)
        assert _rows(session) == []

    def test_failed_collection_read_degrades(self, session, now, add_lead, add_payment, channel, tagger):
        add_lead("L1")
        add_lead("L2", status="new")
        add_payment("L2")
        real_exec = session.exec

        def exec_(stmt, *args, **kwargs):
            if "FROM payment" in str(stmt):
                raise OperationalError(str(stmt), {}, Exception("no such table: payment"))
            return real_exec(stmt, *args, **kwargs)

        with patch.object(session, "exec", side_effect=exec_):
            summary = run_outreach(session, now=now, channel=channel, tagger=tagger)

        assert summary.ok
        assert (summary.processed, summary.sent) == (1, 1)
        assert [r.dedup_key for r in _rows(session, "sent")] == [KEY_Q1]

    def test_bookkeeping_failure_keeps_send(self, session, now, add_lead, channel, tagger):
        add_lead("L1")

        with patch.object(store, "update", return_value=False) as update:
            first = run_outreach(session, now=now, channel=channel, tagger=tagger)
            second = run_outreach(session, now=now, channel=channel, tagger=tagger)

        assert update.called
        assert first.sent == 1
        assert second.sent == 0
        assert len(channel.calls) == 1
        (note,) = _rows(session, "bookkeeping_failed")
        assert note.dedup_key == KEY_Q1
        session.expire_all()
        assert "outreach_count" not in session.get(Lead, "L1").meta

    def test_store_unavailable(self, now, channel, tagger):
        broken = MagicMock()
        broken.exec.side_effect = OperationalError("SELECT 1", {}, Exception("database is locked"))

        summary = run_outreach(broken, now=now, channel=channel, tagger=tagger)
        assert not summary.ok
        assert summary.reason == "store_unavailable"
        assert channel.calls == []


# ============================================================
# 2. MANUAL TRIGGER
# ============================================================

class TestManual:
    def test_invalid_and_unknown_lead(self, session, now, channel, tagger):
        assert run_lead_outreach_now(session, "  ", now, channel, tagger).reason == "invalid_lead"
        result = run_lead_outreach_now(session, "missing", now, channel, tagger)
        assert not result.ok
        assert result.reason == "lead_not_found"

    def test_ignores_due_time(self, session, now, add_lead, channel, tagger):
        add_lead("L1", age=timedelta(minutes=5), lead_code="LD-77")

        result = run_lead_outreach_now(session, "LD-77", now, channel, tagger)

        assert result.ok and result.sent and result.reason == "sent"
        assert result.dedup_key == KEY_Q1
        assert len(channel.calls) == 1
        reserved = _rows(session, "reserved")[0]
        assert reserved.meta == {"manual": True}

    def test_do_not_contact(self, session, now, add_lead, channel, tagger):
        add_lead("L1", meta={"do_not_contact": True})
        result = run_lead_outreach_now(session, "L1", now, channel, tagger)
        assert result.ok and result.skipped and result.reason == "do_not_contact"

    def test_no_eligible_step(self, session, now, add_lead, channel, tagger):
        add_lead("L1", status="new")
        assert run_lead_outreach_now(session, "L1", now, channel, tagger).reason == "no_eligible_step"

    def test_throttled(self, session, now, add_lead, add_log, channel, tagger):
        add_lead("L1")
        for i in range(3):
            add_log("sent", f"crm_outreach:payment_reminder:L1:payment_reminder_{i + 1}", "L1")

        result = run_lead_outreach_now(session, "L1", now, channel, tagger)
        assert result.reason == "throttled"
        assert channel.calls == []

    def test_deduped_for_handled_key(self, session, now, add_lead, channel, tagger):
        add_lead("L1")
        run_outreach(session, now=now, channel=channel, tagger=tagger)

        result = run_lead_outreach_now(session, "L1", now, channel, tagger, dedup_key=KEY_Q1)
        assert result.reason == "deduped"
        assert len(channel.calls) == 1

    def test_dispatch_failed(self, session, now, add_lead, tagger):
        add_lead("L1")
        result = run_lead_outreach_now(session, "L1", now, FakeChannel(error="boom"), tagger)
        assert result.ok and result.failed and result.reason == "dispatch_failed"

    def test_skipped_without_phone(self, session, now, add_lead, channel, tagger):
        add_lead("L1", phone=None)
        result = run_lead_outreach_now(session, "L1", now, channel, tagger)
        assert result.skipped and result.reason == "skipped"


# ============================================================
# 3. FAILURE RETRY
# ============================================================

class TestRetryFailure:
    def test_unknown_failure(self, session):
        assert retry_failure(session, 999)["reason"] == "failure_not_found"

    def test_retry_exhausted_dispatch(self, session, now, add_lead, tagger):
        add_lead("L1")
        failing = FakeChannel(error="twilio_500")
        for _ in range(3):
            run_outreach(session, now=now, channel=failing, tagger=tagger)
        failure = session.exec(select(AutomationFailure)).one()

        channel = FakeChannel()
        out = retry_failure(session, failure.id, now=now, channel=channel, tagger=tagger)

        assert out["ok"] and out["resolved"]
        assert out["reason"] == "sent"
        assert len(channel.calls) == 1
        session.expire_all()
        assert session.get(AutomationFailure, failure.id).status == "resolved"

        again = retry_failure(session, failure.id, now=now, channel=channel, tagger=tagger)
        assert again["reason"] == "already_resolved"
        assert len(channel.calls) == 1

    def test_retry_still_failing_stays_open(self, session, now, add_lead, tagger):
        add_lead("L1")
        failing = FakeChannel(error="twilio_500")
        run_outreach(session, now=now, channel=failing, tagger=tagger)
        failure = session.exec(select(AutomationFailure)).one()

        out = retry_failure(session, failure.id, now=now, channel=failing, tagger=tagger)

        assert out["resolved"] is False
        assert out["reason"] == "dispatch_failed"
        session.expire_all()
        row = session.get(AutomationFailure, failure.id)
        assert (row.status, row.attempts) == ("open", 2)

    def test_scheduled_retry_resolves_failure(self, session, now, add_lead, channel, tagger):
        add_lead("L1")
        run_outreach(session, now=now, channel=FakeChannel(error="twilio_500"), tagger=tagger)
        failure = session.exec(select(AutomationFailure)).one()

        second = run_outreach(session, now=now, channel=channel, tagger=tagger)
        assert second.sent == 1

        session.expire_all()
        assert session.get(AutomationFailure, failure.id).status == "resolved"
        out = retry_failure(session, failure.id, now=now, channel=channel, tagger=tagger)
        assert out["reason"] == "already_resolved"
        assert len(channel.calls) == 1

    def test_retry_of_already_sent_step_resolves(self, session, now, add_lead, channel, tagger):
        from crm_outreach.services import failures

        add_lead("L1")
        run_outreach(session, now=now, channel=channel, tagger=tagger)
        # failure row left open from before the send went through
        failure_id = failures.record_failure(session, event=KEY_Q1, error="outreach_whatsapp:twilio_500",
                                             lead_id="L1")

        out = retry_failure(session, failure_id, now=now, channel=channel, tagger=tagger)

        assert out["reason"] == "deduped"
        assert out["resolved"] is True
        assert len(channel.calls) == 1
        session.expire_all()
        assert session.get(AutomationFailure, failure_id).status == "resolved"

    def test_tagging_retry_does_not_resend(self, session, now, add_lead, channel):
        add_lead("L1", email="asha@example.com")
        run_outreach(session, now=now, channel=channel,
                     tagger=FakeTagger(TagResult(ok=False, error="tagging_failed")))
        failure = session.exec(select(AutomationFailure)).one()
        assert failure.kind == "tagging"

        tagger = FakeTagger()
        out = retry_failure(session, failure.id, now=now, channel=channel, tagger=tagger)

        assert out == {"ok": True, "failure_id": failure.id, "resolved": True, "reason": "tagged"}
        assert len(channel.calls) == 1
        assert tagger.calls[0]["address"] == "asha@example.com"
