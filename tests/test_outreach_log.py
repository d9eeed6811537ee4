"""
Outreach log: run state folding, reservations and the legacy row adapter.
"""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from crm_outreach.models import OutreachLog
from crm_outreach.services import outreach_log as olog
from crm_outreach.services import throttle

KEY = "crm_outreach:quote_followup:L1:quote_followup_1"
KEY2 = "crm_outreach:quote_followup:L1:quote_followup_2"

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _e(event, key=KEY, minutes=0, reason=None, lead_id="L1"):
    return olog.LogEntry(event=event, dedup_key=key, lead_id=lead_id, reason=reason,
                         created_at=T0 + timedelta(minutes=minutes))


# ============================================================
# 1. STATE FOLDING
# ============================================================

class TestBuildState:
    def test_sent_is_handled_and_counted(self):
        state = olog.build_state([_e("reserved"), _e("sent", minutes=1)])
        assert state.is_handled(KEY)
        assert state.sent_by_lead["L1"] == 1
        assert state.open_reservations == {}

    def test_reservation_without_outcome_fails_closed(self):
        state = olog.build_state([_e("reserved")])
        assert state.is_handled(KEY)
        assert state.open_reservations == {KEY: T0}

    def test_failed_attempt_reopens_key(self):
        state = olog.build_state([_e("reserved"), _e("failed", minutes=1)])
        assert not state.is_handled(KEY)
        assert state.next_attempt(KEY) == 2

    def test_failed_attempts_exhaust(self):
        entries = []
        for i in range(3):
            entries += [_e("reserved", minutes=i * 10), _e("failed", minutes=i * 10 + 1)]
        state = olog.build_state(entries, max_attempts=3)
        assert state.is_handled(KEY)
        assert KEY in state.exhausted
        assert state.next_attempt(KEY) == 4

    def test_permanent_skip_is_handled(self):
        state = olog.build_state([_e("reserved"), _e("skipped", minutes=1, reason="no_contact")])
        assert state.is_handled(KEY)

    def test_throttle_skip_does_not_handle(self):
        state = olog.build_state([_e("skipped", reason=olog.REASON_THROTTLED)])
        assert not state.is_handled(KEY)
        assert KEY in state.throttled_keys

    def test_only_window_sends_count_for_throttle(self):
        entries = [_e("sent", minutes=-60 * 24 * 10), _e("sent", key=KEY2)]
        state = olog.build_state(entries, since=T0 - timedelta(days=7))
        assert state.sent_by_lead["L1"] == 1
        assert state.is_handled(KEY)
        assert state.is_handled(KEY2)

    def test_throttle_helpers(self):
        state = olog.build_state([_e("sent", key=f"k{i}") for i in range(2)])
        assert not throttle.is_throttled(state, "L1", cap=3)
        throttle.note_sent(state, "L1")
        assert throttle.sends_in_window(state, "L1") == 3
        assert throttle.is_throttled(state, "L1", cap=3)


# ============================================================
# 2. PERSISTENCE
# ============================================================

class TestReserve:
    def _entry(self, attempt=1):
        return olog.LogEntry(event=olog.RESERVED, dedup_key=KEY, lead_id="L1",
                             type="quote_followup", step="quote_followup_1", attempt=attempt)

    def test_second_writer_loses(self, engine):
        with Session(engine) as a, Session(engine) as b:
            assert olog.reserve(a, self._entry())
            assert not olog.reserve(b, self._entry())
            # b is still usable after the conflict
            assert olog.reserve(b, self._entry(attempt=2))

        with Session(engine) as s:
            keys = sorted(r.reservation_key for r in s.exec(select(OutreachLog)).all())
        assert keys == [f"{KEY}#1", f"{KEY}#2"]

    def test_reserved_row_shape(self, session):
        olog.reserve(session, self._entry())
        row = session.exec(select(OutreachLog)).one()
        assert row.event == "reserved"
        assert row.status == "info"
        assert row.schema_version == olog.LOG_SCHEMA_VERSION

    def test_append_has_no_reservation_key(self, session):
        for _ in range(2):
            assert olog.append(session, olog.LogEntry(event=olog.SENT, dedup_key=KEY, lead_id="L1"))
        rows = session.exec(select(OutreachLog)).all()
        assert len(rows) == 2
        assert all(r.reservation_key is None and r.status == "success" for r in rows)


class TestReadState:
    def test_legacy_rows_keep_key_in_meta(self, session, now, add_log):
        add_log("sent", None, "L1", schema_version=1,
                meta={"dedup_key": KEY, "type": "quote_followup", "step": "quote_followup_1"})

        state = olog.read_state(session, now)
        assert state.is_handled(KEY)
        assert state.sent_by_lead["L1"] == 1

        (entry,) = olog.recent_entries(session)
        assert entry.dedup_key == KEY
        assert entry.step == "quote_followup_1"

    def test_history_beyond_window_still_dedups(self, session, now, add_log):
        add_log("reserved", KEY, "L1", age=timedelta(days=20), reservation_key=f"{KEY}#1")
        add_log("sent", KEY, "L1", age=timedelta(days=20))

        assert not olog.read_state(session, now).is_handled(KEY)

        state = olog.read_state(session, now, keys=[KEY])
        assert state.is_handled(KEY)
        assert state.sent_by_lead["L1"] == 0

    def test_recent_hides_reservations(self, session, add_log):
        add_log("reserved", KEY, "L1", reservation_key=f"{KEY}#1")
        add_log("tagging_failed", KEY, "L1")
        assert [e.event for e in olog.recent_entries(session)] == ["tagging_failed"]
