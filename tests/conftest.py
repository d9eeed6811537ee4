"""
Shared fixtures: an in-memory database, fake WhatsApp/Mailchimp providers
and small factories for CRM rows.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

# must be set before crm_outreach.db builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("WHATSAPP_DRY_RUN", None)

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from crm_outreach import config
from crm_outreach.models import Booking, Lead, OutreachLog, Payment
from crm_outreach.services.channel import ChannelResult
from crm_outreach.services.tagging import TagResult

ALL_TEMPLATES = {step: f"HX{step}" for step in config.TEMPLATE_ENV_VARS}


# ============================================================
# Fakes
# ============================================================

class FakeChannel:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def send(self, to, template_id, variables):
        self.calls.append({"to": to, "template_id": template_id, "variables": dict(variables)})
        if self.error:
            return ChannelResult(ok=False, error=self.error)
        return ChannelResult(ok=True, sid=f"SM{len(self.calls):04d}")


class FakeTagger:
    def __init__(self, result=None):
        self.result = result or TagResult(ok=True)
        self.calls = []

    def upsert_contact(self, address, name, tags, phone=None):
        self.calls.append({"address": address, "name": name, "tags": list(tags), "phone": phone})
        return self.result


# ============================================================
# Database / settings
# ============================================================

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture(autouse=True)
def outreach_settings(monkeypatch):
    s = config.settings
    monkeypatch.delenv("WHATSAPP_DRY_RUN", raising=False)
    monkeypatch.setattr(s, "ADMIN_KEY", "test-admin")
    monkeypatch.setattr(s, "WHATSAPP_DRY_RUN", True)
    monkeypatch.setattr(s, "TWILIO_ACCOUNT_SID", "")
    monkeypatch.setattr(s, "TWILIO_AUTH_TOKEN", "")
    monkeypatch.setattr(s, "TWILIO_API_KEY", "")
    monkeypatch.setattr(s, "TWILIO_WHATSAPP_FROM", "")
    monkeypatch.setattr(s, "TWILIO_MESSAGING_SERVICE_SID", "")
    monkeypatch.setattr(s, "MAILCHIMP_API_KEY", "")
    monkeypatch.setattr(s, "MAILCHIMP_SERVER_PREFIX", "")
    monkeypatch.setattr(s, "MAILCHIMP_AUDIENCE_ID", "")
    monkeypatch.setattr(s, "TEMPLATES", dict(ALL_TEMPLATES))
    monkeypatch.setattr(s, "STRICT_TEMPLATES", False)
    monkeypatch.setattr(s, "MAX_MESSAGES_PER_RUN", 50)
    monkeypatch.setattr(s, "MAX_MESSAGES_PER_LEAD_7D", 3)
    monkeypatch.setattr(s, "MAX_DISPATCH_ATTEMPTS", 3)
    monkeypatch.setattr(s, "PHONE_REGION", "IN")
    return s


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def tagger():
    return FakeTagger()


# ============================================================
# Row factories
# ============================================================

@pytest.fixture
def add_lead(session, now):
    counter = {"n": 0}

    def _add(lead_id=None, status="quote_sent", age=timedelta(hours=3), phone="+919876543210",
             email=None, meta=None, **fields):
        counter["n"] += 1
        lead_id = lead_id or f"lead-{counter['n']}"
        lead = Lead(
            id=lead_id,
            lead_code=fields.pop("lead_code", f"LD-{1000 + counter['n']}"),
            status=status,
            customer_name=fields.pop("customer_name", "Asha Rao"),
            customer_phone=phone,
            customer_email=email,
            destination_city=fields.pop("destination_city", "Bali"),
            destination_country=fields.pop("destination_country", "Indonesia"),
            meta=meta or {},
            created_at=now - age,
            updated_at=now - age,
            **fields,
        )
        session.add(lead)
        session.commit()
        return lead

    return _add


@pytest.fixture
def add_payment(session, now):
    def _add(lead_id, payment_id="pay-1", booking_id="bk-1", status="pending",
             booking_status="pending", age=timedelta(hours=1), payload=None):
        session.add(Booking(id=booking_id, booking_code=f"BK-{booking_id}", lead_id=lead_id,
                            payment_status=booking_status))
        session.add(Payment(
            id=payment_id,
            booking_id=booking_id,
            status=status,
            raw_payload=payload if payload is not None else {"short_url": "https://rzp.io/i/abc"},
            created_at=now - age,
        ))
        session.commit()

    return _add


@pytest.fixture
def add_log(session, now):
    def _add(event, dedup_key, lead_id, age=timedelta(hours=1), **fields):
        row = OutreachLog(
            event=event,
            dedup_key=dedup_key,
            lead_id=lead_id,
            created_at=now - age,
            **fields,
        )
        session.add(row)
        session.commit()
        return row

    return _add
