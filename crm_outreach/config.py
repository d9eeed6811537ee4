# crm_outreach/config.py
import os
from pathlib import Path

from dotenv import load_dotenv

from crm_outreach.errors import TemplateConfigError

ROOT = Path(__file__).resolve().parents[1]
# load .env into process env vars
load_dotenv(ROOT / ".env")


def _as_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except Exception:
        return default


# step name -> env var holding the WhatsApp (Twilio Content) template id
TEMPLATE_ENV_VARS = {
    "quote_followup_1": "CRM_WA_TEMPLATE_QUOTE_FOLLOWUP_1",
    "quote_followup_2": "CRM_WA_TEMPLATE_QUOTE_FOLLOWUP_2",
    "quote_followup_3": "CRM_WA_TEMPLATE_QUOTE_FOLLOWUP_3",
    "payment_reminder_1": "CRM_WA_TEMPLATE_PAYMENT_REMINDER_1",
    "payment_reminder_2": "CRM_WA_TEMPLATE_PAYMENT_REMINDER_2",
    "payment_reminder_3": "CRM_WA_TEMPLATE_PAYMENT_REMINDER_3",
    "reengage_1": "CRM_WA_TEMPLATE_REENGAGE_1",
}


def _load_templates() -> dict:
    out = {}
    for step, var in TEMPLATE_ENV_VARS.items():
        val = (os.getenv(var) or "").strip()
        if val:
            out[step] = val
    return out


class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/app.db")
    ADMIN_KEY: str = (os.getenv("ADMIN_KEY") or "").strip()

    # Scheduler limits
    MAX_MESSAGES_PER_RUN: int = _as_int("OUTREACH_MAX_PER_RUN", 50)
    MAX_MESSAGES_PER_LEAD_7D: int = _as_int("OUTREACH_MAX_PER_LEAD_7D", 3)
    THROTTLE_WINDOW_DAYS: int = _as_int("OUTREACH_THROTTLE_WINDOW_DAYS", 7)
    PAYMENT_LOOKBACK_DAYS: int = _as_int("OUTREACH_PAYMENT_LOOKBACK_DAYS", 4)
    MAX_DISPATCH_ATTEMPTS: int = _as_int("OUTREACH_MAX_DISPATCH_ATTEMPTS", 3)
    LEAD_LIMIT: int = _as_int("OUTREACH_LEAD_LIMIT", 600)
    # region used to parse numbers stored without a country code
    PHONE_REGION: str = os.getenv("OUTREACH_PHONE_REGION", "IN").strip().upper() or "IN"

    # Dashboard
    UPCOMING_LIMIT: int = _as_int("OUTREACH_UPCOMING_LIMIT", 80)
    RECENT_LIMIT: int = _as_int("OUTREACH_RECENT_LIMIT", 140)
    FAILURES_LIMIT: int = _as_int("OUTREACH_FAILURES_LIMIT", 80)
    STALE_RESERVATION_MINUTES: int = _as_int("OUTREACH_STALE_RESERVATION_MINUTES", 60)

    # Templates (step -> template id); prod refuses to boot with gaps
    TEMPLATES: dict = _load_templates()
    STRICT_TEMPLATES: bool = _as_bool("OUTREACH_STRICT_TEMPLATES", ENV == "prod")

    # Twilio WhatsApp
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
    TWILIO_API_KEY: str = os.getenv("TWILIO_API_KEY", "").strip()
    TWILIO_WHATSAPP_FROM: str = os.getenv("TWILIO_WHATSAPP_FROM", "").strip()
    TWILIO_MESSAGING_SERVICE_SID: str = os.getenv("TWILIO_MESSAGING_SERVICE_SID", "").strip()
    WHATSAPP_DRY_RUN: bool = _as_bool("WHATSAPP_DRY_RUN", False)

    # Mailchimp tagging (optional)
    MAILCHIMP_API_KEY: str = os.getenv("MAILCHIMP_API_KEY", "").strip()
    MAILCHIMP_SERVER_PREFIX: str = os.getenv("MAILCHIMP_SERVER_PREFIX", "").strip()
    MAILCHIMP_AUDIENCE_ID: str = os.getenv("MAILCHIMP_AUDIENCE_ID", "").strip()
    MAILCHIMP_TIMEOUT_SECONDS: int = _as_int("MAILCHIMP_TIMEOUT_SECONDS", 8)
    TAG_QUOTE_FOLLOWUP: str = os.getenv("MAILCHIMP_TAG_QUOTE_FOLLOWUP", "QuoteFollowupSent")
    TAG_PAYMENT_REMINDER: str = os.getenv("MAILCHIMP_TAG_PAYMENT_REMINDER", "PaymentReminderSent")
    TAG_REENGAGED: str = os.getenv("MAILCHIMP_TAG_REENGAGED", "Reengaged")


# read as config.settings.X at call time; tests patch attributes on it
settings = Settings()


def channel_configured() -> bool:
    """True when the WhatsApp channel can send (or is in dry-run)."""
    if settings.WHATSAPP_DRY_RUN:
        return True
    has_auth = bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN)
    has_sender = bool(settings.TWILIO_WHATSAPP_FROM or settings.TWILIO_MESSAGING_SERVICE_SID)
    return has_auth and has_sender


def missing_templates() -> list[str]:
    return [step for step in TEMPLATE_ENV_VARS if not settings.TEMPLATES.get(step)]


def validate_templates() -> list[str]:
    """
    Check the step -> template map.
    Returns the missing step names; raises TemplateConfigError when
    STRICT_TEMPLATES is on and anything is missing.
    """
    missing = missing_templates()
    if missing and settings.STRICT_TEMPLATES:
        names = ", ".join(TEMPLATE_ENV_VARS[s] for s in missing)
        raise TemplateConfigError(f"Missing WhatsApp templates: {names}")
    return missing
