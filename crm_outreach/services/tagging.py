# crm_outreach/services/tagging.py
import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import requests

from crm_outreach import config

log = logging.getLogger(__name__)


@dataclass
class TagResult:
    ok: bool
    skipped: bool = False
    error: Optional[str] = None


class TaggingProvider(Protocol):
    def upsert_contact(self, address: str, name: Optional[str], tags: List[str],
                       phone: Optional[str] = None) -> TagResult: ...


def _split_name(name: Optional[str]):
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class MailchimpTagger:
    """Upsert an audience member by e-mail, then add tags."""

    def __init__(self, http: Optional[requests.Session] = None):
        self.http = http or requests.Session()

    def _configured(self) -> bool:
        s = config.settings
        return bool(s.MAILCHIMP_API_KEY and s.MAILCHIMP_SERVER_PREFIX and s.MAILCHIMP_AUDIENCE_ID)

    def upsert_contact(self, address: str, name: Optional[str], tags: List[str],
                       phone: Optional[str] = None) -> TagResult:
        if not self._configured():
            return TagResult(ok=False, skipped=True, error="missing_config")

        email = (address or "").strip().lower()
        if not email:
            return TagResult(ok=False, skipped=True, error="missing_email")

        s = config.settings
        subscriber_hash = hashlib.md5(email.encode("utf-8")).hexdigest()
        member_url = (
            f"https://{s.MAILCHIMP_SERVER_PREFIX}.api.mailchimp.com/3.0"
            f"/lists/{s.MAILCHIMP_AUDIENCE_ID}/members/{subscriber_hash}"
        )
        auth = ("anystring", s.MAILCHIMP_API_KEY)
        first, last = _split_name(name)
        merge_fields = {k: v for k, v in (("FNAME", first), ("LNAME", last), ("PHONE", phone or "")) if v}
        clean_tags = sorted({t.strip() for t in tags if t and t.strip()})

        try:
            r = self.http.put(
                member_url,
                json={"email_address": email, "status_if_new": "subscribed", "merge_fields": merge_fields},
                auth=auth,
                timeout=s.MAILCHIMP_TIMEOUT_SECONDS,
            )
            if not r.ok:
                log.error("Mailchimp upsert HTTP %s: %s", r.status_code, r.text[:500])
                return TagResult(ok=False, error="upsert_failed")

            if clean_tags:
                r = self.http.post(
                    f"{member_url}/tags",
                    json={"tags": [{"name": t, "status": "active"} for t in clean_tags]},
                    auth=auth,
                    timeout=s.MAILCHIMP_TIMEOUT_SECONDS,
                )
                if not r.ok:
                    log.error("Mailchimp tags HTTP %s: %s", r.status_code, r.text[:500])
                    return TagResult(ok=False, error="tagging_failed")
        except requests.RequestException as e:
            log.error("Mailchimp request failed: %s", e)
            return TagResult(ok=False, error="mailchimp_request_failed")

        return TagResult(ok=True)


def tag_for_type(outreach_type: str) -> str:
    s = config.settings
    if outreach_type == "payment_reminder":
        return s.TAG_PAYMENT_REMINDER
    if outreach_type == "reengagement":
        return s.TAG_REENGAGED
    return s.TAG_QUOTE_FOLLOWUP


def get_tagger() -> TaggingProvider:
    return MailchimpTagger()
