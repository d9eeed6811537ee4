# crm_outreach/services/channel.py
"""
WhatsApp template delivery through Twilio's Content API.

`send()` never raises: any provider or configuration problem comes back as
ChannelResult(ok=False, error=...).
"""
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from crm_outreach import config
from crm_outreach.errors import OutreachNotConfigured

log = logging.getLogger(__name__)


@dataclass
class ChannelResult:
    ok: bool
    error: Optional[str] = None
    sid: Optional[str] = None


class ChannelProvider(Protocol):
    def send(self, to: str, template_id: str, variables: Dict[str, str]) -> ChannelResult: ...


def _truthy(val) -> bool:
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def is_dry_run() -> bool:
    # Prefer live env each call; fall back to settings
    env_val = os.getenv("WHATSAPP_DRY_RUN", None)
    if env_val is not None:
        return _truthy(env_val)
    return bool(config.settings.WHATSAPP_DRY_RUN)


def _wa(address: str) -> str:
    return address if address.startswith("whatsapp:") else f"whatsapp:{address}"


def _clean_variables(variables: Optional[Dict[str, object]]) -> Dict[str, str]:
    out = {}
    for key, value in (variables or {}).items():
        if value is None:
            continue
        val = str(value).strip()
        if val:
            out[key] = val
    return out


class TwilioWhatsAppChannel:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    def _get_client(self) -> Client:
        """
        API Key auth when TWILIO_API_KEY is set:
          Client(api_key_sid, api_key_secret, account_sid)
        otherwise plain account SID + auth token.
        """
        if self._client is not None:
            return self._client
        s = config.settings
        if not (s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN):
            raise OutreachNotConfigured("Missing TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN")
        if s.TWILIO_API_KEY:
            self._client = Client(s.TWILIO_API_KEY, s.TWILIO_AUTH_TOKEN, s.TWILIO_ACCOUNT_SID)
        else:
            self._client = Client(s.TWILIO_ACCOUNT_SID, s.TWILIO_AUTH_TOKEN)
        return self._client

    def send(self, to: str, template_id: str, variables: Dict[str, str]) -> ChannelResult:
        to = (to or "").strip()
        template_id = (template_id or "").strip()
        if not to or not template_id:
            return ChannelResult(ok=False, error="invalid_input")

        params = _clean_variables(variables)
        if is_dry_run():
            log.info("[WA DRY-RUN] to=%s template=%s vars=%s", to, template_id, params)
            return ChannelResult(ok=True, sid="dry-run")

        s = config.settings
        kwargs = {
            "to": _wa(to),
            "content_sid": template_id,
            "content_variables": json.dumps(params),
        }
        if s.TWILIO_MESSAGING_SERVICE_SID:
            kwargs["messaging_service_sid"] = s.TWILIO_MESSAGING_SERVICE_SID
        elif s.TWILIO_WHATSAPP_FROM:
            kwargs["from_"] = _wa(s.TWILIO_WHATSAPP_FROM)
        else:
            return ChannelResult(ok=False, error="missing_sender")

        try:
            msg = self._get_client().messages.create(**kwargs)
        except TwilioRestException as e:
            log.error("[WA ERROR] to=%s status=%s code=%s err=%s", to, e.status, e.code, e.msg)
            return ChannelResult(ok=False, error=f"twilio_{e.code or e.status}")
        except (TwilioException, requests.RequestException, OutreachNotConfigured) as e:
            log.error("[WA ERROR] to=%s err=%s", to, e)
            return ChannelResult(ok=False, error=str(e) or "send_failed")

        log.info("[WA SENT] sid=%s to=%s template=%s", msg.sid, to, template_id)
        return ChannelResult(ok=True, sid=msg.sid)


def get_channel() -> ChannelProvider:
    return TwilioWhatsAppChannel()
