from fastapi import APIRouter

from crm_outreach import config

router = APIRouter()


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": config.settings.ENV,
        "channel_configured": config.channel_configured(),
        "missing_templates": config.missing_templates(),
    }
