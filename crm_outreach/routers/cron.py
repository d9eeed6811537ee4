# crm_outreach/routers/cron.py
from fastapi import APIRouter, Depends
from sqlmodel import Session

from crm_outreach.db import get_session
from crm_outreach.deps import require_admin_key
from crm_outreach.services.scheduler import run_outreach

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_admin_key)])


@router.api_route("/outreach/run", methods=["GET", "POST"])
def cron_outreach_run(session: Session = Depends(get_session)):
    """Scheduler trigger. Always 200; `ok: false` means not configured or store down."""
    return run_outreach(session).to_dict()
