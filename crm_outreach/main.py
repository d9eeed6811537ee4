# crm_outreach/main.py
import logging

from fastapi import FastAPI

from crm_outreach import config
from crm_outreach import models  # noqa: F401  registers tables
from crm_outreach.db import create_db_and_tables
from crm_outreach.logging_config import setup_logging

# Routers
from crm_outreach.routers.cron import router as cron_router
from crm_outreach.routers.health import router as health_router
from crm_outreach.routers.outreach import router as outreach_router

setup_logging()
log = logging.getLogger("crm_outreach.main")

app = FastAPI(title="CRM Outreach Scheduler", version="0.1.0")


@app.get("/")
def root():
    return {"ok": True, "msg": "root alive"}


# ---------- Routers ----------
app.include_router(health_router)
app.include_router(cron_router)
app.include_router(outreach_router)


# ---------- Startup ----------
@app.on_event("startup")
def on_startup():
    create_db_and_tables()
    missing = config.missing_templates()
    if missing:
        log.warning("WhatsApp templates not configured for steps: %s", ", ".join(missing))
    config.validate_templates()
