# scripts/run_outreach.py
"""
One outreach pass from the command line (system cron, manual runs).

    python -m scripts.run_outreach
    python -m scripts.run_outreach --lead LD-1042
"""
import argparse
import json
import sys

from sqlmodel import Session

from crm_outreach.db import create_db_and_tables, engine
from crm_outreach.logging_config import setup_logging
from crm_outreach.services.scheduler import run_lead_outreach_now, run_outreach


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the CRM outreach scheduler once.")
    parser.add_argument("--lead", help="lead id or lead code; runs the manual trigger for this lead only")
    args = parser.parse_args(argv)

    setup_logging()
    create_db_and_tables()

    with Session(engine) as session:
        if args.lead:
            result = run_lead_outreach_now(session, args.lead)
        else:
            result = run_outreach(session)

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
