# scripts/init_db.py
from sqlalchemy import inspect

from crm_outreach.db import create_db_and_tables, engine


def main() -> None:
    print("Using engine:", engine.url)

    print("Creating tables...")
    create_db_and_tables()

    insp = inspect(engine)
    print("Tables now in DB:", insp.get_table_names())
    for name in ("outreach_log", "automation_failure"):
        cols = [c["name"] for c in insp.get_columns(name)]
        print(f"{name}:", ", ".join(cols))


if __name__ == "__main__":
    main()
