import sys

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from shiftledger.config import settings
from shiftledger.db import Base
import shiftledger.models  # noqa: F401  registers the tables on Base.metadata


def missing_tables(engine) -> list[str]:
    present = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in present)


def main() -> int:
    engine = create_engine(settings.database_url, pool_pre_ping=True)
    print(f"database: {engine.url.render_as_string(hide_password=True)}")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        missing = missing_tables(engine)
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1
    print("DB connection OK")
    if missing:
        print(f"missing tables: {', '.join(missing)}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
