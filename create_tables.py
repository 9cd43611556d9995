# create_tables.py
import argparse
import logging

from sqlalchemy import inspect

from db import make_engine
from models import Base
from settings import settings

log = logging.getLogger("create_tables")


def create_tables(database_url: str) -> list[str]:
    """Create any missing tables and return the names that were added."""
    engine = make_engine(database_url)
    try:
        existing = set(inspect(engine).get_table_names())
        Base.metadata.create_all(bind=engine)
        return [name for name in Base.metadata.tables if name not in existing]
    finally:
        engine.dispose()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create the premium code tables.")
    parser.add_argument("--database-url", default=settings.database_url)
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.log_level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    created = create_tables(args.database_url)
    if created:
        log.info("Created tables: %s", ", ".join(created))
    else:
        log.info("All tables already exist")


if __name__ == "__main__":
    main()
