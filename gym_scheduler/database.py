# database.py
from databases import Database
from sqlalchemy import create_engine, MetaData

from gym_scheduler.config import DATABASE_URL

metadata = MetaData()

# Create the core database objects
database = Database(DATABASE_URL)
engine = create_engine(DATABASE_URL)


def create_tables(url: str = DATABASE_URL):
    """Creates any missing tables for `url` with a short-lived synchronous engine."""
    # models must be imported so their tables are registered on `metadata`
    from gym_scheduler import models  # noqa: F401

    if url == DATABASE_URL:
        metadata.create_all(bind=engine)
        return
    sync_engine = create_engine(url)
    try:
        metadata.create_all(bind=sync_engine)
    finally:
        sync_engine.dispose()
