# db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from settings import settings


def make_engine(database_url: str):
    connect_args: dict = {}
    if database_url.startswith("sqlite"):
        # Sessions are used from FastAPI's threadpool; wait on SQLite's
        # write lock instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
