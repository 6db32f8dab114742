"""Database helpers for the check store."""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base


def get_engine(dsn: str | None = None, echo: bool = False) -> Engine:
    """Return SQLAlchemy engine.

    DSN is read from ``ADLEX_DSN`` environment variable when not provided.
    Defaults to SQLite database under ``var/``.
    """

    if dsn is None:
        dsn = os.getenv("ADLEX_DSN", "sqlite:///var/adlex.db")
    connect_args = {}
    if dsn.startswith("sqlite"):
        # engine is shared across threads
        connect_args["check_same_thread"] = False
    if dsn.startswith("sqlite:///") and dsn != "sqlite:///:memory:":
        path_str = dsn.replace("sqlite:///", "", 1)
        db_path = Path(path_str)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(dsn, echo=echo, future=True, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True, expire_on_commit=False)


def init_db(engine: Engine | None = None) -> None:
    """Initialise the database schema."""

    e = engine or get_engine()
    Base.metadata.create_all(e)
