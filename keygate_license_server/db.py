import os
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def get_database_uri() -> str:
    """
    DATABASE_URL points at Postgres in deployment.
    For local dev, we fall back to sqlite.
    Also fixes 'postgres://' -> 'postgresql://' for SQLAlchemy.
    """
    url = os.getenv("DATABASE_URL", "").strip()

    if not url:
        # Local dev fallback
        return "sqlite:///keygate_license.db"

    # SQLAlchemy expects postgresql:// not postgres://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


def get_engine_options(uri: str) -> dict:
    # sqlite has no pool timeout; Postgres waits at most a few seconds for a connection
    if uri.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_timeout": int(os.getenv("DATABASE_POOL_TIMEOUT", "5")),
        "connect_args": {"options": "-c statement_timeout=5000"},
    }
