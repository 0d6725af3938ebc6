"""
Engine and session factory for the chat store.

Production runs on PostgreSQL through pg8000; tests fall back to a shared
in-memory SQLite database when ``TESTING=true`` and no URL is configured.
"""

import logging
import os
import ssl
import urllib.parse
from contextlib import contextmanager
from typing import Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv()

logger = logging.getLogger(__name__)

TESTING = os.getenv("TESTING", "false").lower() == "true"

POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
POOL_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
POOL_RECYCLE_SECONDS = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "300"))


def resolve_database_url(raw_url: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    Normalize a configured URL for SQLAlchemy and split off ``sslmode``.

    Returns ``(url, ssl_mode)``. ``postgres://`` and ``postgresql://`` URLs are
    rewritten to the pg8000 driver, which rejects ``sslmode`` as a query option.
    """
    if not raw_url:
        if not TESTING:
            raise ValueError("DATABASE_URL environment variable is not set")
        return "sqlite:///:memory:", None

    if raw_url.startswith("sqlite"):
        return raw_url, None

    if raw_url.startswith("postgres://"):
        raw_url = "postgresql://" + raw_url[len("postgres://"):]

    parts = urllib.parse.urlparse(raw_url)
    query = urllib.parse.parse_qs(parts.query)
    ssl_mode = query.pop("sslmode", [None])[0]

    if parts.scheme != "postgresql":
        # Explicit driver in the URL; leave it alone
        return raw_url, ssl_mode

    rebuilt = parts._replace(
        scheme="postgresql+pg8000",
        query=urllib.parse.urlencode(query, doseq=True),
    )
    return urllib.parse.urlunparse(rebuilt), ssl_mode


def _ssl_connect_args(ssl_mode: Optional[str]) -> dict:
    if TESTING or ssl_mode == "disable":
        return {}
    # Managed Postgres presents certificates pg8000 cannot verify by hostname
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return {"ssl_context": context}


def build_engine(url: str, ssl_mode: Optional[str] = None) -> Engine:
    if url.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=POOL_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=POOL_RECYCLE_SECONDS,
        connect_args=_ssl_connect_args(ssl_mode),
    )


DATABASE_URL, _SSL_MODE = resolve_database_url(os.getenv("DATABASE_URL"))
engine = build_engine(DATABASE_URL, _SSL_MODE)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """Session for work outside a request, e.g. SSE streams run in the threadpool."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Ensured chat tables on {engine.url.get_backend_name()}")


def drop_tables():
    Base.metadata.drop_all(bind=engine)
