from sqlmodel import create_engine, Session
from typing import Generator
import os

from app.core.config import settings

DATABASE_URL = settings.database_url


def build_engine(url: str):
    """PostgreSQL gets a sized pool; a sqlite url (local runs) gets a thread-shared connection."""
    echo = bool(os.getenv("DEBUG"))
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600
    )


engine = build_engine(DATABASE_URL)


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def session_factory() -> Session:
    """Open a standalone session for work running outside a request (timers, queue replays)."""
    return Session(engine)
