import os
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker

from shared.config import get_database_url

DATABASE_URL = get_database_url()

# CRM actors are looked up here by email; opportunities themselves live in the
# document store (services/crm_store.py).

engine = create_engine(
    DATABASE_URL,
    future=True,
    pool_pre_ping=True,   # helps with idle connections
)

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, autocommit=False)
)

Base = declarative_base()


class User(Base):
    """Directory entry that gives a signed-in email a stable CRM user id."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def _ensure_sqlite_directory(url: str) -> None:
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    path = url[len(prefix):]
    if not path or path.startswith(":memory:"):
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def init_db() -> None:
    """Create tables if they do not exist."""
    _ensure_sqlite_directory(DATABASE_URL)
    Base.metadata.create_all(bind=engine)
