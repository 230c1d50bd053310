"""
Database connection management for the inbox rules engine
"""
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

# Get database URL from environment variable
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///inbox_rules.db')

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_db_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions"""
    if url in ('sqlite://', 'sqlite:///:memory:'):
        return create_engine(url, connect_args={'check_same_thread': False}, poolclass=StaticPool)
    if url.startswith('sqlite'):
        return create_engine(url, connect_args={'check_same_thread': False})
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(url: str) -> sessionmaker:
    """Create a session factory bound to a fresh engine, creating all tables"""
    engine = create_db_engine(url)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(url: Optional[str] = None) -> sessionmaker:
    """Initialize the database, creating all tables"""
    global _engine, _session_factory
    _session_factory = create_session_factory(url or DATABASE_URL)
    _engine = _session_factory.kw['bind']
    return _session_factory


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        return init_db()
    return _session_factory


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Get a new database session, rolled back on error and always closed"""
    db = get_session_factory()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
