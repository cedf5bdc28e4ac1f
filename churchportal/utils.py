"""
Database helpers for the church portal.
One pooled engine per process; every request borrows a session from it.
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from churchportal.config import get_database_url, get_db_pool_size, get_db_pool_timeout
from churchportal.models import Base, RoleRecord, ROLE_NAMES

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine with a bounded connection pool.
    Requests wait for a free connection instead of opening new ones.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        echo=False,
        pool_size=get_db_pool_size(),
        max_overflow=0,
        pool_timeout=get_db_pool_timeout(),
        pool_pre_ping=True,
    )


def get_engine() -> Engine:
    global _engine, _SessionLocal
    if _engine is None:
        _engine = create_db_engine(get_database_url())
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def seed_roles(db: Session) -> None:
    """Insert the four fixed roles if they are missing."""
    existing = {r.role_id for r in db.query(RoleRecord).all()}
    for role, name in ROLE_NAMES.items():
        if int(role) not in existing:
            db.add(RoleRecord(role_id=int(role), name=name))
    db.commit()


def init_database(engine: Optional[Engine] = None) -> Engine:
    """
    Create all tables and seed the role catalogue.
    Called at application startup.
    """
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        seed_roles(db)
    finally:
        db.close()
    logger.info("Database initialized")
    return engine


def get_db():
    """
    Dependency function for FastAPI to get database session.
    Yields session and ensures cleanup after request.
    """
    get_engine()
    db = _SessionLocal()
    try:
        yield db
    finally:
        db.close()
