import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Some hosts hand out postgres:// but SQLAlchemy needs postgresql://"""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def sqlite_connect_args(url: str) -> dict:
    # Scheduler jobs and request handlers share the SQLite file across threads
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


database_url = normalize_database_url(settings.database_url)

engine = create_engine(
    database_url,
    connect_args=sqlite_connect_args(database_url),
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create any missing tables; alembic owns schema changes after that"""
    from . import models  # noqa: F401 - register mappers

    logger.info(f"Creating tables on {database_url.split('@')[-1][:40]}")
    Base.metadata.create_all(bind=engine)
