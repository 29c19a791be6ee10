"""
ProductGuard Enforcement Core - Database Configuration
PostgreSQL connection using SQLAlchemy
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL


def build_engine(url: str):
    """Create an engine; in-memory SQLite is shared across threads for local runs."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False, pool_pre_ping=True)


# Create engine
engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database - create all tables."""
    # Import models so they register on Base.metadata
    from .models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
