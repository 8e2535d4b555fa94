from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import os
from dotenv import load_dotenv
from .models.base import Base

load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./account_security.db")


def _connect_args(url: str) -> dict:
    if "sqlite" in url:
        # Writers wait on the database lock instead of failing immediately
        return {"check_same_thread": False, "timeout": 30}
    return {}


# Create synchronous engine
engine = create_engine(
    DATABASE_URL,
    echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
    connect_args=_connect_args(DATABASE_URL)
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Synchronous database dependency for FastAPI"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables"""
    # Import models so every table is registered on the metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_session_factory():
    """Session factory dependency for collaborators that commit independently"""
    return SessionLocal
