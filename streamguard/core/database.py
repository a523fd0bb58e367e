from sqlalchemy import JSON, Text, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from streamguard.config import DatabaseConfig

# If DATABASE_URL is provided directly, use it; otherwise construct from components
db_config = DatabaseConfig()
DATABASE_URL = db_config.url

# SQLite connections are shared with FastAPI's threadpool
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=db_config.echo, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(postgresql.JSONB(astext_type=Text()), "postgresql")

# Import all models to register them with Base
def register_models():
    from streamguard.models import (  # noqa: F401
        User, Activity, PlaybackSession, ActivityLocation,
        UserFingerprint, AnomalyEvent, BackgroundTask,
    )
    return True

def dialect_insert(db: Session, table):
    """INSERT construct supporting ON CONFLICT for the session's backend."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)

# Dependency for FastAPI routes
def get_db():
    """Database session dependency for FastAPI routes"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
