"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite)
- Table definitions for sessions, word ledgers, invites, feed streams and poems
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from foundpoems.core.config import settings

logger = logging.getLogger("foundpoems")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # SQLite is used for tests and local development
        if ":memory:" in url:
            _engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
        else:
            _engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success and rolls back on error, so every `with` block is one
    transaction.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Tag naive datetimes read back from the store as UTC; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Source texts: immutable, one per session
source_texts = Table(
    'source_texts',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('title', Text, nullable=False),
    Column('body', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Feed streams: configured external feeds that spawn sessions
feed_streams = Table(
    'feed_streams',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('title', Text, nullable=False),
    Column('slug', String(200), nullable=False, unique=True),
    Column('feed_url', Text, nullable=False),
    Column('min_participants', Integer, nullable=False),
    Column('max_participants', Integer, nullable=False),
    Column('duration_minutes', Integer, nullable=False),
    Column('time_of_day', String(5), nullable=False),
    Column('auto_publish', Boolean, nullable=False, server_default=text('false')),
    Column('content_paths', JSON, nullable=False, default=list),
    Column('last_item_guid', Text, nullable=True),
    Column('last_item_published_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_feed_streams_created', 'created_at', 'id'),
)

# Stream collaborator roster (invited to every spawned session)
stream_collaborators = Table(
    'stream_collaborators',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('stream_id', String(36), ForeignKey('feed_streams.id', ondelete='CASCADE'), nullable=False),
    Column('email', String(320), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('stream_id', 'email', name='uq_stream_collaborator_email'),
)

# Sessions: one time-boxed redaction event
sessions = Table(
    'sessions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('title', Text, nullable=False),
    Column('status', String(20), nullable=False, server_default='scheduled'),
    Column('starts_at', DateTime(timezone=True), nullable=False),
    Column('ends_at', DateTime(timezone=True), nullable=False),
    Column('source_id', String(36), ForeignKey('source_texts.id'), nullable=False),
    Column('stream_id', String(36), ForeignKey('feed_streams.id', ondelete='SET NULL'), nullable=True),
    Column('feed_item_guid', Text, nullable=True),
    Column('feed_item_published_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_sessions_status_window', 'status', 'starts_at', 'ends_at'),
    Index('idx_sessions_stream', 'stream_id'),
    UniqueConstraint('stream_id', 'feed_item_guid', 'feed_item_published_at', name='uq_sessions_feed_item'),
)

# Word ledger
words = Table(
    'words',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('session_id', String(36), ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False),
    Column('position', Integer, nullable=False),
    Column('text', Text, nullable=False),
    Column('hidden', Boolean, nullable=False, server_default=text('false')),
    Column('hidden_at', DateTime(timezone=True), nullable=True),
    Column('actor_id', String(64), nullable=True),
    UniqueConstraint('session_id', 'position', name='uq_words_session_position'),
)

# Invites
session_invites = Table(
    'session_invites',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('session_id', String(36), ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False),
    Column('email', String(320), nullable=False),
    Column('token', String(64), nullable=False, unique=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('responded_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('session_id', 'email', name='uq_invites_session_email'),
)

# Published poems (one per session; publish is an upsert)
published_poems = Table(
    'published_poems',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('session_id', String(36), ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('body', Text, nullable=False),
    Column('published_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_poems_published', 'published_at', 'id'),
)
