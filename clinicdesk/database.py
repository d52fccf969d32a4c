# clinicdesk/database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy import text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .config import get_settings

logger = logging.getLogger(__name__)


def _begin_immediate_on_sqlite(engine) -> None:
    """
    pysqlite only issues BEGIN before the first write, and SQLite ignores
    SELECT ... FOR UPDATE, so a check-then-write would run unlocked. Take over
    transaction control and start every unit of work with BEGIN IMMEDIATE:
    the database write lock is held from the first read until commit.
    """
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str):
    """Create an engine for the given URL, with SQLite-specific connection handling."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": get_settings().sqlite_busy_timeout}
        # In-memory databases must share one connection across sessions, so
        # they cannot hold a transaction per session either
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(database_url, echo=False, connect_args=connect_args, poolclass=StaticPool)
        engine = create_engine(database_url, echo=False, connect_args=connect_args)
        _begin_immediate_on_sqlite(engine)
        return engine

    settings = get_settings()
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=False,
    )


# Create engine
engine = build_engine(get_settings().database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Second line of defence behind the row-lock conflict check: PostgreSQL refuses
# overlapping bookings for the same doctor at the storage level.
APPOINTMENT_OVERLAP_EXCLUSION = """
ALTER TABLE appointments
    ADD CONSTRAINT appointments_no_overlap
    EXCLUDE USING gist (
        doctor_id WITH =,
        tsrange(start_time, start_time + duration_minutes * interval '1 minute', '[)') WITH &&
    )
    WHERE (status IN ('SCHEDULED', 'CONFIRMED', 'COMPLETED'))
"""


def create_tables(bind=None):
    """Create all database tables - MUST import models first!"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created successfully")

    if bind.dialect.name != "postgresql":
        return
    try:
        with bind.begin() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_constraint WHERE conname = 'appointments_no_overlap'")
            ).first()
            if not exists:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
                conn.execute(text(APPOINTMENT_OVERLAP_EXCLUSION))
                logger.info("Installed appointment overlap exclusion constraint")
    except Exception as e:
        # Non-fatal: the transactional conflict check remains the primary guard
        logger.warning(f"Could not install appointment overlap exclusion constraint: {e}")

def drop_tables(bind=None):
    """Drop all database tables"""
    Base.metadata.drop_all(bind=bind or engine)
    logger.info("Database tables dropped successfully")
