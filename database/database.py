import os
import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from tenacity import retry, stop_after_attempt, wait_fixed, before_sleep_log

from database.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///opportunity_alerts.db")


def _enable_sqlite_transactions(db_engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINTs work, and take the write
    lock up front so concurrent writers wait on busy_timeout instead of failing.
    """

    @event.listens_for(db_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(db_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections are shared across worker threads."""
    if url.startswith("sqlite"):
        db_engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_transactions(db_engine)
        return db_engine
    return create_engine(url, echo=echo, pool_pre_ping=True, pool_size=10, max_overflow=20)


def build_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


@retry(
    stop=stop_after_attempt(5),
    wait=wait_fixed(2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def init_db(db_engine: Optional[Engine] = None) -> None:
    """Create all tables, waiting for the database to come up."""
    db_engine = db_engine or engine
    with db_engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    Base.metadata.create_all(db_engine)
    logger.info("Database schema ready")

