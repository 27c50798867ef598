import logging

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker

from feedsync.config import DB_URL

logger = logging.getLogger(__name__)


def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    mode = cursor.fetchone()[0]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    if mode != "wal":
        logger.warning("Failed to enable WAL mode, got: %s", mode)


def make_engine(url: str):
    """SQLite engine shared by the API, daemon and CLI: WAL, foreign keys, 15s busy timeout."""
    eng = create_engine(url, echo=False, connect_args={"timeout": 15})
    event.listen(eng, "connect", _set_sqlite_pragma)
    return eng


engine = make_engine(DB_URL)
SessionLocal = sessionmaker(bind=engine)


def init_db():
    """Ensure database is ready. Schema managed by Alembic migrations."""
    if not inspect(engine).has_table("alembic_version"):
        raise RuntimeError("Database not initialized. Run: alembic upgrade head")
    with engine.connect() as conn:
        revision = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    if revision is None:
        raise RuntimeError("Database has no applied migrations. Run: alembic upgrade head")
    logger.debug("Database at migration %s", revision)


def get_session():
    """Get a new database session."""
    return SessionLocal()
