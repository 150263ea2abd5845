"""CALCDASH — Definition Store Engine & Session Factory.

Only calculated field and metric definitions are persisted. Record batches
are posted per request and never reach the database.
"""

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from calcdash.config import settings
from calcdash.core.logging import get_logger

logger = get_logger("database")

db_url = settings.effective_database_url

DEFINITION_TABLES = ("dataset_calculated_fields", "metric_definitions")


def _mask_url(url: str) -> str:
    """Hide the password in a DB URL before logging it."""
    if "@" not in url:
        return url
    credentials, host = url.split("@", 1)
    scheme, _, user_part = credentials.partition("//")
    if ":" not in user_part:
        return url
    user = user_part.split(":", 1)[0]
    return f"{scheme}//{user}:****@{host}"


def backend_name(url: str) -> str:
    return "sqlite" if url.startswith("sqlite") else "postgresql"


def build_engine(url: str) -> Engine:
    """Create an engine for the definition store.

    An in-memory SQLite URL shares one connection, otherwise every session
    would see its own empty database.
    """
    kwargs: dict = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10
        kwargs["pool_recycle"] = 300
    return create_engine(url, **kwargs)


logger.info(f"Definition store: {backend_name(db_url)} ({_mask_url(db_url)})")
engine = build_engine(db_url)


def test_connection() -> bool:
    """Check the definition store answers SELECT 1."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Definition store unreachable: {e}")
        return False


def init_db(target: Engine = engine) -> None:
    """Create the definition tables that do not exist yet."""
    # Registers the table models on SQLModel.metadata
    import calcdash.models.definition_models  # noqa: F401

    SQLModel.metadata.create_all(target)
    missing = set(DEFINITION_TABLES) - set(inspect(target).get_table_names())
    if missing:
        raise RuntimeError(f"Definition tables missing after create_all: {sorted(missing)}")
    logger.info(f"Definition tables ready: {', '.join(DEFINITION_TABLES)}")


def get_session():
    """Dependency — yields a DB session."""
    with Session(engine) as session:
        yield session
