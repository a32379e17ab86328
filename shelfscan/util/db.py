from collections.abc import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel
import structlog

from shelfscan.internal import models  # noqa: F401  registers the tables
from shelfscan.internal.env_settings import Settings

logger = structlog.stdlib.get_logger()


def create_db_engine(settings: Settings | None = None) -> Engine:
    settings = settings or Settings()
    db = settings.db
    if db.use_postgres:
        engine = create_engine(
            f"postgresql://{db.postgres_user}:{db.postgres_password}@{db.postgres_host}:{db.postgres_port}/{db.postgres_db}?sslmode={db.postgres_ssl_mode}",
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_pre_ping=db.pool_pre_ping,
        )
    elif settings.get_sqlite_path() == ":memory:":
        # a single shared connection, otherwise every session sees an empty database
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            f"sqlite+pysqlite:///{settings.get_sqlite_path()}",
            connect_args={"check_same_thread": False},
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_pre_ping=db.pool_pre_ping,
        )

    logger.info(
        "Database connection pool configured",
        database_type="PostgreSQL" if db.use_postgres else "SQLite",
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_pre_ping=db.pool_pre_ping,
    )

    debug = settings.app.debug

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_conn, connection_record):  # pyright: ignore[reportUnusedFunction]
        """Log when a new connection is established"""
        if debug:
            logger.debug("Database connection established")

    return engine


def init_db(engine: Engine) -> None:
    """Create the book_cache and rate_window tables if they are missing."""
    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
