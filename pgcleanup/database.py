from functools import lru_cache

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.schema import CreateSchema

from pgcleanup.config import Settings, get_settings

# Load .env file (database URLs live there)
load_dotenv()

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(
    url: str,
    schema: str | None = None,
    statement_timeout_seconds: int = 300,
    connect_timeout_seconds: int = 5,
    application_name: str = "postgres-cleanup",
) -> Engine:
    """
    Build an engine for one store.

    Models are declared without a schema; the configured schema is applied
    through schema_translate_map so the same models serve both databases.
    PostgreSQL connections get a libpq statement_timeout so no single
    statement can block a run indefinitely.
    """
    connect_args: dict[str, object] = {}
    if url.startswith("postgresql"):
        connect_args["application_name"] = application_name
        connect_args["connect_timeout"] = connect_timeout_seconds
        connect_args["options"] = f"-c statement_timeout={statement_timeout_seconds * 1000}"
    elif url.startswith("sqlite"):
        connect_args["timeout"] = connect_timeout_seconds

    engine = create_engine(
        url,
        future=True,
        echo=False,  # set True if you want to see SQL in terminal
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    if schema:
        engine = engine.execution_options(schema_translate_map={None: schema})
    return engine


def engines_from_settings(settings: Settings) -> tuple[Engine, Engine]:
    """Return (main, archive) engines for the given settings."""
    main = create_store_engine(
        settings.MAIN_DATABASE_URL,
        schema=settings.SCHEMA,
        statement_timeout_seconds=settings.STATEMENT_TIMEOUT_SECONDS,
        connect_timeout_seconds=settings.CONNECT_TIMEOUT_SECONDS,
    )
    archive = create_store_engine(
        settings.ARCHIVE_DATABASE_URL,
        schema=settings.SCHEMA,
        statement_timeout_seconds=settings.STATEMENT_TIMEOUT_SECONDS,
        connect_timeout_seconds=settings.CONNECT_TIMEOUT_SECONDS,
    )
    return main, archive


@lru_cache(maxsize=1)
def get_engines() -> tuple[Engine, Engine]:
    """Process-wide (main, archive) engines built from the cached settings."""
    return engines_from_settings(get_settings())


def init_db(engine: Engine, schema: str | None = None) -> None:
    """
    Import models and create schema and tables if they don't exist.
    Alembic is the real migration tool, but this keeps local dev and the
    archive bootstrap sane.
    """
    from pgcleanup import models  # noqa: F401

    if schema and engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(CreateSchema(schema, if_not_exists=True))

    Base.metadata.create_all(bind=engine)
