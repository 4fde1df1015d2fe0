"""
Alembic environment shared by the main and archive databases.

Both databases carry the same tables; `-x db=archive` selects the archive
URL. The version table lives in the configured schema next to the tables.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.schema import CreateSchema

from pgcleanup import models  # noqa: F401
from pgcleanup.config import get_settings
from pgcleanup.database import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

settings = get_settings()
target_db = context.get_x_argument(as_dictionary=True).get("db", "main")
if target_db not in ("main", "archive"):
    raise ValueError(f"unknown -x db={target_db}, expected main or archive")

database_url = settings.ARCHIVE_DATABASE_URL if target_db == "archive" else settings.MAIN_DATABASE_URL
schema = settings.SCHEMA


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=schema,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(database_url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # The version table needs its schema before the first migration runs
        if schema and connection.dialect.name == "postgresql":
            connection.execute(CreateSchema(schema, if_not_exists=True))
            connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=schema if connection.dialect.name == "postgresql" else None,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
