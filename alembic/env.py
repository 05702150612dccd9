"""
Alembic environment for channelsync.

The URL comes from channelsync settings (DATABASE_URL), never from
alembic.ini, so migrations and the app always target the same database.
SQLite runs in batch mode since it cannot ALTER most columns in place.
"""

import os
import sys
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

# Make the project root importable when alembic runs from the repo root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from channelsync.config import settings
from channelsync.database import Base, normalize_database_url, sqlite_connect_args
from channelsync import models  # noqa: F401 - register all tables on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
url = normalize_database_url(settings.database_url)


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a DBAPI connection"""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(url, poolclass=pool.NullPool, connect_args=sqlite_connect_args(url))

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=url.startswith("sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
