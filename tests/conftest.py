import sqlite3
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from cereals.config import Config
from cereals.database.repository import Repository


EXPECTED_TABLES = sorted([
    "users",
    "messages",
    "contacts",
    "auth_tokens",
    "groups",
    "group_members",
    "group_contacts",
    "group_messages",
])


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(data_dir=tmp_path, lock_timeout=1.0)


@pytest_asyncio.fixture
async def repo(config: Config):
    repository = Repository(config.db_path, lock_timeout=config.lock_timeout)
    await repository.connect()
    yield repository
    await repository.close()


@pytest_asyncio.fixture
async def conn(tmp_path: Path):
    """Bare connection configured the way the store configures its own."""
    connection = await aiosqlite.connect(tmp_path / "bare.db", isolation_level=None)
    connection.row_factory = aiosqlite.Row
    await connection.execute("PRAGMA foreign_keys = ON")
    yield connection
    await connection.close()


async def schema_snapshot(connection) -> list[tuple]:
    cursor = await connection.execute(
        "SELECT type, name, sql FROM sqlite_master WHERE name != 'schema_migrations' ORDER BY type, name"
    )
    return [tuple(row) for row in await cursor.fetchall()]


async def user_tables(connection) -> list[str]:
    cursor = await connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' "
        "AND name NOT LIKE 'sqlite_%' AND name != 'schema_migrations' ORDER BY name"
    )
    return [row[0] for row in await cursor.fetchall()]


def hold_exclusive_lock(path: Path) -> sqlite3.Connection:
    holder = sqlite3.connect(path, isolation_level=None)
    holder.execute("CREATE TABLE IF NOT EXISTS scratch (x INTEGER)")
    holder.execute("BEGIN EXCLUSIVE")
    return holder
