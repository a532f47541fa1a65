"""
Versioned, forward-only schema migrations for the local store.

Each step runs in its own ``BEGIN IMMEDIATE`` transaction together with the
row that records it in ``schema_migrations``, so the version marker always
matches exactly the steps that fully completed. Step bodies use
``CREATE ... IF NOT EXISTS`` so a retried step never trips over structure
left behind by an earlier attempt.
"""

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

import aiosqlite

from .errors import (
    ChecksumMismatch,
    DuplicateVersion,
    LockTimeout,
    SchemaTooNew,
    StepExecutionFailed,
    is_lock_error,
)


logger = logging.getLogger(__name__)


VERSION_TABLE = "schema_migrations"

VERSION_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
    version INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""


def split_statements(body: str) -> list[str]:
    statements = []
    buffer = ""
    for char in body:
        buffer += char
        if char == ";" and sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            if statement != ";":
                statements.append(statement)
            buffer = ""

    if buffer.strip():
        statements.append(buffer.strip())
    return statements


@dataclass(frozen=True)
class Step:
    version: int
    description: str
    body: str

    def __post_init__(self):
        if self.version < 1:
            raise ValueError(f"Migration version must be >= 1, got {self.version}")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.body.encode("utf-8")).hexdigest()

    def statements(self) -> list[str]:
        return split_statements(self.body)


@dataclass
class AppliedStep:
    version: int
    description: str
    checksum: str
    applied_at: Optional[datetime]


def plan(steps: Iterable[Step]) -> list[Step]:
    """Order steps by version, rejecting duplicate versions."""
    ordered = sorted(steps, key=lambda s: s.version)
    for previous, step in zip(ordered, ordered[1:]):
        if previous.version == step.version:
            raise DuplicateVersion(step.version)
    return ordered


class MigrationRunner:

    def __init__(self, conn: aiosqlite.Connection, lock_timeout: float = 5.0):
        self.conn = conn
        self.lock_timeout = lock_timeout

    async def _has_version_table(self) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (VERSION_TABLE,)
        )
        return await cursor.fetchone() is not None

    async def current_version(self) -> int:
        if not await self._has_version_table():
            return 0
        cursor = await self.conn.execute(f"SELECT COALESCE(MAX(version), 0) FROM {VERSION_TABLE}")
        row = await cursor.fetchone()
        return row[0]

    async def history(self) -> list[AppliedStep]:
        if not await self._has_version_table():
            return []
        cursor = await self.conn.execute(
            f"SELECT version, description, checksum, applied_at FROM {VERSION_TABLE} ORDER BY version"
        )
        rows = await cursor.fetchall()
        return [
            AppliedStep(
                version=row[0],
                description=row[1],
                checksum=row[2],
                applied_at=datetime.fromisoformat(row[3]) if row[3] else None
            )
            for row in rows
        ]

    async def verify(self, steps: Iterable[Step]) -> None:
        """Check already-applied steps against the ones shipped with this build."""
        shipped = {step.version: step for step in plan(steps)}
        latest = max(shipped, default=0)

        for applied in await self.history():
            if applied.version > latest:
                raise SchemaTooNew(applied.version, latest)
            step = shipped.get(applied.version)
            if step and step.checksum != applied.checksum:
                raise ChecksumMismatch(applied.version, applied.checksum, step.checksum)

    async def apply(self, current_version: int, steps: Iterable[Step]) -> int:
        version = current_version
        for step in plan(steps):
            if step.version <= version:
                continue

            if await self._apply_step(step):
                logger.info(f"Applied migration {step.version} ({step.description})")
            else:
                logger.info(f"Migration {step.version} already applied by another process")
            version = step.version

        return version

    async def run(self, steps: Iterable[Step]) -> int:
        steps = plan(steps)
        await self.verify(steps)
        current = await self.current_version()
        new_version = await self.apply(current, steps)
        if new_version == current:
            logger.debug(f"Schema up to date at version {current}")
        else:
            logger.info(f"Schema migrated from version {current} to {new_version}")
        return new_version

    async def _apply_step(self, step: Step) -> bool:
        try:
            await self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if is_lock_error(e):
                raise LockTimeout(self.lock_timeout) from e
            raise StepExecutionFailed(step.version, e) from e

        try:
            await self.conn.execute(VERSION_TABLE_SQL)
            cursor = await self.conn.execute(
                f"SELECT 1 FROM {VERSION_TABLE} WHERE version = ?",
                (step.version,)
            )
            if await cursor.fetchone() is not None:
                await self.conn.execute("COMMIT")
                return False

            for statement in step.statements():
                await self.conn.execute(statement)

            await self.conn.execute(
                f"INSERT INTO {VERSION_TABLE} (version, description, checksum) VALUES (?, ?, ?)",
                (step.version, step.description, step.checksum)
            )
            await self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            await self._rollback()
            logger.error(f"Migration {step.version} ({step.description}) rolled back: {e}")
            if is_lock_error(e):
                raise LockTimeout(self.lock_timeout) from e
            raise StepExecutionFailed(step.version, e) from e

        return True

    async def _rollback(self) -> None:
        if self.conn.in_transaction:
            await self.conn.execute("ROLLBACK")
