import sqlite3

import pytest

from cereals.database.errors import (
    ChecksumMismatch,
    DuplicateVersion,
    LockTimeout,
    SchemaTooNew,
    StepExecutionFailed,
)
from cereals.database.migrations import MigrationRunner, Step, plan, split_statements
from cereals.database.models import CREATE_GROUP_TABLES, MIGRATIONS
from cereals.database.repository import Repository

from tests.conftest import EXPECTED_TABLES, hold_exclusive_lock, schema_snapshot, user_tables


STEP_1, STEP_2 = MIGRATIONS


class TestPlan:

    def test_orders_steps_by_version(self):
        assert [s.version for s in plan([STEP_2, STEP_1])] == [1, 2]

    def test_gaps_are_allowed(self):
        steps = [Step(10, "c", "SELECT 1;"), Step(1, "a", "SELECT 1;"), Step(5, "b", "SELECT 1;")]
        assert [s.version for s in plan(steps)] == [1, 5, 10]

    def test_rejects_duplicate_versions(self):
        with pytest.raises(DuplicateVersion) as exc_info:
            plan([STEP_1, STEP_2, Step(2, "again", "SELECT 1;")])
        assert exc_info.value.version == 2

    def test_rejects_non_positive_version(self):
        with pytest.raises(ValueError):
            Step(0, "zero", "SELECT 1;")

    def test_shipped_steps(self):
        assert [(s.version, s.description) for s in plan(MIGRATIONS)] == [
            (1, "create_initial_tables"),
            (2, "create_group_tables"),
        ]
        assert all("IF NOT EXISTS" in stmt for s in MIGRATIONS for stmt in s.statements())

    def test_checksum_follows_body(self):
        assert STEP_1.checksum == Step(1, "renamed", STEP_1.body).checksum
        assert STEP_1.checksum != Step(1, STEP_1.description, STEP_1.body + "\n").checksum


class TestSplitStatements:

    def test_shipped_steps_have_four_tables_each(self):
        assert len(STEP_1.statements()) == 4
        assert len(STEP_2.statements()) == 4

    def test_semicolon_inside_string_literal(self):
        body = "INSERT INTO t VALUES ('a;b');\nSELECT 1;"
        assert split_statements(body) == ["INSERT INTO t VALUES ('a;b');", "SELECT 1;"]

    def test_trailing_statement_without_semicolon(self):
        assert split_statements("SELECT 1; SELECT 2") == ["SELECT 1;", "SELECT 2"]

    def test_blank_body(self):
        assert split_statements("  \n ") == []


class TestApply:

    async def test_fresh_store_reaches_latest_version(self, conn):
        runner = MigrationRunner(conn)

        assert await runner.current_version() == 0
        assert await runner.apply(0, MIGRATIONS) == 2
        assert await runner.current_version() == 2
        assert await user_tables(conn) == EXPECTED_TABLES

        history = await runner.history()
        assert [(h.version, h.description) for h in history] == [
            (1, "create_initial_tables"),
            (2, "create_group_tables"),
        ]
        assert history[0].checksum == STEP_1.checksum
        assert history[0].applied_at is not None

    async def test_reapply_is_a_no_op(self, conn):
        runner = MigrationRunner(conn)
        version = await runner.apply(0, MIGRATIONS)
        before = await schema_snapshot(conn)
        history_before = await runner.history()

        assert await runner.apply(version, MIGRATIONS) == version
        assert await schema_snapshot(conn) == before
        assert await runner.history() == history_before

    async def test_applies_only_newer_steps(self, conn):
        runner = MigrationRunner(conn)
        assert await runner.apply(0, [STEP_1]) == 1
        assert "groups" not in await user_tables(conn)

        assert await runner.apply(1, MIGRATIONS) == 2
        assert await user_tables(conn) == EXPECTED_TABLES

    async def test_execution_order_ignores_input_order(self, conn, tmp_path):
        import aiosqlite

        ordered = MigrationRunner(conn)
        await ordered.apply(0, [STEP_1, STEP_2])

        async with aiosqlite.connect(tmp_path / "reversed.db", isolation_level=None) as other:
            reversed_runner = MigrationRunner(other)
            assert await reversed_runner.apply(0, [STEP_2, STEP_1]) == 2
            assert await schema_snapshot(other) == await schema_snapshot(conn)
            assert [h.version for h in await reversed_runner.history()] == [1, 2]

    async def test_failed_step_leaves_no_partial_structure(self, conn):
        broken_body = CREATE_GROUP_TABLES.replace(
            "CREATE TABLE IF NOT EXISTS group_contacts (",
            "CREATE TABLE IF NOT EXISTS group_contacts (user_id INTEGER NOT NULL,,",
        )
        broken = Step(2, "create_group_tables", broken_body)
        runner = MigrationRunner(conn)

        with pytest.raises(StepExecutionFailed) as exc_info:
            await runner.apply(0, [STEP_1, broken])

        assert exc_info.value.version == 2
        assert exc_info.value.cause is not None
        assert await runner.current_version() == 1
        tables = await user_tables(conn)
        assert "groups" not in tables
        assert "group_members" not in tables
        assert not conn.in_transaction

        assert await runner.apply(1, MIGRATIONS) == 2
        assert await user_tables(conn) == EXPECTED_TABLES

    async def test_step_retried_over_leftover_structure(self, conn):
        runner = MigrationRunner(conn)
        await runner.apply(0, [STEP_1])
        await conn.execute(STEP_2.statements()[0])

        assert await runner.apply(1, MIGRATIONS) == 2
        assert await user_tables(conn) == EXPECTED_TABLES

    async def test_conflicting_structure_is_fatal(self, conn):
        await conn.execute("CREATE TABLE scratch (x INTEGER)")
        await conn.execute("CREATE INDEX messages ON scratch (x)")
        runner = MigrationRunner(conn)

        with pytest.raises(StepExecutionFailed) as exc_info:
            await runner.apply(0, MIGRATIONS)

        assert exc_info.value.version == 1
        assert await runner.current_version() == 0
        assert "users" not in await user_tables(conn)

    async def test_step_applied_by_another_process_is_skipped(self, conn, tmp_path):
        import aiosqlite

        await MigrationRunner(conn).apply(0, MIGRATIONS)

        async with aiosqlite.connect(tmp_path / "bare.db", isolation_level=None) as second:
            stale = MigrationRunner(second)
            assert await stale.apply(0, MIGRATIONS) == 2
            assert len(await stale.history()) == 2


class TestVerify:

    async def test_edited_step_is_detected(self, conn):
        runner = MigrationRunner(conn)
        await runner.apply(0, MIGRATIONS)
        edited = Step(1, STEP_1.description, STEP_1.body.replace("avatar_url TEXT,", "avatar TEXT,", 1))

        with pytest.raises(ChecksumMismatch) as exc_info:
            await runner.verify([edited, STEP_2])
        assert exc_info.value.version == 1

    async def test_store_newer_than_build(self, conn):
        runner = MigrationRunner(conn)
        future = Step(3, "add_future_table", "CREATE TABLE IF NOT EXISTS future (id INTEGER);")
        await runner.apply(0, MIGRATIONS + [future])

        with pytest.raises(SchemaTooNew) as exc_info:
            await runner.verify(MIGRATIONS)
        assert exc_info.value.version == 3
        assert exc_info.value.latest == 2

    async def test_clean_store_verifies(self, conn):
        runner = MigrationRunner(conn)
        await runner.verify(MIGRATIONS)
        await runner.apply(0, MIGRATIONS)
        await runner.verify(MIGRATIONS)


class TestBootstrap:

    async def test_duplicate_versions_prevent_startup(self, config):
        repo = Repository(config.db_path, migrations=MIGRATIONS + [Step(1, "dup", "SELECT 1;")])

        with pytest.raises(DuplicateVersion):
            await repo.connect()
        with pytest.raises(RuntimeError):
            repo.conn

    async def test_failed_step_prevents_startup(self, config):
        broken = Step(3, "broken", "CREATE TABLE IF NOT EXISTS broken (id INTEGER,,);")
        repo = Repository(config.db_path, migrations=MIGRATIONS + [broken])

        with pytest.raises(StepExecutionFailed):
            await repo.connect()

        async with Repository(config.db_path) as healthy:
            assert healthy.schema_version == 2

    async def test_lock_held_by_another_process_times_out(self, config):
        holder = hold_exclusive_lock(config.db_path)
        try:
            repo = Repository(config.db_path, lock_timeout=0.2)
            with pytest.raises(LockTimeout) as exc_info:
                await repo.connect()
            assert exc_info.value.timeout == 0.2
            assert exc_info.value.path == str(config.db_path)
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        async with Repository(config.db_path, lock_timeout=0.2) as repo:
            assert repo.schema_version == 2

    async def test_reopen_does_not_reapply(self, config):
        async with Repository(config.db_path) as first:
            history = await first.migration_history()

        async with Repository(config.db_path) as second:
            assert second.schema_version == 2
            assert await second.migration_history() == history

    async def test_lock_timeout_during_pending_step_names_the_file(self, config):
        async with Repository(config.db_path) as repo:
            assert repo.schema_version == 2

        holder = sqlite3.connect(config.db_path, isolation_level=None)
        holder.execute("BEGIN IMMEDIATE")
        try:
            future = Step(3, "add_future_table", "CREATE TABLE IF NOT EXISTS future (id INTEGER);")
            repo = Repository(config.db_path, lock_timeout=0.2, migrations=MIGRATIONS + [future])
            with pytest.raises(LockTimeout) as exc_info:
                await repo.connect()
            assert exc_info.value.path == str(config.db_path)
            assert str(config.db_path) in str(exc_info.value)
        finally:
            holder.execute("ROLLBACK")
            holder.close()
