import re
import sqlite3
from typing import Optional


class StoreError(Exception):
    pass


class MigrationError(StoreError):
    """Bootstrap-fatal: the store is not in a known schema state."""


class DuplicateVersion(MigrationError):
    
    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Migration version {version} is declared more than once")


class StepExecutionFailed(MigrationError):
    
    def __init__(self, version: int, cause: Exception):
        self.version = version
        self.cause = cause
        super().__init__(f"Migration {version} failed: {cause}")


class ChecksumMismatch(MigrationError):
    
    def __init__(self, version: int, recorded: str, shipped: str):
        self.version = version
        self.recorded = recorded
        self.shipped = shipped
        super().__init__(
            f"Migration {version} was modified after it was applied "
            f"(recorded {recorded[:12]}, shipped {shipped[:12]}). "
            "Add a new migration instead of editing an applied one."
        )


class SchemaTooNew(MigrationError):
    
    def __init__(self, version: int, latest: int):
        self.version = version
        self.latest = latest
        super().__init__(
            f"Store schema version {version} is newer than supported version {latest}. "
            "Upgrade the application."
        )


class LockTimeout(StoreError):
    """Retryable: another process held the store lock for too long."""
    
    def __init__(self, timeout: float, path: Optional[str] = None):
        self.timeout = timeout
        self.path = path
        target = path or "the store"
        super().__init__(f"Could not lock {target} within {timeout:g}s; try again later")


class ConstraintViolation(StoreError):
    
    def __init__(self, entity: str, constraint: str, detail: str = ""):
        self.entity = entity
        self.constraint = constraint
        self.detail = detail
        super().__init__(f"{entity}: {constraint} violated" + (f" ({detail})" if detail else ""))


_COLUMN_CONSTRAINT = re.compile(r"^(UNIQUE|NOT NULL) constraint failed: (.+)$")
_CHECK_CONSTRAINT = re.compile(r"^CHECK constraint failed: (\w+)")
_STATEMENT_TABLE = re.compile(
    r"^\s*(?:INSERT(?:\s+OR\s+\w+)?\s+INTO|UPDATE(?:\s+OR\s+\w+)?|DELETE\s+FROM)\s+[\"`]?(\w+)",
    re.IGNORECASE,
)


def is_lock_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


def statement_table(sql: str) -> str:
    match = _STATEMENT_TABLE.match(sql)
    return match.group(1) if match else "unknown"


def constraint_violation(exc: sqlite3.IntegrityError, sql: str = "") -> ConstraintViolation:
    message = str(exc)
    
    match = _COLUMN_CONSTRAINT.match(message)
    if match:
        kind, columns = match.groups()
        qualified = [c.strip() for c in columns.split(",")]
        entity = qualified[0].split(".")[0]
        names = "_".join(c.split(".")[-1] for c in qualified)
        prefix = "unique" if kind == "UNIQUE" else "not_null"
        return ConstraintViolation(entity, f"{prefix}_{names}", message)
    
    match = _CHECK_CONSTRAINT.match(message)
    if match:
        return ConstraintViolation(statement_table(sql), f"check_{match.group(1)}", message)
    
    if message.startswith("FOREIGN KEY"):
        return ConstraintViolation(statement_table(sql), "foreign_key", message)
    
    return ConstraintViolation(statement_table(sql), "integrity", message)
