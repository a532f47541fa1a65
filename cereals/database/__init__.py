from .errors import (
    StoreError,
    MigrationError,
    DuplicateVersion,
    StepExecutionFailed,
    ChecksumMismatch,
    SchemaTooNew,
    LockTimeout,
    ConstraintViolation,
)
from .migrations import Step, MigrationRunner, plan
from .models import MIGRATIONS, UserStatus, MessageType, GroupRole
from .repository import (
    Repository,
    User,
    Message,
    Contact,
    AuthToken,
    Group,
    GroupMember,
    GroupContact,
    GroupMessage,
)

__all__ = [
    "StoreError",
    "MigrationError",
    "DuplicateVersion",
    "StepExecutionFailed",
    "ChecksumMismatch",
    "SchemaTooNew",
    "LockTimeout",
    "ConstraintViolation",
    "Step",
    "MigrationRunner",
    "plan",
    "MIGRATIONS",
    "UserStatus",
    "MessageType",
    "GroupRole",
    "Repository",
    "User",
    "Message",
    "Contact",
    "AuthToken",
    "Group",
    "GroupMember",
    "GroupContact",
    "GroupMessage",
]
