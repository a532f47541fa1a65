from typing import Optional

from .config import Config, load_config
from .database.repository import Repository


async def bootstrap(config: Optional[Config] = None) -> Repository:
    """Open the store and migrate it to the latest schema.

    Raises a ``StoreError`` subclass if the store cannot be brought up to date;
    no handle is returned in that case.
    """
    config = config or load_config()
    repo = Repository(config.db_path, lock_timeout=config.lock_timeout)
    await repo.connect()
    return repo


def greet(name: str) -> str:
    return f"Hello, {name}! You've been greeted from Python!"
