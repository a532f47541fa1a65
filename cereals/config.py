import logging
import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv


DB_FILENAME = "cereals.db"
DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass
class Config:
    data_dir: Path
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    log_level: str = "INFO"
    
    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME


def load_config() -> Config:
    current = Path(__file__).parent.parent
    env_path = current / ".env"
    
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()
    
    raw_timeout = os.getenv("CEREALS_LOCK_TIMEOUT", str(DEFAULT_LOCK_TIMEOUT)).strip().strip('"').strip("'")
    try:
        lock_timeout = float(raw_timeout)
    except ValueError:
        raise ValueError(
            f"CEREALS_LOCK_TIMEOUT must be a number of seconds, got {raw_timeout!r}.\n"
            "Fix it in your .env file or environment."
        )
    if lock_timeout <= 0:
        raise ValueError(f"CEREALS_LOCK_TIMEOUT must be positive, got {lock_timeout:g}")
    
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().strip('"').strip("'").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError(
            f"LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR or CRITICAL, got {log_level!r}.\n"
            "Fix it in your .env file or environment."
        )
    
    data_dir = Path(os.getenv("DATA_DIR", current / "data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    
    return Config(
        data_dir=data_dir,
        lock_timeout=lock_timeout,
        log_level=log_level,
    )
