"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler settings. Tasks themselves
live in the database; this file only carries process-level knobs such as
paths, limits, timeouts and logging.

Configuration path priority:
1. Explicit config_path argument
2. BARKCRON_CONFIG_PATH environment variable
3. Default: ~/.barkcron/config.json
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "BARKCRON_CONFIG_PATH"
ENV_DATA_DIR = "BARKCRON_DATA_DIR"
ENV_DB_PATH = "BARKCRON_DB_PATH"
ENV_LOG_DIR = "BARKCRON_LOG_DIR"

DEFAULT_DATA_DIR = Path.home() / ".barkcron"


def get_data_dir() -> Path:
    """Get the data directory from environment or default."""
    data_dir = os.environ.get(ENV_DATA_DIR)
    if data_dir:
        return Path(data_dir).expanduser()
    return DEFAULT_DATA_DIR


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get(ENV_LOG_DIR):
        return str(Path(os.environ[ENV_LOG_DIR]).expanduser() / "barkcron.log")
    return str(get_data_dir() / "logs" / "barkcron.log")


def _get_default_db_path() -> str:
    if os.environ.get(ENV_DB_PATH):
        return str(Path(os.environ[ENV_DB_PATH]).expanduser())
    return str(get_data_dir() / "barkcron.db")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class RetryConfig:
    """Store retry policy under lock contention."""
    max_attempts: int = 15
    initial_delay_seconds: float = 0.01
    max_delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0


@dataclass
class ExecutionConfig:
    """Script execution settings."""
    python_executable: str = field(default_factory=lambda: sys.executable)
    timeout_seconds: int = 600  # 10 minutes
    max_workers: int = 10  # dispatch threads; each run gets its own
    misfire_grace_time: int = 60
    timezone: Optional[str] = None  # IANA name, None = local time


@dataclass
class RetentionConfig:
    """Bounded history sizes."""
    max_logs_per_task: int = 5000
    max_total_logs: int = 50000
    max_notification_records: int = 50000


@dataclass
class NotificationSettings:
    """Outbound notification settings."""
    request_timeout_seconds: float = 15.0
    background_workers: int = 4


class Settings:
    """
    Scheduler settings manager.

    Loads settings from a JSON file with defaults for anything missing.
    """

    def __init__(self, config_path: Optional[str] = None, load: bool = True):
        """
        Initialize settings.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            load: If False, skip reading the file and keep defaults.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = get_data_dir() / "config.json"

        self.database_path: str = _get_default_db_path()
        self.logging = LoggingConfig()
        self.retry = RetryConfig()
        self.execution = ExecutionConfig()
        self.retention = RetentionConfig()
        self.notifications = NotificationSettings()

        if load and self.config_path.exists():
            self.load()
        elif load:
            logger.debug(f"No config found at {self.config_path}, using defaults")

    def load(self):
        """Load settings from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if data.get('database_path'):
                self.database_path = str(Path(data['database_path']).expanduser())
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'retry' in data:
                self.retry = RetryConfig(**data['retry'])
            if 'execution' in data:
                self.execution = ExecutionConfig(**data['execution'])
            if 'retention' in data:
                self.retention = RetentionConfig(**data['retention'])
            if 'notifications' in data:
                self.notifications = NotificationSettings(**data['notifications'])

            logger.info(f"Loaded settings from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save settings to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'database_path': self.database_path,
            'logging': asdict(self.logging),
            'retry': asdict(self.retry),
            'execution': asdict(self.execution),
            'retention': asdict(self.retention),
            'notifications': asdict(self.notifications),
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate settings.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.execution.timeout_seconds <= 0:
            errors.append("execution.timeout_seconds must be positive")
        if self.execution.max_workers <= 0:
            errors.append("execution.max_workers must be positive")
        if self.retry.max_attempts <= 0:
            errors.append("retry.max_attempts must be positive")
        for name in ('max_logs_per_task', 'max_total_logs', 'max_notification_records'):
            if getattr(self.retention, name) <= 0:
                errors.append(f"retention.{name} must be positive")
        if self.retention.max_logs_per_task > self.retention.max_total_logs:
            errors.append("retention.max_logs_per_task cannot exceed retention.max_total_logs")
        if self.execution.timezone:
            try:
                ZoneInfo(self.execution.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                errors.append(f"execution.timezone '{self.execution.timezone}' is not a known timezone")

        return errors

    def tzinfo(self) -> Optional[ZoneInfo]:
        """Timezone for cron evaluation and exclusion windows (None = local)."""
        if self.execution.timezone:
            return ZoneInfo(self.execution.timezone)
        return None

    def __repr__(self):
        return f"Settings(path={self.config_path}, database={self.database_path})"
