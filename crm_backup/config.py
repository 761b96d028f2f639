import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .schemas import BackupOptions, ScheduleConfig
from .logger import get_logger

logger = get_logger(__name__)

CONFIG_PATH = os.environ.get("CRM_BACKUP_CONFIG", "config.yaml")

TRUE_VALUES = {"1", "true", "yes", "on"}


class DatabaseSettings(BaseModel):
    host: str = "localhost"
    port: int = 5432
    username: str = "postgres"
    password: str = ""
    database_name: str = "recruitment_crm"


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    backup_dir: str = "./backups"
    tool_timeout_seconds: Optional[float] = None
    restore_throughput_bytes_per_second: int = Field(default=5 * 1024 * 1024, gt=0)
    pg_dump_path: str = "pg_dump"
    psql_path: str = "psql"
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    restore_mode: bool = False
    admin_token: Optional[str] = None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def load_config(path: str = CONFIG_PATH) -> dict:
    """Reads config.yaml. A missing or unparsable file yields an empty config."""
    if not os.path.exists(path):
        logger.info(f"No {path} found, using environment and defaults.")
        return {}

    with open(path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing {path}: {e}")
            return {}


def _database_settings(db_conf: dict) -> DatabaseSettings:
    # Credentials may be given directly or through the name of an env variable
    username_var = db_conf.pop("username_var", None)
    password_var = db_conf.pop("password_var", None)
    if "username" not in db_conf and username_var:
        db_conf["username"] = os.getenv(username_var)
    if "password" not in db_conf and password_var:
        db_conf["password"] = os.getenv(password_var)

    env_overrides = {
        "host": os.getenv("DB_HOST"),
        "port": os.getenv("DB_PORT"),
        "username": os.getenv("DB_USER"),
        "password": os.getenv("DB_PASSWORD"),
        "database_name": os.getenv("DB_NAME"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            db_conf[key] = value

    return DatabaseSettings(**{k: v for k, v in db_conf.items() if v is not None})


def _schedule_config(schedule_conf: dict) -> ScheduleConfig:
    enabled = schedule_conf.get("enabled", os.getenv("APP_ENV", "development") == "production")
    enabled = _env_bool("BACKUP_SCHEDULE_ENABLED", bool(enabled))

    interval = float(os.getenv("BACKUP_INTERVAL_SECONDS", schedule_conf.get("interval_seconds", 24 * 60 * 60)))
    retention_days = int(os.getenv("BACKUP_RETENTION_DAYS", schedule_conf.get("retention_days", 30)))
    include_data = _env_bool("BACKUP_INCLUDE_DATA", schedule_conf.get("include_data", True))

    return ScheduleConfig(
        enabled=enabled,
        interval_seconds=interval,
        retention_days=retention_days,
        backup_options=BackupOptions(
            include_data=include_data,
            include_tables=schedule_conf.get("include_tables"),
            exclude_tables=schedule_conf.get("exclude_tables"),
        ),
    )


def load_settings(config_data: Optional[dict] = None) -> Settings:
    """
    Builds the service settings from config.yaml, letting environment variables win.
    """
    if config_data is None:
        config_data = load_config()

    backup_conf = dict(config_data.get("backup") or {})
    timeout = os.getenv("BACKUP_TOOL_TIMEOUT_SECONDS", backup_conf.get("tool_timeout_seconds"))

    settings = Settings(
        database=_database_settings(dict(config_data.get("database") or {})),
        backup_dir=os.getenv("BACKUP_DIR", backup_conf.get("directory", "./backups")),
        tool_timeout_seconds=float(timeout) if timeout is not None else None,
        restore_throughput_bytes_per_second=int(
            backup_conf.get("restore_throughput_bytes_per_second", 5 * 1024 * 1024)
        ),
        pg_dump_path=backup_conf.get("pg_dump_path", "pg_dump"),
        psql_path=backup_conf.get("psql_path", "psql"),
        schedule=_schedule_config(dict(config_data.get("schedule") or {})),
        restore_mode=_env_bool("BACKUP_RESTORE_MODE", bool(config_data.get("restore_mode", False))),
        admin_token=os.getenv("BACKUP_ADMIN_TOKEN", config_data.get("admin_token")),
    )
    logger.debug(
        f"Loaded settings: db={settings.database.host}:{settings.database.port}/{settings.database.database_name}, "
        f"backup_dir={settings.backup_dir}, schedule_enabled={settings.schedule.enabled}"
    )
    return settings
