import logging
import logging.handlers
import os
import sys

LOG_DIR = os.environ.get("LOG_DIR", "data")
LOG_FILE_NAME = "crm_backup.log"


def setup_logging(log_dir: str = LOG_DIR):
    """Configure stdout and rotating file logging for the backup service."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root = logging.getLogger()
    root.setLevel(log_level)

    # setup_logging may run more than once (app reload, tests)
    if root.hasHandlers():
        root.handlers.clear()

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s",
        "%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME), maxBytes=10 * 1024 * 1024, backupCount=5  # 10 MB
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        root.error(f"Failed to create log file handler in '{log_dir}': {e}")

    logging.getLogger("crm_backup").setLevel(log_level)
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logging.info(f"Logging configured with level {log_level}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
