import logging
import os
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# --- Constants ---
LOG_DIR = Path(os.environ.get('DOCDISTILL_HOME', Path.home() / '.docdistill')) / 'logs'
LOG_FILE = LOG_DIR / 'docdistill.log'
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
LOGGER_NAME = 'docdistill'

class JsonFormatter(logging.Formatter):
    """
    Formats log records as one JSON object per line.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "module": record.module,
            "line": record.lineno,
            "process": record.process,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object)

def setup_logging(log_level: Optional[str] = None) -> logging.Logger:
    """
    Configures the docdistill logger.
    - Console (stderr): Human-readable plain text.
    - File: Machine-readable JSON, with rotation.
    """
    if log_level is None:
        log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()

    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(log_level)
    app_logger.propagate = False

    # --- Formatters ---
    plain_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    json_formatter = JsonFormatter()

    # --- Console Handler ---
    # stdout is reserved for command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(plain_formatter)

    # Clear existing handlers to avoid duplicates
    if app_logger.hasHandlers():
        app_logger.handlers.clear()

    app_logger.addHandler(console_handler)

    # --- Rotating File Handler (JSON) ---
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
    except OSError as e:
        app_logger.warning(f"File logging disabled, cannot write to {LOG_DIR}: {e}")
    else:
        file_handler.setLevel(log_level)
        file_handler.setFormatter(json_formatter)
        app_logger.addHandler(file_handler)

    return app_logger

# --- Initial Setup ---
# Initialize logging when the module is imported
logger = setup_logging()
