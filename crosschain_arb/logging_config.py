# logging_config.py

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

TRADE = 25
SUCCESS = 26


def setup_custom_log_levels():
    """
    Adds custom TRADE and SUCCESS log levels and methods to Python's logging.
    Called by both the CLI and the test suite.
    """
    # Check if levels are already added to avoid errors on re-import
    if not hasattr(logging, 'TRADE'):
        logging.addLevelName(TRADE, "TRADE")
        logging.TRADE = TRADE

    if not hasattr(logging, 'SUCCESS'):
        logging.addLevelName(SUCCESS, "SUCCESS")
        logging.SUCCESS = SUCCESS

    # --- Custom Logger Methods ---
    def trade(self, message, *args, **kws):
        if self.isEnabledFor(TRADE):
            self._log(TRADE, message, args, **kws)

    def success(self, message, *args, **kws):
        if self.isEnabledFor(SUCCESS):
            self._log(SUCCESS, message, args, **kws)

    if not hasattr(logging.Logger, 'trade'):
        logging.Logger.trade = trade

    if not hasattr(logging.Logger, 'success'):
        logging.Logger.success = success


def get_logger(name: str) -> logging.Logger:
    """Module logger with the TRADE/SUCCESS helpers guaranteed to exist."""
    setup_custom_log_levels()
    return logging.getLogger(name)


# --- JSON Formatter for Structured Logging ---
class JsonFormatter(logging.Formatter):
    """Formats log records into a JSON string."""
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineNo": record.lineno
        }
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(log_object)


def setup_logging(config: Optional[Dict[str, Any]] = None):
    """Configures the root logger for dual file output (human-readable and JSON) plus console."""
    setup_custom_log_levels()
    log_config = (config or {}).get("logging", {}) or {}

    level_name = str(os.getenv("LOG_LEVEL") or log_config.get("level", "INFO")).upper()
    log_dir = log_config.get("dir", "logs")
    max_bytes = int(log_config.get("max_bytes", 5 * 1024 * 1024))
    backup_count = int(log_config.get("backup_count", 2))
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.getLevelName(level_name))

    # Clear any existing handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    # --- Human-Readable Log File Handler ---
    log_format_string = '%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s'
    human_formatter = logging.Formatter(log_format_string)
    file_handler = RotatingFileHandler(os.path.join(log_dir, 'bot.log'), maxBytes=max_bytes, backupCount=backup_count)
    file_handler.setFormatter(human_formatter)
    logger.addHandler(file_handler)

    # --- Structured JSON Log File Handler ---
    json_handler = RotatingFileHandler(os.path.join(log_dir, 'bot_structured.log'), maxBytes=max_bytes, backupCount=backup_count)
    json_handler.setFormatter(JsonFormatter())
    logger.addHandler(json_handler)

    # --- Console Handler (stderr, so CLI JSON output on stdout stays clean) ---
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(human_formatter)
    logger.addHandler(console_handler)

    logging.info("Logging configured with human-readable, JSON, and console outputs.")
