"""
Logging configuration for the account security core
Provides structured JSON-line logging for security events
"""

import json
import logging
import os
import sys
from typing import Optional


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Keys that must never reach a log line, even through ``extra``
_REDACTED_KEYS = {"password", "new_password", "current_password", "code", "hash", "secret"}


class JSONLineFormatter(logging.Formatter):
    """Render records as one JSON object per line, merging structured context"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = {
                key: ("[redacted]" if key in _REDACTED_KEYS else value)
                for key, value in context.items()
            }
        return json.dumps(payload, default=str)


class SecurityLogger:
    """Enhanced logger for security events"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with appropriate handlers and formatters"""
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JSONLineFormatter())

            self.logger.addHandler(handler)
            self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    def _log(self, level: int, message: str, extra: Optional[dict] = None):
        self.logger.log(level, message, extra={"context": extra or {}})

    def info(self, message: str, extra: Optional[dict] = None):
        """Log info message"""
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[dict] = None):
        """Log warning message"""
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[dict] = None):
        """Log error message"""
        self._log(logging.ERROR, message, extra)

    def critical(self, message: str, extra: Optional[dict] = None):
        """Log critical message"""
        self._log(logging.CRITICAL, message, extra)

    def debug(self, message: str, extra: Optional[dict] = None):
        """Log debug message"""
        self._log(logging.DEBUG, message, extra)


def get_logger(name: str) -> SecurityLogger:
    """Get logger instance for the specified module"""
    return SecurityLogger(name)
