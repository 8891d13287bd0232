"""
Logging configuration for SOARKit.
Provides structured logging with support for multiple outputs.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
import json


SECURITY_LOGGER = "soarkit.security"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for easy parsing."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console output for better readability."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        level_display = f"{color}{self.BOLD}[{record.levelname:^8}]{self.RESET}"
        logger_display = f"\033[90m{record.name}\033[0m"

        formatted = f"{timestamp} {level_display} {logger_display}: {record.getMessage()}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class SecurityLogger(logging.Logger):
    """
    Extended logger with security-specific methods.

    Security events are emitted on the calling logger and mirrored to the
    ``soarkit.security`` logger so a single JSON file can collect them.
    """

    LEVEL_MAP = {
        "low": logging.INFO,
        "medium": logging.WARNING,
        "high": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def security_event(
        self,
        event_type: str,
        severity: str,
        message: str,
        incident_id: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs
    ):
        """Log a security event with structured data."""
        extra_data = {
            "event_type": event_type,
            "severity": severity,
            "incident_id": incident_id,
            "target": target,
            **kwargs
        }

        level = self.LEVEL_MAP.get(severity.lower(), logging.WARNING)

        record = self.makeRecord(
            self.name,
            level,
            "(security)",
            0,
            message,
            (),
            None
        )
        record.extra_data = extra_data
        self.handle(record)

        security = logging.getLogger(SECURITY_LOGGER)
        if security is not self and security.handlers:
            for handler in security.handlers:
                if record.levelno >= handler.level:
                    handler.handle(record)

    def alert(self, message: str, **kwargs):
        """Log an alert that may trigger notifications."""
        self.security_event("alert", "high", message, **kwargs)

    def incident(self, message: str, **kwargs):
        """Log an incident lifecycle event."""
        self.security_event("incident", "high", message, **kwargs)

    def ioc_detected(self, ioc_type: str, ioc_value: str, **kwargs):
        """Log detection of an Indicator of Compromise."""
        self.security_event(
            "ioc_detection",
            "high",
            f"IOC Detected: {ioc_type} = {ioc_value}",
            ioc_type=ioc_type,
            ioc_value=ioc_value,
            **kwargs
        )

    def containment(self, action_type: str, target: str, status: str, **kwargs):
        """Log the outcome of a containment action."""
        severity = "high" if status == "failed" else "medium"
        self.security_event(
            "containment",
            severity,
            f"Containment {action_type} on {target}: {status}",
            target=target,
            action_type=action_type,
            status=status,
            **kwargs
        )


# Register our custom logger class
logging.setLoggerClass(SecurityLogger)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
    security_log: Optional[str] = None,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    stream=None,
) -> None:
    """
    Set up logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        json_format: Use JSON format for file logs
        security_log: Optional path for the JSON security event log
        max_size: Max size of log file before rotation
        backup_count: Number of backup files to keep
        stream: Console stream, stdout by default
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )

        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            ))

        root_logger.addHandler(file_handler)

    security_logger = logging.getLogger(SECURITY_LOGGER)
    security_logger.handlers.clear()

    if security_log:
        security_path = Path(security_log)
        security_path.parent.mkdir(parents=True, exist_ok=True)

        security_handler = TimedRotatingFileHandler(
            security_path,
            when="midnight",
            backupCount=30
        )
        security_handler.setFormatter(JSONFormatter())
        security_handler.setLevel(logging.INFO)
        security_logger.addHandler(security_handler)


def get_logger(name: str) -> SecurityLogger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
