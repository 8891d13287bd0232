"""Core utilities and shared components."""

from soarkit.core.config import Config, get_config
from soarkit.core.logger import setup_logging, get_logger
from soarkit.core.database import Database, WatchEntry
from soarkit.core.severity import Severity, normalize_severity
from soarkit.core.errors import ConfigError, SoarKitError
from soarkit.core.utils import (
    hash_file,
    validate_ip,
    validate_domain,
    safe_request,
    parse_timestamp,
    export_to_json,
    export_to_csv,
)

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "Database",
    "WatchEntry",
    "Severity",
    "normalize_severity",
    "SoarKitError",
    "ConfigError",
    "hash_file",
    "validate_ip",
    "validate_domain",
    "safe_request",
    "parse_timestamp",
    "export_to_json",
    "export_to_csv",
]
