"""
Configuration management for SOARKit.
Handles loading, validation, and access to configuration settings.
"""

import os
import json
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field


@dataclass
class DatabaseConfig:
    """Database configuration settings."""
    type: str = "sqlite"
    path: str = "data/soarkit.db"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    json_format: bool = False
    security_log: Optional[str] = None


@dataclass
class AlertConfig:
    """Notification configuration."""
    enabled: bool = True
    slack_enabled: bool = False
    webhook_enabled: bool = False
    slack_webhook: Optional[str] = None
    custom_webhook: Optional[str] = None
    severity_threshold: str = "medium"
    timeout: int = 10


@dataclass
class ClassifierConfig:
    """Severity thresholds used by the classifier."""
    medium: float = 20.0
    high: float = 50.0
    critical: float = 80.0
    asset_escalation: int = 5
    ddos_pps_threshold: int = 100000
    ddos_rps_threshold: int = 10000
    exfil_bytes_threshold: int = 500 * 1024 * 1024
    failed_login_threshold: int = 10
    mass_encryption_threshold: int = 100


@dataclass
class HttpBackendConfig:
    """External containment API."""
    base_url: Optional[str] = None
    token: Optional[str] = None
    verify_ssl: bool = True


@dataclass
class ExecutorConfig:
    """Action executor configuration."""
    dry_run: bool = True
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    timeout: int = 30
    backends: Dict[str, str] = field(default_factory=dict)
    http: HttpBackendConfig = field(default_factory=HttpBackendConfig)


@dataclass
class EvidenceConfig:
    """Evidence collection configuration."""
    evidence_dir: str = "data/evidence"
    required: bool = True
    memory_dump_command: Optional[str] = None
    remote_url: Optional[str] = None


@dataclass
class AuditConfig:
    """Audit log configuration."""
    path: str = "data/audit/audit.jsonl"


@dataclass
class PlaybookConfig:
    """Playbook loading configuration."""
    directory: str = "playbooks"
    incidents_dir: str = "data/incidents"


@dataclass
class ComplianceConfig:
    """Regulatory deadlines."""
    breach_notification_hours: int = 72


SECTIONS = (
    "database", "logging", "alerts", "classifier", "executor",
    "evidence", "audit", "playbooks", "compliance",
)

SECRET_KEYS = {"token", "slack_webhook", "custom_webhook"}


class Config:
    """
    Central configuration manager for SOARKit.

    Supports loading from:
    - YAML configuration files
    - JSON configuration files
    - Environment variables
    - Programmatic configuration
    """

    _instance = None
    _config_file: Optional[Path] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.database = DatabaseConfig()
        self.logging = LoggingConfig()
        self.alerts = AlertConfig()
        self.classifier = ClassifierConfig()
        self.executor = ExecutorConfig()
        self.evidence = EvidenceConfig()
        self.audit = AuditConfig()
        self.playbooks = PlaybookConfig()
        self.compliance = ComplianceConfig()

        # Custom settings storage
        self._custom: Dict[str, Any] = {}

        self._load_default_config()
        self._load_env_variables()

        self._initialized = True

    def _load_default_config(self):
        """Load configuration from default locations."""
        default_paths = [
            Path("soarkit.yaml"),
            Path("soarkit.yml"),
            Path("soarkit.json"),
            Path.home() / ".soarkit" / "config.yaml",
            Path("/etc/soarkit/config.yaml"),
        ]

        for path in default_paths:
            if path.exists():
                self.load_file(path)
                break

    def _load_env_variables(self):
        """Load configuration from environment variables."""
        env_mappings = {
            "SOARKIT_DB_PATH": ("database", "path"),
            "SOARKIT_LOG_LEVEL": ("logging", "level"),
            "SOARKIT_LOG_FILE": ("logging", "file"),
            "SOARKIT_SECURITY_LOG": ("logging", "security_log"),
            "SOARKIT_SLACK_WEBHOOK": ("alerts", "slack_webhook"),
            "SOARKIT_CUSTOM_WEBHOOK": ("alerts", "custom_webhook"),
            "SOARKIT_DRY_RUN": ("executor", "dry_run"),
            "SOARKIT_MAX_ATTEMPTS": ("executor", "max_attempts"),
            "SOARKIT_HTTP_URL": ("executor.http", "base_url"),
            "SOARKIT_HTTP_TOKEN": ("executor.http", "token"),
            "SOARKIT_EVIDENCE_DIR": ("evidence", "evidence_dir"),
            "SOARKIT_AUDIT_PATH": ("audit", "path"),
            "SOARKIT_PLAYBOOK_DIR": ("playbooks", "directory"),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value:
                self.set(section, key, value)

    def load_file(self, path: Path) -> None:
        """Load configuration from a file."""
        path = Path(path)
        self._config_file = path

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text()

        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported configuration format: {path.suffix}")

        if data is not None and not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        self._apply_config(data)

    def _apply_config(self, data: Dict[str, Any]) -> None:
        """Apply configuration dictionary to settings."""
        if not data:
            return

        for section in SECTIONS:
            values = data.get(section) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Configuration section '{section}' must be a mapping")
            for key, value in values.items():
                if section == "executor" and key == "http" and isinstance(value, dict):
                    for http_key, http_value in value.items():
                        self.set("executor.http", http_key, http_value)
                else:
                    self.set(section, key, value)

        # Store any custom settings
        for key, value in data.items():
            if key not in SECTIONS:
                self._custom[key] = value

    def _section(self, section: str) -> Any:
        obj = self
        for part in section.split("."):
            obj = getattr(obj, part, None)
            if obj is None:
                return None
        return obj

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        section_obj = self._section(section)
        if section_obj is not None and hasattr(section_obj, key):
            current = getattr(section_obj, key)
            # Environment values arrive as strings
            if isinstance(value, str):
                if isinstance(current, bool):
                    value = value.strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(current, int):
                    value = int(value)
                elif isinstance(current, float):
                    value = float(value)
            setattr(section_obj, key, value)
        else:
            if section not in self._custom:
                self._custom[section] = {}
            self._custom[section][key] = value

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        section_obj = self._section(section)
        if section_obj is not None and hasattr(section_obj, key):
            return getattr(section_obj, key)
        return self._custom.get(section, {}).get(key, default)

    def _as_dict(self, mask: bool) -> Dict[str, Any]:
        data = {}
        for section in SECTIONS:
            values = dict(vars(getattr(self, section)))
            if section == "executor":
                values["http"] = dict(vars(self.executor.http))
                values["backends"] = dict(self.executor.backends)
                if mask and values["http"].get("token"):
                    values["http"]["token"] = "***"
            if mask:
                for key in SECRET_KEYS:
                    if values.get(key):
                        values[key] = "***"
            data[section] = values
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary with secrets masked."""
        data = self._as_dict(mask=True)
        data["custom"] = self._custom
        return data

    def save(self, path: Optional[Path] = None) -> None:
        """Save current configuration to file."""
        path = Path(path) if path else self._config_file
        if not path:
            path = Path("soarkit.yaml")

        data = {**self._as_dict(mask=False), **self._custom}

        path.parent.mkdir(parents=True, exist_ok=True)

        if path.suffix in (".yaml", ".yml"):
            content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        else:
            content = json.dumps(data, indent=2)

        path.write_text(content)


def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
