"""
Configuration Management
========================

Configuration structs for every component of the deprecation subsystem,
plus environment presets and loading from environment variables and an
optional config file.

Core components never read the environment themselves; they receive the
struct for their concern as a constructor argument. Only the CLI calls
DeprecationConfig.load().

Usage:
    config = DeprecationConfig.load()                 # env > file > preset
    config = DeprecationConfig.for_environment("production")
    problems = validate_config(config)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from dbretire.errors import ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "dbretire_config.json"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///app.db"
DEFAULT_STATE_URL = "sqlite+aiosqlite:///.dbretire/state.db"

ENVIRONMENTS = ("development", "test", "staging", "production")
SEVERITIES = ("info", "warning", "error", "critical")
VERIFICATION_LEVELS = ("basic", "full", "comprehensive")
STORAGE_TYPES = ("memory", "file", "database")
EXPORT_FORMATS = ("json", "csv", "both")
CHANNEL_TYPES = ("console", "email", "slack", "webhook", "database")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SafetyConfig:
    """Safety gates applied while planning and executing."""
    require_backup: bool = False
    require_approval: bool = False
    strict_mode: bool = False
    allow_risky_operations: bool = False
    min_cooling_off_days: int = 30
    skip_checks: List[str] = field(default_factory=list)


@dataclass
class BackupConfig:
    """Pre-migration backup creation and validation."""
    enabled: bool = False
    backup_directory: str = "./backups"
    retention_days: int = 30
    verification_level: str = "basic"
    max_backup_size_mb: int = 10240


@dataclass
class RollbackConfig:
    """Rollback behaviour."""
    timeout_seconds: int = 300
    validate_before_rollback: bool = True
    require_backup: bool = False


@dataclass
class MonitoringConfig:
    """Deprecated-element monitor settings."""
    enabled: bool = True
    alert_on_access: bool = True
    track_performance: bool = True
    batch_size: int = 100
    flush_interval_seconds: float = 30.0
    stats_lookback_days: int = 30
    # Threshold alert: this many accesses within the window
    alert_thresholds: Dict[str, int] = field(
        default_factory=lambda: {"access_count": 5, "time_window_minutes": 60}
    )
    # Usage spike: last hour against the hourly average of the last week
    spike_ratio: float = 3.0
    spike_min_count: int = 10


@dataclass
class EscalationRule:
    """Raise severity once a key fires trigger_count times within the window."""
    trigger_count: int
    time_window_minutes: int
    escalate_to: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationRule":
        return cls(
            trigger_count=int(data["trigger_count"]),
            time_window_minutes=int(data["time_window_minutes"]),
            escalate_to=data["escalate_to"],
        )


def default_escalation_rules() -> List[EscalationRule]:
    return [
        EscalationRule(trigger_count=5, time_window_minutes=15, escalate_to="error"),
        EscalationRule(trigger_count=20, time_window_minutes=60, escalate_to="critical"),
    ]


@dataclass
class ChannelConfig:
    """One alert delivery channel."""
    type: str
    name: str = ""
    severity_filter: List[str] = field(default_factory=lambda: list(SEVERITIES))
    settings: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            self.name = self.type

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelConfig":
        return cls(
            type=data["type"],
            name=data.get("name", ""),
            severity_filter=list(data.get("severity_filter", SEVERITIES)),
            settings=dict(data.get("settings", {})),
        )


@dataclass
class AlertConfig:
    """Alert routing, throttling and escalation."""
    channels: List[ChannelConfig] = field(
        default_factory=lambda: [ChannelConfig(type="console")]
    )
    default_severity: str = "warning"
    throttle_window_minutes: float = 5
    max_alerts_per_hour: int = 60
    escalation_rules: List[EscalationRule] = field(default_factory=default_escalation_rules)
    sweep_interval_seconds: float = 60.0
    max_history: int = 10000


@dataclass
class TelemetryConfig:
    """Telemetry storage, aggregation and export."""
    enabled: bool = True
    storage_type: str = "memory"
    storage_path: str = "./telemetry"
    retention_days: int = 30
    aggregation_interval_minutes: int = 15
    export_format: str = "json"
    export_directory: Optional[str] = None
    max_event_buffer_size: int = 10000


@dataclass
class DeprecationConfig:
    """Top-level configuration for the deprecation subsystem."""
    environment: str = "development"
    database_url: str = DEFAULT_DATABASE_URL
    state_url: str = DEFAULT_STATE_URL
    default_schema: Optional[str] = None
    # Deadline for the rename transaction
    timeout_seconds: int = 300
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeprecationConfig":
        """Build a config from a (possibly partial) nested dictionary."""
        base = cls.for_environment(data.get("environment", "development"))
        return _merge(base, data)

    @classmethod
    def for_environment(cls, environment: str) -> "DeprecationConfig":
        """Return the preset for an environment."""
        if environment not in ENVIRONMENTS:
            raise ValidationError(
                f"Unknown environment '{environment}'. Expected one of: {', '.join(ENVIRONMENTS)}"
            )

        config = cls(environment=environment)

        if environment == "development":
            config.safety.allow_risky_operations = True
            config.monitoring.alert_on_access = False
            config.alerts.throttle_window_minutes = 1

        elif environment == "test":
            config.monitoring.enabled = False
            config.monitoring.alert_on_access = False
            config.alerts.channels = []
            config.telemetry.retention_days = 1

        elif environment == "staging":
            config.safety.require_backup = True
            config.backup.enabled = True
            config.backup.verification_level = "full"
            config.rollback.require_backup = True

        elif environment == "production":
            config.safety.require_backup = True
            config.safety.require_approval = True
            config.safety.strict_mode = False
            config.safety.min_cooling_off_days = 90
            config.backup.enabled = True
            config.backup.verification_level = "comprehensive"
            config.rollback.require_backup = True
            config.telemetry.storage_type = "database"
            config.telemetry.retention_days = 90
            config.alerts.channels = [
                ChannelConfig(type="console", severity_filter=["warning", "error", "critical"]),
                ChannelConfig(type="database"),
            ]

        return config

    @classmethod
    def from_env(cls) -> "DeprecationConfig":
        """Load the preset for DEPRECATION_ENV and apply environment overrides."""
        config = cls.for_environment(os.environ.get("DEPRECATION_ENV", "development"))
        return apply_env_overrides(config)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "DeprecationConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (dbretire_config.json)
        3. Environment preset defaults
        """
        path = config_path or Path(CONFIG_FILENAME)
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ValidationError(f"Failed to load config file {path}: {e}") from e

        if os.environ.get("DEPRECATION_ENV"):
            data["environment"] = os.environ["DEPRECATION_ENV"]

        config = cls.from_dict(data)
        return apply_env_overrides(config)

    def validate(self) -> None:
        """Raise ValidationError listing every problem found."""
        problems = validate_config(self)
        if problems:
            raise ValidationError("Invalid configuration: " + "; ".join(problems))


def apply_env_overrides(config: DeprecationConfig) -> DeprecationConfig:
    """Apply the recognised environment variables on top of a config."""
    env = os.environ
    if env.get("DATABASE_URL"):
        config.database_url = env["DATABASE_URL"]
    if env.get("DEPRECATION_STATE_URL"):
        config.state_url = env["DEPRECATION_STATE_URL"]
    if env.get("DB_SCHEMA"):
        config.default_schema = env["DB_SCHEMA"]
    if env.get("DB_BACKUP_DIR"):
        config.backup.backup_directory = env["DB_BACKUP_DIR"]
    if env.get("TELEMETRY_STORAGE"):
        config.telemetry.storage_type = env["TELEMETRY_STORAGE"]

    config.backup.enabled = _env_bool("BACKUP_ENABLED", config.backup.enabled)
    config.monitoring.enabled = _env_bool("MONITORING_ENABLED", config.monitoring.enabled)
    config.monitoring.alert_on_access = _env_bool("ALERT_ON_ACCESS", config.monitoring.alert_on_access)
    config.safety.strict_mode = _env_bool("STRICT_MODE", config.safety.strict_mode)
    config.safety.require_backup = _env_bool("REQUIRE_BACKUP", config.safety.require_backup)
    config.safety.require_approval = _env_bool("REQUIRE_APPROVAL", config.safety.require_approval)
    config.rollback.require_backup = config.rollback.require_backup or config.safety.require_backup
    return config


def _merge(target: Any, overrides: Dict[str, Any]) -> Any:
    """Recursively apply a dict of overrides onto a dataclass instance."""
    updates = {}
    for f in fields(target):
        if f.name not in overrides:
            continue
        current = getattr(target, f.name)
        value = overrides[f.name]
        if f.name == "channels":
            value = [ChannelConfig.from_dict(c) for c in value]
        elif f.name == "escalation_rules":
            value = [EscalationRule.from_dict(r) for r in value]
        elif hasattr(current, "__dataclass_fields__") and isinstance(value, dict):
            value = _merge(current, value)
        updates[f.name] = value
    return replace(target, **updates)


def validate_config(config: DeprecationConfig) -> List[str]:
    """Return a list of configuration problems (empty when valid)."""
    problems: List[str] = []

    if config.environment not in ENVIRONMENTS:
        problems.append(f"environment must be one of {ENVIRONMENTS}")
    if not config.database_url:
        problems.append("database_url is required")
    if config.timeout_seconds <= 0:
        problems.append("timeout_seconds must be positive")

    if config.safety.min_cooling_off_days < 0:
        problems.append("safety.min_cooling_off_days cannot be negative")
    if config.safety.require_backup and not config.backup.enabled:
        problems.append("safety.require_backup is set but backups are disabled")

    if config.backup.verification_level not in VERIFICATION_LEVELS:
        problems.append(f"backup.verification_level must be one of {VERIFICATION_LEVELS}")
    if config.backup.enabled and not config.backup.backup_directory:
        problems.append("backup.backup_directory is required when backups are enabled")
    if config.backup.max_backup_size_mb <= 0:
        problems.append("backup.max_backup_size_mb must be positive")

    if config.rollback.timeout_seconds <= 0:
        problems.append("rollback.timeout_seconds must be positive")

    if config.monitoring.batch_size < 1:
        problems.append("monitoring.batch_size must be at least 1")
    if config.monitoring.flush_interval_seconds <= 0:
        problems.append("monitoring.flush_interval_seconds must be positive")
    for key in ("access_count", "time_window_minutes"):
        if config.monitoring.alert_thresholds.get(key, 0) <= 0:
            problems.append(f"monitoring.alert_thresholds.{key} must be positive")

    alerts = config.alerts
    if alerts.default_severity not in SEVERITIES:
        problems.append(f"alerts.default_severity must be one of {SEVERITIES}")
    if alerts.throttle_window_minutes < 0:
        problems.append("alerts.throttle_window_minutes cannot be negative")
    if alerts.max_history < 1:
        problems.append("alerts.max_history must be at least 1")
    for channel in alerts.channels:
        if channel.type not in CHANNEL_TYPES:
            problems.append(f"alert channel '{channel.name}' has unknown type '{channel.type}'")
        unknown = [s for s in channel.severity_filter if s not in SEVERITIES]
        if unknown:
            problems.append(f"alert channel '{channel.name}' has unknown severities {unknown}")
    for rule in alerts.escalation_rules:
        if rule.escalate_to not in SEVERITIES:
            problems.append(f"escalation rule target '{rule.escalate_to}' is not a severity")
        if rule.trigger_count < 1 or rule.time_window_minutes < 1:
            problems.append("escalation rules need a positive trigger_count and time_window_minutes")

    telemetry = config.telemetry
    if telemetry.storage_type not in STORAGE_TYPES:
        problems.append(f"telemetry.storage_type must be one of {STORAGE_TYPES}")
    if telemetry.export_format not in EXPORT_FORMATS:
        problems.append(f"telemetry.export_format must be one of {EXPORT_FORMATS}")
    if telemetry.retention_days < 1:
        problems.append("telemetry.retention_days must be at least 1")
    if telemetry.aggregation_interval_minutes < 1:
        problems.append("telemetry.aggregation_interval_minutes must be at least 1")
    if telemetry.max_event_buffer_size < 1:
        problems.append("telemetry.max_event_buffer_size must be at least 1")

    return problems
