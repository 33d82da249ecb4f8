"""Configuration management for the health monitoring subsystem."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..utils.logging import ConfigurationError, LogContext, get_logger

logger = get_logger(__name__, LogContext.CONFIG)

ENV_PREFIX = "PAPER_HEALTH_"


class ProbeConfig(BaseModel):
    """Settings shared by every dependency probe."""

    enabled: bool = True
    # Deliberately unbounded: a bad timeout turns into an unhealthy probe
    timeout: float = 5.0


class DatabaseProbeConfig(ProbeConfig):
    """Configuration for the persistent-store probe."""

    degraded_threshold_ms: float = Field(default=1000.0, gt=0)
    critical_queries: list[str] = Field(
        default_factory=lambda: ["SELECT 1", "SELECT COUNT(*) FROM papers LIMIT 1"]
    )


class CacheProbeConfig(ProbeConfig):
    """Configuration for the cache / pub-sub probe."""

    timeout: float = 3.0
    degraded_threshold_ms: float = Field(default=500.0, gt=0)


class ExternalEndpointConfig(BaseModel):
    """One external dependency reachable over HTTP."""

    name: str
    url: str
    timeout: float = 5.0
    critical: bool = False
    backup_url: str | None = None


class ExternalApiProbeConfig(BaseModel):
    """Configuration for the external dependency probes."""

    enabled: bool = True
    endpoints: list[ExternalEndpointConfig] = Field(default_factory=list)


class SystemProbeConfig(BaseModel):
    """Configuration for the local resource-pressure probe."""

    enabled: bool = True
    timeout: float = 5.0


class ThresholdPair(BaseModel):
    """Warning / critical bounds for one metric."""

    warning: float = Field(ge=0)
    critical: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_order(self) -> "ThresholdPair":
        if self.warning > self.critical:
            raise ValueError("warning threshold must not exceed critical threshold")
        return self


class ResourceThresholds(BaseModel):
    """Alerting thresholds evaluated on every sampler tick."""

    memory: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=70.0, critical=85.0)
    )
    cpu: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=70.0, critical=90.0)
    )
    # milliseconds
    scheduler_delay: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=10.0, critical=50.0)
    )
    scheduler_utilization: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=70.0, critical=90.0)
    )


class ResourceMonitoringConfig(BaseModel):
    """Configuration for the resource sampler."""

    enabled: bool = True
    interval: float = Field(default=30.0, gt=0, le=3600)
    max_samples: int = Field(default=1000, ge=10, le=100000)
    thresholds: ResourceThresholds = Field(default_factory=ResourceThresholds)


class RecoveryConfig(BaseModel):
    """Configuration for the recovery engine."""

    enabled: bool = True
    check_interval: float = Field(default=60.0, gt=0, le=3600)
    # Failed attempts within the 24h window before a human is paged
    alert_threshold: int = Field(default=3, ge=1, le=100)


class HealthServiceConfig(BaseModel):
    """Main configuration for the health monitoring subsystem."""

    model_config = ConfigDict(extra="forbid")

    database: DatabaseProbeConfig = Field(default_factory=DatabaseProbeConfig)
    cache: CacheProbeConfig = Field(default_factory=CacheProbeConfig)
    external_apis: ExternalApiProbeConfig = Field(
        default_factory=ExternalApiProbeConfig
    )
    system: SystemProbeConfig = Field(default_factory=SystemProbeConfig)
    resource_monitoring: ResourceMonitoringConfig = Field(
        default_factory=ResourceMonitoringConfig
    )
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)


def create_default_config() -> HealthServiceConfig:
    """Build the reference configuration.

    Returns:
        HealthServiceConfig with the reference thresholds, intervals and the
        two well-known external endpoints
    """
    return HealthServiceConfig(
        external_apis=ExternalApiProbeConfig(
            endpoints=[
                ExternalEndpointConfig(
                    name="openai",
                    url="https://api.openai.com/v1/models",
                    timeout=5.0,
                    critical=True,
                ),
                ExternalEndpointConfig(
                    name="anthropic",
                    url="https://api.anthropic.com/v1/messages",
                    timeout=5.0,
                    critical=False,
                ),
            ]
        )
    )


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# env var suffix -> (dotted config path, converter)
_ENV_MAPPINGS: dict[str, tuple[str, Any]] = {
    "DB_ENABLED": ("database.enabled", _parse_bool),
    "DB_TIMEOUT": ("database.timeout", float),
    "CACHE_ENABLED": ("cache.enabled", _parse_bool),
    "CACHE_TIMEOUT": ("cache.timeout", float),
    "EXTERNAL_APIS_ENABLED": ("external_apis.enabled", _parse_bool),
    "SYSTEM_ENABLED": ("system.enabled", _parse_bool),
    "RESOURCE_MONITORING_ENABLED": ("resource_monitoring.enabled", _parse_bool),
    "RESOURCE_MONITORING_INTERVAL": ("resource_monitoring.interval", float),
    "MEMORY_WARNING_THRESHOLD": (
        "resource_monitoring.thresholds.memory.warning",
        float,
    ),
    "MEMORY_CRITICAL_THRESHOLD": (
        "resource_monitoring.thresholds.memory.critical",
        float,
    ),
    "CPU_WARNING_THRESHOLD": ("resource_monitoring.thresholds.cpu.warning", float),
    "CPU_CRITICAL_THRESHOLD": ("resource_monitoring.thresholds.cpu.critical", float),
    "SCHEDULER_DELAY_WARNING": (
        "resource_monitoring.thresholds.scheduler_delay.warning",
        float,
    ),
    "SCHEDULER_DELAY_CRITICAL": (
        "resource_monitoring.thresholds.scheduler_delay.critical",
        float,
    ),
    "SCHEDULER_UTIL_WARNING": (
        "resource_monitoring.thresholds.scheduler_utilization.warning",
        float,
    ),
    "SCHEDULER_UTIL_CRITICAL": (
        "resource_monitoring.thresholds.scheduler_utilization.critical",
        float,
    ),
    "AUTO_RECOVERY_ENABLED": ("recovery.enabled", _parse_bool),
    "AUTO_RECOVERY_CHECK_INTERVAL": ("recovery.check_interval", float),
    "AUTO_RECOVERY_ALERT_THRESHOLD": ("recovery.alert_threshold", int),
}


def _set_path(data: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    current = data
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect configuration overrides from ``PAPER_HEALTH_*`` variables.

    Values that fail to convert are skipped with a warning.
    """
    environ = dict(os.environ) if environ is None else environ
    overrides: dict[str, Any] = {}

    for suffix, (path, convert) in _ENV_MAPPINGS.items():
        env_var = f"{ENV_PREFIX}{suffix}"
        if env_var not in environ:
            continue
        try:
            _set_path(overrides, path, convert(environ[env_var]))
        except ValueError:
            logger.warning(
                "Ignoring invalid environment override",
                env_var=env_var,
                value=environ[env_var],
            )

    return overrides


def _read_config_section(config_file: Path) -> dict[str, Any]:
    """Read the ``health_monitoring`` mapping from a YAML file.

    Raises:
        ConfigurationError: If the file cannot be read or has the wrong shape
    """
    try:
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read config file: {e}", {"config_file": str(config_file)}
        ) from e

    section = raw.get("health_monitoring") if isinstance(raw, dict) else raw
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(
            "health_monitoring section must be a mapping",
            {"config_file": str(config_file), "type": type(section).__name__},
        )
    return section


def load_health_config(
    config_file: Path | None = None, environ: dict[str, str] | None = None
) -> HealthServiceConfig:
    """Load health monitoring configuration.

    Precedence order (highest to lowest):
    1. Environment variables
    2. ``health_monitoring`` section of the YAML file
    3. Reference defaults

    Args:
        config_file: Path to a YAML configuration file (optional)
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        HealthServiceConfig instance; defaults if the file or overrides are invalid
    """
    base = create_default_config().model_dump()
    file_data: dict[str, Any] = {}

    if config_file and config_file.exists():
        try:
            file_data = _read_config_section(config_file)
            logger.info("Health config file loaded", config_file=str(config_file))
        except ConfigurationError as e:
            logger.error(
                "Failed to read health config file, using defaults",
                config_file=str(config_file),
                error=e.message,
            )

    merged = _deep_merge(_deep_merge(base, file_data), load_env_overrides(environ))

    try:
        return HealthServiceConfig(**merged)
    except ValidationError as e:
        logger.error("Invalid health configuration, using defaults", error=str(e))
        return create_default_config()


def save_health_config(config: HealthServiceConfig, config_file: Path) -> bool:
    """Write configuration into the ``health_monitoring`` section of a YAML file.

    Returns:
        True if saved successfully
    """
    try:
        config_data: dict[str, Any] = {}
        if config_file.exists():
            with open(config_file) as f:
                config_data = yaml.safe_load(f) or {}

        config_data["health_monitoring"] = config.model_dump()

        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w") as f:
            yaml.dump(config_data, f, default_flow_style=False, indent=2)

        logger.info("Health config saved", config_file=str(config_file))
        return True

    except (OSError, yaml.YAMLError) as e:
        logger.error(
            "Failed to save health config",
            config_file=str(config_file),
            error=str(e),
        )
        return False
