"""Configuration objects for webmon.

Both config types are immutable. A running sampler holds a reference to the
current Config and replaces the whole reference on config_changed(); nothing
ever mutates a Config in place.
"""

import dataclasses
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml

from webmon.errors import ConfigError

logger = structlog.get_logger()


@dataclass(slots=True, frozen=True)
class SamplerConfig:
    """Configures one periodic sampler task."""

    history_length: int  # number of items kept in the history
    sample_interval_ms: int  # delay between two consecutive ticks
    initial_delay_ms: int = 0  # delay before the first tick

    def __post_init__(self) -> None:
        if self.history_length < 1:
            raise ConfigError(f"history_length must be at least 1, got {self.history_length}")
        if self.sample_interval_ms < 1:
            raise ConfigError(f"sample_interval_ms must be at least 1, got {self.sample_interval_ms}")
        if self.initial_delay_ms < 0:
            raise ConfigError(f"initial_delay_ms must not be negative, got {self.initial_delay_ms}")

    @property
    def sample_interval_seconds(self) -> float:
        """The tick period in seconds."""
        return self.sample_interval_ms / 1000


HISTORY_VMSTAT = SamplerConfig(history_length=150, sample_interval_ms=1000, initial_delay_ms=0)
HISTORY_PROBLEMS = SamplerConfig(history_length=20, sample_interval_ms=10 * 1000, initial_delay_ms=500)


class Encryption(Enum):
    """SMTP connection encryption."""

    NONE = "none"
    SSL = "ssl"
    TLS = "tls"


# field name -> (min, max); None means unbounded
_BOUNDS: dict[str, tuple[int | None, int | None]] = {
    "min_free_disk_space_mb": (0, None),
    "gc_cpu_threshold": (0, 100),
    "gc_cpu_threshold_samples": (1, None),
    "cpu_threshold": (0, 100),
    "cpu_threshold_samples": (1, None),
    "mem_after_gc_usage_threshold": (0, 100),
    "mem_usage_threshold": (0, 100),
    "host_virt_mem_threshold": (0, 100),
    "mail_smtp_port": (-1, 65535),
}

# legacy property names accepted by load_config()
_LEGACY_KEYS = {
    "minFreeDiskSpaceMb": "min_free_disk_space_mb",
    "gcCpuTreshold": "gc_cpu_threshold",
    "gcCpuThreshold": "gc_cpu_threshold",
    "gcCpuTresholdSamples": "gc_cpu_threshold_samples",
    "gcCpuThresholdSamples": "gc_cpu_threshold_samples",
    "cpuTreshold": "cpu_threshold",
    "cpuThreshold": "cpu_threshold",
    "cpuTresholdSamples": "cpu_threshold_samples",
    "cpuThresholdSamples": "cpu_threshold_samples",
    "memAfterGcUsageTreshold": "mem_after_gc_usage_threshold",
    "memAfterGcUsageThreshold": "mem_after_gc_usage_threshold",
    "memUsageTreshold": "mem_usage_threshold",
    "memUsageThreshold": "mem_usage_threshold",
    "hostVirtMem": "host_virt_mem_threshold",
    "hostVirtMemThreshold": "host_virt_mem_threshold",
    "mail.smtp.host": "mail_smtp_host",
    "mail.smtp.port": "mail_smtp_port",
    "mail.smtp.encryption": "mail_smtp_encryption",
    "mail.smtp.username": "mail_smtp_username",
    "mail.smtp.password": "mail_smtp_password",
    "mail.from": "mail_from",
    "mail.to": "mail_to",
}

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


@dataclass(slots=True, frozen=True)
class Config:
    """
    Problem analyzer thresholds plus notification transport settings.

    Every threshold is an integer. Percent values are 0-100.
    """

    min_free_disk_space_mb: int = 100
    gc_cpu_threshold: int = 50
    gc_cpu_threshold_samples: int = 3
    cpu_threshold: int = 90
    cpu_threshold_samples: int = 5
    mem_after_gc_usage_threshold: int = 85
    mem_usage_threshold: int = 90
    host_virt_mem_threshold: int = 80

    mail_smtp_host: str | None = None
    mail_smtp_port: int = -1
    mail_smtp_encryption: Encryption = Encryption.NONE
    mail_smtp_username: str | None = None
    mail_smtp_password: str | None = field(default=None, repr=False)
    mail_from: str | None = None
    mail_to: str = ""
    webhook_url: str | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Check all bounded fields.

        Raises:
            ConfigError: if some value is out of its allowed range.
        """
        for name, (low, high) in _BOUNDS.items():
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigError(f"{name}: expected an integer, got {value!r}")
            if low is not None and value < low:
                raise ConfigError(f"{name}: {value} is less than the minimum of {low}")
            if high is not None and value > high:
                raise ConfigError(f"{name}: {value} is greater than the maximum of {high}")
        if not isinstance(self.mail_smtp_encryption, Encryption):
            raise ConfigError(f"mail_smtp_encryption: invalid value {self.mail_smtp_encryption!r}")

    def replace(self, **changes: Any) -> "Config":
        """Return a validated copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @property
    def mail_recipients(self) -> list[str]:
        """The mail_to addresses, split on commas."""
        return [addr.strip() for addr in self.mail_to.split(",") if addr.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.mail_smtp_host and self.mail_smtp_host.strip())

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url and self.webhook_url.strip())


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and ${VAR:-default} occurrences in string values."""
    if not isinstance(value, str):
        return value

    def lookup(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        resolved = os.environ.get(name, default)
        if resolved is None:
            raise ConfigError(f"environment variable {name} is not set")
        return resolved

    return _ENV_PATTERN.sub(lookup, value)


def _coerce(name: str, value: Any, current: Any) -> Any:
    if name == "mail_smtp_encryption":
        try:
            return Encryption(str(value).lower())
        except ValueError as ex:
            raise ConfigError(f"{name}: invalid value {value!r}, expected one of none, ssl, tls") from ex
    if isinstance(current, int) and not isinstance(current, bool):
        try:
            return int(str(value).strip())
        except ValueError as ex:
            raise ConfigError(f"{name}: failed to parse {value!r} as an integer") from ex
    return None if value is None else str(value)


def config_from_dict(raw: dict[str, Any], base: Config | None = None) -> Config:
    """
    Build a Config from a flat mapping.

    Args:
        raw: key/value mapping; keys may be snake_case field names or the
            legacy camelCase/dotted property names.
        base: values not present in raw are taken from here. Defaults to Config().

    Raises:
        ConfigError: on unknown keys or invalid values.
    """
    base = base or Config()
    known = {f.name for f in dataclasses.fields(Config)}
    changes: dict[str, Any] = {}
    for key, value in raw.items():
        name = _LEGACY_KEYS.get(key, key)
        if name not in known:
            raise ConfigError(f"unknown configuration key {key!r}")
        changes[name] = _coerce(name, _substitute_env(value), getattr(base, name))
    return base.replace(**changes)


def load_config(path: str | Path) -> Config:
    """
    Load the configuration from a YAML file.

    The file holds a flat mapping, optionally nested under a top-level
    ``webmon`` key. A missing or empty file yields the defaults.

    Raises:
        ConfigError: if the file is not valid YAML or holds invalid values.
    """
    path = Path(path)
    if not path.exists():
        logger.info("Configuration file not found, using defaults", config_path=str(path))
        return Config()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as ex:
        raise ConfigError(f"{path}: YAML parsing error: {ex}") from ex
    if raw is None:
        return Config()
    if isinstance(raw, dict) and isinstance(raw.get("webmon"), dict):
        raw = raw["webmon"]
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    config = config_from_dict(raw)
    logger.info("Configuration loaded", config_path=str(path), keys=sorted(raw))
    return config
