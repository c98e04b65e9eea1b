"""
clusterprobe Configuration

Environment defaults and the YAML probe configuration.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

# =============================================================================
# Environment Defaults
# =============================================================================

DEFAULT_CONFIG_PATH = os.environ.get("CLUSTERPROBE_CONFIG", "/etc/clusterprobe/config.yaml")
METRICS_PORT = int(os.environ.get("CLUSTERPROBE_METRICS_PORT", "9800"))
LOG_LEVEL = os.environ.get("CLUSTERPROBE_LOG_LEVEL", "INFO")
KUBECONFIG = os.environ.get("KUBECONFIG") or None

# Label applied to every object a probe creates, valued with the probe name.
DEFAULT_OWNER_LABEL_KEY = "clusterprobe.io/owner"

MIN_PROBES = 1
MAX_PROBES = 20

# =============================================================================
# Validation Helpers
# =============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_QUALIFIED_NAME = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")


class ConfigError(Exception):
    """Invalid configuration. Carries every problem found, not just the first."""

    def __init__(self, errors: Union[str, List[str]]):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts Go-style strings ("500ms", "1m30s") or plain numbers of seconds.

    Raises:
        ValueError: If the value is not a duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("invalid duration: empty string")
    if text == "0":
        return 0.0
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        raise ValueError(f"invalid duration: {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def is_dns1123_label(value: str) -> bool:
    return bool(value) and len(value) <= 63 and bool(_DNS1123_LABEL.match(value))


def is_qualified_name(value: str) -> bool:
    """Kubernetes label key: optional DNS subdomain prefix, then a name."""
    if not value:
        return False
    prefix, _, name = value.rpartition("/")
    if "/" in value:
        if not prefix or len(prefix) > 253 or not _DNS1123_SUBDOMAIN.match(prefix):
            return False
    return len(name) <= 63 and bool(_QUALIFIED_NAME.match(name))


# =============================================================================
# Probe Configuration
# =============================================================================

@dataclass
class ProbeConfig:
    """
    One entry of the ``probes`` list.

    Attributes:
        name: Unique probe name (RFC 1123 label)
        type: Registry type id
        interval: Seconds between runs
        timeout: Seconds each run may take
        enabled: Disabled probes are skipped at startup
        params: Type-specific parameter block
    """
    name: str
    type: str
    interval: float
    timeout: float
    enabled: bool = True
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Config:
    """Parsed probe configuration."""
    probes: List[ProbeConfig] = field(default_factory=list)

    def enabled_probes(self) -> List[ProbeConfig]:
        return [p for p in self.probes if p.enabled]


def _parse_probe(index: int, data: Any, errors: List[str]) -> Optional[ProbeConfig]:
    if not isinstance(data, dict):
        errors.append(f"probes[{index}]: must be a mapping")
        return None

    name = data.get("name") or ""
    label = f"probe {name!r}" if name else f"probes[{index}]"
    if not name:
        errors.append(f"{label}: missing 'name'")
    elif not isinstance(name, str) or not is_dns1123_label(name):
        errors.append(f"{label}: 'name' must be a lowercase RFC 1123 label")

    probe_type = data.get("type") or ""
    if not probe_type:
        errors.append(f"{label}: missing 'type'")

    durations = {}
    for key in ("interval", "timeout"):
        if key not in data:
            errors.append(f"{label}: missing '{key}'")
            continue
        try:
            durations[key] = parse_duration(data[key])
        except ValueError as e:
            errors.append(f"{label}: invalid '{key}': {e}")
            continue
        if durations[key] <= 0:
            errors.append(f"{label}: '{key}' must be greater than 0, got {data[key]!r}")

    params = data.get("config") or {}
    if not isinstance(params, dict):
        errors.append(f"{label}: 'config' must be a mapping")
        params = {}

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        errors.append(f"{label}: 'enabled' must be true or false")

    if len(durations) < 2:
        return None
    return ProbeConfig(
        name=str(name),
        type=str(probe_type),
        interval=durations["interval"],
        timeout=durations["timeout"],
        enabled=bool(enabled),
        params=params,
    )


def parse_config(text: str) -> Config:
    """
    Parse and validate a YAML probe configuration.

    Raises:
        ConfigError: With every problem found
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse yaml: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping with a 'probes' list")
    entries = data.get("probes")
    if not isinstance(entries, list) or len(entries) < MIN_PROBES:
        raise ConfigError(f"at least {MIN_PROBES} probe(s) required")
    if len(entries) > MAX_PROBES:
        raise ConfigError(f"at most {MAX_PROBES} probes are allowed, got {len(entries)}")

    errors: List[str] = []
    probes: List[ProbeConfig] = []
    names = set()
    for index, entry in enumerate(entries):
        probe = _parse_probe(index, entry, errors)
        if probe is None:
            continue
        if probe.name in names:
            errors.append(f"duplicate probe name: {probe.name!r}")
        names.add(probe.name)
        probes.append(probe)

    if errors:
        raise ConfigError(errors)
    return Config(probes=probes)


def load_config(path: Union[str, Path]) -> Config:
    """Read and parse the configuration file."""
    try:
        with open(path, "r") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read config file {str(path)!r}: {e}") from e

    config = parse_config(text)
    logger.info(f"Loaded configuration from {path} ({len(config.probes)} probes)")
    return config


class ParamReader:
    """
    Typed access to a probe's ``config`` block.

    Collects every problem and raises them together from ``finish``.
    Step timeouts read through ``step_timeout`` must be strictly shorter
    than the probe timeout; the rule is the same for every probe type.

    Example:
        reader = ParamReader(config)
        namespace = reader.namespace("namespace", "kube-system")
        read_timeout = reader.step_timeout("readTimeout", 2.0)
        reader.finish()
    """

    def __init__(self, config: ProbeConfig):
        self.config = config
        self.data = config.params or {}
        self.errors: List[str] = []

    def _error(self, message: str) -> None:
        self.errors.append(f"probe {self.config.name!r}: {message}")

    def string(self, key: str, default: Optional[str] = None) -> str:
        value = self.data.get(key, default)
        if value is None or value == "":
            self._error(f"'{key}' is required")
            return ""
        if not isinstance(value, str):
            self._error(f"'{key}' must be a string")
            return ""
        return value

    def integer(self, key: str, default: Optional[int] = None, minimum: int = 1) -> int:
        value = self.data.get(key, default)
        if value is None:
            self._error(f"'{key}' is required")
            return minimum
        if isinstance(value, bool) or not isinstance(value, int):
            self._error(f"'{key}' must be an integer")
            return minimum
        if value < minimum:
            self._error(f"'{key}' must be at least {minimum}, got {value}")
        return value

    def duration(self, key: str, default: Optional[Union[str, float]] = None) -> float:
        value = self.data.get(key, default)
        if value is None:
            self._error(f"'{key}' is required")
            return 0.0
        try:
            seconds = parse_duration(value)
        except ValueError as e:
            self._error(f"invalid '{key}': {e}")
            return 0.0
        if seconds <= 0:
            self._error(f"'{key}' must be greater than 0")
        return seconds

    def step_timeout(self, key: str, default: Optional[Union[str, float]] = None) -> float:
        seconds = self.duration(key, default)
        if seconds > 0 and self.config.timeout <= seconds:
            self._error(
                f"probe timeout must be greater than '{key}': "
                f"timeout={self.config.timeout}s, {key}={seconds}s"
            )
        return seconds

    def string_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        value = self.data.get(key, default)
        if not isinstance(value, list) or not value or not all(isinstance(v, str) and v for v in value):
            self._error(f"'{key}' must be a non-empty list of strings")
            return []
        return list(value)

    def namespace(self, key: str, default: Optional[str] = None) -> str:
        value = self.string(key, default)
        if value and not is_dns1123_label(value):
            self._error(f"invalid namespace '{key}': {value!r}")
        return value

    def label_key(self, key: str, default: Optional[str] = DEFAULT_OWNER_LABEL_KEY) -> str:
        value = self.string(key, default)
        if value and not is_qualified_name(value):
            self._error(f"invalid label key '{key}': {value!r}")
        return value

    def finish(self) -> None:
        """Raise every collected problem at once."""
        if self.errors:
            raise ConfigError(self.errors)
