"""
Probe Base Class and Registry
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List

from ..config import Config, ConfigError, ProbeConfig
from ..health.models import Deadline, Outcome, ProbeSchedule

logger = logging.getLogger(__name__)


class UnrecognizedProbeType(ConfigError):
    """No builder is registered for the probe type."""

    def __init__(self, probe_type: str):
        super().__init__(f"unrecognized probe type: {probe_type!r}")
        self.probe_type = probe_type


class Probe(ABC):
    """
    Base class for all probes.

    ``run`` returns a classified Outcome. Raising from ``run`` means the
    probe could not check at all; the scheduler records that as unknown.
    """

    PROBE_TYPE: str = "base"

    def __init__(self, name: str):
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> str:
        return self.PROBE_TYPE

    @property
    def cleanup_grace(self) -> float:
        """Seconds past the run deadline the probe may spend cleaning up."""
        return 0.0

    @abstractmethod
    async def run(self, deadline: Deadline) -> Outcome:
        """Run the check once, finishing by ``deadline``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r})"


ProbeBuilder = Callable[[ProbeConfig, Any], Probe]


class ProbeRegistry:
    """
    Maps probe type ids to builders.

    Filled once at startup, before configuration is parsed, and only read
    afterwards.
    """

    def __init__(self):
        self._builders: Dict[str, ProbeBuilder] = {}

    def register(self, probe_type: str, builder: ProbeBuilder) -> None:
        """
        Register a builder for a probe type.

        Registering the same type twice replaces the first builder; treat
        it as a bug.
        """
        if probe_type in self._builders:
            logger.warning(f"Overwriting probe builder: {probe_type}")
        self._builders[probe_type] = builder
        logger.debug(f"Registered probe type: {probe_type}")

    def types(self) -> List[str]:
        return sorted(self._builders)

    def __contains__(self, probe_type: str) -> bool:
        return probe_type in self._builders

    def build(self, probe_config: ProbeConfig, kube: Any) -> Probe:
        """
        Build a probe from its configuration.

        Args:
            probe_config: The probe's configuration entry
            kube: Kubernetes clients handed to the builder

        Raises:
            UnrecognizedProbeType: If the type was never registered
            ConfigError: If the builder rejects the parameters
        """
        builder = self._builders.get(probe_config.type)
        if builder is None:
            raise UnrecognizedProbeType(probe_config.type)
        return builder(probe_config, kube)

    def build_schedules(self, config: Config, kube: Any) -> List[ProbeSchedule]:
        """
        Build a schedule for every enabled probe.

        Raises:
            ConfigError: With every build failure, once all probes were tried
        """
        errors: List[str] = []
        schedules: List[ProbeSchedule] = []
        for probe_config in config.probes:
            if not probe_config.enabled:
                logger.info(f"Skipping disabled probe {probe_config.name!r}")
                continue
            try:
                probe = self.build(probe_config, kube)
            except ConfigError as e:
                errors.extend(f"failed to build probe {probe_config.name!r}: {msg}" for msg in e.errors)
                continue
            schedules.append(ProbeSchedule(
                name=probe_config.name,
                interval=probe_config.interval,
                timeout=probe_config.timeout,
                probe=probe,
            ))
            logger.info(
                f"Built probe {probe_config.name!r} (type={probe_config.type}, "
                f"interval={probe_config.interval}s, timeout={probe_config.timeout}s)"
            )

        if errors:
            raise ConfigError(errors)
        return schedules
