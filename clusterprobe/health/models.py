"""
Probe Data Models

Defines the outcome of a probe run, the schedule a probe runs on, the
disposable remote objects probes create, and the per-run deadline.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Dict, Optional

# Codes are exported as metric labels, so they must stay short identifiers.
_CODE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")


class OutcomeStatus(Enum):
    """Classified result of one probe run."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class Outcome:
    """
    Result of a single probe run.

    Use the factory classmethods rather than the constructor.

    Attributes:
        status: Classified status
        code: Stable error code (unhealthy only)
        message: Human-readable detail (unhealthy only)
        cause: Why the probe could not reach a verdict (indeterminate only)
    """
    status: OutcomeStatus
    code: str = ""
    message: str = ""
    cause: Optional[BaseException] = field(default=None, compare=False)

    @classmethod
    def healthy(cls) -> "Outcome":
        return cls(status=OutcomeStatus.HEALTHY)

    @classmethod
    def unhealthy(cls, code: str, message: str = "") -> "Outcome":
        """
        Build an unhealthy outcome.

        Args:
            code: Fixed code from the probe type's vocabulary
            message: Free-form detail; never used as a label

        Raises:
            ValueError: If the code is empty or not a plain identifier
        """
        if not code or not _CODE_PATTERN.match(code):
            raise ValueError(f"invalid unhealthy code: {code!r}")
        return cls(status=OutcomeStatus.UNHEALTHY, code=code, message=message)

    @classmethod
    def indeterminate(cls, cause: BaseException) -> "Outcome":
        return cls(status=OutcomeStatus.INDETERMINATE, message=str(cause), cause=cause)

    @property
    def is_healthy(self) -> bool:
        return self.status == OutcomeStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True)
class ProbeSchedule:
    """
    A probe bound to its interval and timeout.

    Attributes:
        name: Unique probe name
        interval: Seconds between runs
        timeout: Seconds each run may take
        probe: The probe instance
    """
    name: str
    interval: float
    timeout: float
    probe: Any

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"probe {self.name!r}: interval must be greater than 0")
        if self.timeout <= 0:
            raise ValueError(f"probe {self.name!r}: timeout must be greater than 0")

    @property
    def probe_type(self) -> str:
        return self.probe.type


@dataclass
class ManagedResource:
    """
    A disposable remote object created by a probe run.

    Attributes:
        kind: Object kind (ConfigMap, Pod, ...)
        name: Object name
        namespace: Object namespace
        owner: Name of the probe that created it
        created_at: Server-side creation timestamp
        released: Set once the object has been deleted by its run
    """
    kind: str
    name: str
    namespace: str
    owner: str
    created_at: datetime
    released: bool = False

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now(UTC)) - self.created_at

    def is_stale(self, threshold: float, now: Optional[datetime] = None) -> bool:
        """True when the object has outlived ``threshold`` seconds."""
        return self.age(now) > timedelta(seconds=threshold)


@dataclass(frozen=True)
class Deadline:
    """
    Absolute deadline of a probe run, in event loop time.

    Every remote call made during a run bounds itself with the deadline,
    so a step that runs out of time fails with ``TimeoutError`` at that
    step and can be classified there.
    """
    when: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(asyncio.get_running_loop().time() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.when - asyncio.get_running_loop().time())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def bound(self, step_timeout: Optional[float] = None) -> float:
        """Seconds a step may take: its own timeout capped by the deadline."""
        remaining = self.remaining()
        if step_timeout is None:
            return remaining
        return min(step_timeout, remaining)

    def timeout(self, step_timeout: Optional[float] = None) -> asyncio.Timeout:
        """Context manager raising ``TimeoutError`` when the step runs out of time."""
        loop = asyncio.get_running_loop()
        return asyncio.timeout_at(loop.time() + self.bound(step_timeout))
