"""
Outcome Classifier

Turns raw failures into the closed Outcome variant. A step that ran out
of time always gets its ``*Timeout`` code, never the ``*Error`` code of
the same step.
"""

import logging
from typing import NamedTuple, Optional

from urllib3.exceptions import MaxRetryError
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

from .models import Outcome

logger = logging.getLogger(__name__)


def is_timeout(exc: BaseException) -> bool:
    """
    Check whether an error was caused by a deadline or request timeout.

    Follows the ``__cause__``/``__context__`` chain, and unwraps urllib3
    retry errors, which is how the Kubernetes client reports an elapsed
    ``_request_timeout``.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (TimeoutError, Urllib3TimeoutError)):
            return True
        if isinstance(current, MaxRetryError) and current.reason is not None:
            if isinstance(current.reason, Urllib3TimeoutError):
                return True
        current = current.__cause__ or current.__context__
    return False


class StepCodes(NamedTuple):
    """The timeout/error code pair of one failure point in a probe."""
    timeout: str
    error: str

    def classify(self, exc: BaseException, action: str) -> Outcome:
        """
        Classify a failed step.

        Args:
            exc: The error raised by the step
            action: What the step was doing, e.g. "creating ConfigMap"

        Returns:
            Unhealthy outcome carrying the timeout or error code
        """
        if is_timeout(exc):
            return Outcome.unhealthy(self.timeout, f"timed out while {action}")
        return Outcome.unhealthy(self.error, f"failed {action}: {exc}")


def classify(outcome: Optional[Outcome], error: Optional[BaseException] = None) -> Outcome:
    """
    Final classification of a probe run.

    An invocation error means the probe failed to check, so it becomes
    indeterminate rather than unhealthy.
    """
    if error is not None:
        return Outcome.indeterminate(error)
    if outcome is None:
        logger.warning("Probe returned no outcome")
        return Outcome.indeterminate(RuntimeError("probe returned no outcome"))
    return outcome
