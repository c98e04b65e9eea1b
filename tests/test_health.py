"""
Tests for the probe data models and the outcome classifier
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from clusterprobe.health import (
    Outcome, OutcomeStatus, ProbeSchedule, ManagedResource, Deadline,
    StepCodes, classify, is_timeout,
)


class TestOutcome:
    """Tests for the Outcome variant."""

    def test_status_enum_values(self):
        assert OutcomeStatus.HEALTHY.value == "healthy"
        assert OutcomeStatus.UNHEALTHY.value == "unhealthy"
        assert OutcomeStatus.INDETERMINATE.value == "indeterminate"

    def test_healthy(self):
        outcome = Outcome.healthy()
        assert outcome.status == OutcomeStatus.HEALTHY
        assert outcome.is_healthy
        assert outcome.code == ""

    def test_unhealthy_carries_code_and_message(self):
        outcome = Outcome.unhealthy("APIServerGetTimeout", "timed out")
        assert outcome.status == OutcomeStatus.UNHEALTHY
        assert not outcome.is_healthy
        assert outcome.code == "APIServerGetTimeout"
        assert outcome.message == "timed out"

    @pytest.mark.parametrize("code", ["", "has space", "with-dash", "1Leading", "code=value"])
    def test_unhealthy_rejects_bad_codes(self, code):
        with pytest.raises(ValueError):
            Outcome.unhealthy(code, "msg")

    def test_indeterminate_keeps_cause(self):
        cause = RuntimeError("cannot list")
        outcome = Outcome.indeterminate(cause)
        assert outcome.status == OutcomeStatus.INDETERMINATE
        assert outcome.cause is cause
        assert outcome.message == "cannot list"

    def test_equality_ignores_cause(self):
        assert Outcome.indeterminate(RuntimeError("x")) == Outcome.indeterminate(RuntimeError("x"))

    def test_to_dict(self):
        data = Outcome.unhealthy("PodStartupTimeout", "slow").to_dict()
        assert data == {"status": "unhealthy", "code": "PodStartupTimeout", "message": "slow"}


class TestProbeSchedule:
    """Tests for ProbeSchedule validation."""

    def test_probe_type_comes_from_probe(self):
        probe = MagicMock()
        probe.type = "dns"
        schedule = ProbeSchedule(name="dns", interval=10, timeout=5, probe=probe)
        assert schedule.probe_type == "dns"

    @pytest.mark.parametrize("interval,timeout", [(0, 1), (-1, 1), (1, 0), (1, -2)])
    def test_non_positive_durations_rejected(self, interval, timeout):
        with pytest.raises(ValueError):
            ProbeSchedule(name="p", interval=interval, timeout=timeout, probe=MagicMock())

    def test_immutable(self):
        schedule = ProbeSchedule(name="p", interval=1, timeout=1, probe=MagicMock())
        with pytest.raises(Exception):
            schedule.interval = 5


class TestManagedResource:
    """Tests for ManagedResource age checks."""

    def test_is_stale(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        resource = ManagedResource(
            kind="ConfigMap", name="cm", namespace="ns", owner="p",
            created_at=now - timedelta(seconds=30),
        )
        assert resource.age(now) == timedelta(seconds=30)
        assert resource.is_stale(10, now)
        assert not resource.is_stale(60, now)

    def test_not_released_by_default(self):
        resource = ManagedResource("Pod", "p", "ns", "owner", datetime.now(timezone.utc))
        assert resource.released is False


class TestDeadline:
    """Tests for the per-run Deadline."""

    @pytest.mark.asyncio
    async def test_bound_caps_step_timeout(self):
        deadline = Deadline.after(1.0)
        assert deadline.bound(0.2) == pytest.approx(0.2)
        assert deadline.bound(5.0) <= 1.0
        assert deadline.bound() <= 1.0
        assert not deadline.expired

    @pytest.mark.asyncio
    async def test_expired_deadline(self):
        deadline = Deadline.after(-1.0)
        assert deadline.expired
        assert deadline.remaining() == 0.0
        assert deadline.bound(3.0) == 0.0

    @pytest.mark.asyncio
    async def test_timeout_raises_at_step_bound(self):
        deadline = Deadline.after(5.0)
        with pytest.raises(TimeoutError):
            async with deadline.timeout(0.01):
                await asyncio.sleep(1)

    @pytest.mark.asyncio
    async def test_timeout_raises_at_deadline(self):
        deadline = Deadline.after(0.01)
        with pytest.raises(TimeoutError):
            async with deadline.timeout(5.0):
                await asyncio.sleep(1)


class TestIsTimeout:
    """Tests for timeout detection."""

    def test_builtin_timeout(self):
        assert is_timeout(TimeoutError())
        assert is_timeout(asyncio.TimeoutError())

    def test_urllib3_read_timeout(self):
        assert is_timeout(ReadTimeoutError(None, "/api", "read timed out"))

    def test_max_retry_wrapping_timeout(self):
        err = MaxRetryError(None, "/api", reason=ReadTimeoutError(None, "/api", "timed out"))
        assert is_timeout(err)

    def test_max_retry_wrapping_other_error(self):
        err = MaxRetryError(None, "/api", reason=ConnectionRefusedError())
        assert not is_timeout(err)

    def test_chained_cause(self):
        try:
            try:
                raise TimeoutError()
            except TimeoutError as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as e:
            assert is_timeout(e)

    def test_plain_error(self):
        assert not is_timeout(ValueError("boom"))


class TestStepCodes:
    """Tests for per-step classification."""

    codes = StepCodes("APIServerGetTimeout", "APIServerGetError")

    def test_timeout_gets_timeout_code(self):
        outcome = self.codes.classify(TimeoutError(), "getting ConfigMap")
        assert outcome.code == "APIServerGetTimeout"
        assert outcome.message == "timed out while getting ConfigMap"

    def test_error_gets_error_code(self):
        outcome = self.codes.classify(RuntimeError("403 Forbidden"), "getting ConfigMap")
        assert outcome.code == "APIServerGetError"
        assert "403 Forbidden" in outcome.message


class TestClassify:
    """Tests for the final classification of a run."""

    def test_outcome_passes_through(self):
        outcome = Outcome.unhealthy("DNSError", "x")
        assert classify(outcome) is outcome

    def test_error_becomes_indeterminate(self):
        error = RuntimeError("cannot reach registry")
        result = classify(None, error)
        assert result.status == OutcomeStatus.INDETERMINATE
        assert result.cause is error

    def test_error_wins_over_outcome(self):
        result = classify(Outcome.healthy(), RuntimeError("x"))
        assert result.status == OutcomeStatus.INDETERMINATE

    def test_missing_outcome_is_indeterminate(self):
        result = classify(None)
        assert result.status == OutcomeStatus.INDETERMINATE
