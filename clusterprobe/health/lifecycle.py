"""
Resource Lifecycle Helper

Gives every probe that provisions disposable remote state the same
behavior: garbage-collect stale leftovers, enforce a quota, create the
object, observe it, and always clean it up.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Awaitable, Callable, List, Optional

from .classifier import StepCodes
from .models import Deadline, ManagedResource, Outcome

logger = logging.getLogger(__name__)

Observer = Callable[[ManagedResource], Awaitable[Outcome]]


class ResourceGone(Exception):
    """The object was already deleted."""


class LifecycleError(Exception):
    """Owned objects could not be listed."""


class QuotaExceeded(Exception):
    """The probe already holds its maximum number of live objects."""

    def __init__(self, owner: str, count: int, limit: int):
        super().__init__(
            f"maximum number of objects reached for {owner!r}: "
            f"current={count}, max allowed={limit}"
        )
        self.owner = owner
        self.count = count
        self.limit = limit


class ResourceDriver(ABC):
    """
    Remote operations on one kind of disposable object.

    Implementations must tag every object they create with the owner and
    rely on the server to stamp its creation time, so that a later GC pass
    can find it.
    """

    kind: str = "Resource"

    @abstractmethod
    async def list_owned(self, owner: str, timeout: float) -> List[ManagedResource]:
        """List live objects tagged with ``owner``."""

    @abstractmethod
    async def create(self, owner: str, timeout: float) -> ManagedResource:
        """Create one object tagged with ``owner``."""

    @abstractmethod
    async def delete(self, resource: ManagedResource, timeout: float) -> None:
        """Delete an object. Raises ``ResourceGone`` if it no longer exists."""


class ResourceLifecycle:
    """
    Create -> observe -> delete, with GC and quota.

    Example:
        lifecycle = ResourceLifecycle(
            driver=ConfigMapDriver(kube, "kube-system", "clusterprobe.io/owner"),
            owner="api-server",
            max_resources=10,
            stale_after=10.0,
            create_codes=StepCodes("APIServerCreateTimeout", "APIServerCreateError"),
            create_timeout=2.0,
        )
        outcome = await lifecycle.run(deadline, observe)
    """

    def __init__(
        self,
        driver: ResourceDriver,
        owner: str,
        max_resources: int,
        stale_after: float,
        create_codes: StepCodes,
        create_timeout: float,
        cleanup_timeout: Optional[float] = None,
    ):
        """
        Initialize the helper.

        Args:
            driver: Remote operations for the object kind
            owner: Owner tag, normally the probe name
            max_resources: Live objects allowed before runs are refused
            stale_after: Age in seconds after which a leftover is collected
            create_codes: Codes for the create step
            create_timeout: Bound on the create call
            cleanup_timeout: Bound on each delete call (defaults to create_timeout)
        """
        if max_resources <= 0:
            raise ValueError("max_resources must be greater than 0")
        self.driver = driver
        self.owner = owner
        self.max_resources = max_resources
        self.stale_after = stale_after
        self.create_codes = create_codes
        self.create_timeout = create_timeout
        self.cleanup_timeout = cleanup_timeout or create_timeout
        self.gc_reserve = self.create_timeout + self.cleanup_timeout

    async def garbage_collect(self, deadline: Deadline) -> List[Exception]:
        """
        Delete owned objects older than ``stale_after``.

        Never raises: deletion failures are aggregated, logged, and
        returned so the caller can carry on provisioning. The pass ends
        ``gc_reserve`` seconds before the run deadline, leaving the count
        and create steps their time even when deletes hang. Stale objects
        are deleted concurrently within that window.

        Returns:
            Errors hit while listing or deleting
        """
        gc_deadline = Deadline(deadline.when - self.gc_reserve)
        if gc_deadline.expired:
            logger.warning(f"Skipping garbage collection for {self.owner!r}: not enough time left in the run")
            return [TimeoutError("no time left for garbage collection")]

        try:
            async with gc_deadline.timeout():
                resources = await self.driver.list_owned(self.owner, gc_deadline.bound())
        except Exception as e:
            logger.error(f"Failed to list {self.driver.kind} objects for garbage collection ({self.owner}): {e}")
            return [e]

        now = datetime.now(UTC)
        stale = [r for r in resources if r.is_stale(self.stale_after, now)]
        results = await asyncio.gather(
            *(self._collect(r, gc_deadline) for r in stale),
            return_exceptions=True,
        )

        errors: List[Exception] = []
        for resource, result in zip(stale, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                errors.append(result)
                logger.error(f"Failed to delete old {resource.kind} {resource.name}: {result!r}")

        if errors:
            logger.warning(
                f"Garbage collection for {self.owner!r} left {len(errors)} "
                f"stale {self.driver.kind} object(s) behind"
            )
        return errors

    async def _collect(self, resource: ManagedResource, gc_deadline: Deadline) -> None:
        try:
            async with gc_deadline.timeout(self.cleanup_timeout):
                await self.driver.delete(resource, gc_deadline.bound(self.cleanup_timeout))
        except ResourceGone:
            return
        logger.info(f"Garbage collected {resource.kind} {resource.namespace}/{resource.name}")

    async def count(self, deadline: Deadline) -> int:
        """
        Count live owned objects.

        Raises:
            LifecycleError: If the objects cannot be listed
        """
        try:
            async with deadline.timeout():
                resources = await self.driver.list_owned(self.owner, deadline.bound())
        except Exception as e:
            raise LifecycleError(f"failed to list {self.driver.kind} objects: {e}") from e
        return len(resources)

    async def release(self, resource: ManagedResource, deadline: Deadline, timeout: float) -> None:
        """
        Delete the run's object as a checked step.

        Errors propagate so the observer can classify them. On success the
        object is marked released and the final cleanup skips it.
        """
        try:
            async with deadline.timeout(timeout):
                await self.driver.delete(resource, deadline.bound(timeout))
        except ResourceGone:
            pass
        resource.released = True

    async def run(self, deadline: Deadline, observe: Observer) -> Outcome:
        """
        Run one full lifecycle.

        Args:
            deadline: Deadline of the probe run
            observe: Probe-specific verification of the created object

        Returns:
            The observer's outcome, an unhealthy create outcome, or an
            indeterminate outcome when the quota is exhausted

        Raises:
            LifecycleError: If owned objects cannot be counted
        """
        await self.garbage_collect(deadline)

        live = await self.count(deadline)
        if live >= self.max_resources:
            quota = QuotaExceeded(self.owner, live, self.max_resources)
            logger.warning(f"Skipping run: {quota}")
            return Outcome.indeterminate(quota)

        try:
            async with deadline.timeout(self.create_timeout):
                resource = await self.driver.create(self.owner, deadline.bound(self.create_timeout))
        except Exception as e:
            return self.create_codes.classify(e, f"creating {self.driver.kind}")

        try:
            return await observe(resource)
        finally:
            if not resource.released:
                await self._cleanup(resource)

    async def _cleanup(self, resource: ManagedResource) -> None:
        """One bounded delete attempt; failures are left for the next GC pass."""
        try:
            async with asyncio.timeout(self.cleanup_timeout):
                await self.driver.delete(resource, self.cleanup_timeout)
            resource.released = True
        except ResourceGone:
            resource.released = True
        except Exception as e:
            logger.error(f"Failed to delete {resource.kind} {resource.namespace}/{resource.name}: {e}")
