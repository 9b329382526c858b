"""
Per-service advisory locks.

At most one deploy, redeploy or rollback may run against a service at a time
within this process. A second request fails fast instead of queueing.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Set

from ...exceptions import DeploymentInProgressError

logger = logging.getLogger(__name__)


class ServiceLockRegistry:
    """Tracks which services currently have an orchestration stream running."""

    def __init__(self):
        self._held: Set[str] = set()

    def is_locked(self, service_id: str) -> bool:
        return service_id in self._held

    @contextmanager
    def hold(self, service_id: str) -> Iterator[None]:
        """
        Hold the lock for a service for the duration of the block.

        Check and acquire happen without an await in between, so the registry
        is safe for coroutines sharing one event loop.

        Raises:
            DeploymentInProgressError: If the service is already locked
        """
        if service_id in self._held:
            logger.warning(f"Rejected concurrent deployment of service {service_id}")
            raise DeploymentInProgressError(
                f"A deployment is already in progress for service {service_id}"
            )

        self._held.add(service_id)
        try:
            yield
        finally:
            self._held.discard(service_id)
