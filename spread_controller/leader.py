"""Leader election on a coordination.k8s.io Lease."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from .config import (
    API_REQUEST_TIMEOUT_SECONDS,
    LEASE_DURATION_SECONDS,
    LEASE_MAX_API_FAILURES,
    LEASE_RENEW_DEADLINE_SECONDS,
    LEASE_RETRY_PERIOD_SECONDS,
)
from .errors import FatalError

logger = logging.getLogger(__name__)


class LeaseCoordinator:
    """
    Explicit leadership state backed by a Lease object.

    Another holder's lease counts as expired once the lease record has not
    changed for ``lease_duration`` seconds of local time. Comparing against
    our own clock rather than the recorded renewTime keeps election correct
    under clock skew between instances.
    """

    def __init__(
        self,
        identity: str,
        name: str,
        namespace: str,
        coordination_api: Optional[client.CoordinationV1Api] = None,
        lease_duration: int = LEASE_DURATION_SECONDS,
        renew_deadline: int = LEASE_RENEW_DEADLINE_SECONDS,
        retry_period: int = LEASE_RETRY_PERIOD_SECONDS,
        max_api_failures: int = LEASE_MAX_API_FAILURES,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if renew_deadline >= lease_duration:
            raise ValueError("renew_deadline must be shorter than lease_duration")

        self.identity = identity
        self.name = name
        self.namespace = namespace
        self.api = coordination_api or client.CoordinationV1Api()
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.max_api_failures = max_api_failures
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self._clock = clock

        self._leader = threading.Event()
        self._observed: Optional[Tuple[Optional[str], Optional[datetime]]] = None
        self._observed_at = 0.0
        self._api_failures = 0
        self.fatal_error: Optional[FatalError] = None

    @property
    def is_leader(self) -> bool:
        return self._leader.is_set()

    def _observe(self, spec: Optional[client.V1LeaseSpec]) -> None:
        record = (spec.holder_identity, spec.renew_time) if spec else (None, None)
        if record != self._observed:
            self._observed = record
            self._observed_at = self._clock()

    def _held_by_other(self, spec: Optional[client.V1LeaseSpec]) -> bool:
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        duration = spec.lease_duration_seconds or self.lease_duration
        return self._observed_at + duration > self._clock()

    def try_acquire_or_renew(self) -> bool:
        """
        Take the lease if it is free or expired, or renew it if we hold it.

        Returns:
            True if this instance holds the lease afterwards

        Raises:
            ApiException: on API errors other than 404 (read) and 409 (write)
        """
        now = datetime.now(timezone.utc)

        try:
            lease = self.api.read_namespaced_lease(
                self.name, self.namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
            )
        except ApiException as e:
            if e.status != 404:
                raise
            return self._create(now)

        spec = lease.spec or client.V1LeaseSpec()
        self._observe(lease.spec)

        if self._held_by_other(spec):
            if self.is_leader:
                logger.warning(
                    f"Lease {self.namespace}/{self.name} taken over by {spec.holder_identity}"
                )
                self._set_leader(False)
            else:
                logger.debug(f"Lease {self.namespace}/{self.name} held by {spec.holder_identity}")
            return False

        if spec.holder_identity != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.lease_duration_seconds = self.lease_duration
        spec.renew_time = now
        lease.spec = spec

        try:
            self.api.replace_namespaced_lease(
                self.name, self.namespace, lease, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
            )
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Lease {self.namespace}/{self.name} changed concurrently")
                return False
            raise

        self._observe(spec)
        return True

    def _create(self, now: datetime) -> bool:
        lease = client.V1Lease(
            metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=client.V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.api.create_namespaced_lease(
                self.namespace, lease, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
            )
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        self._observe(lease.spec)
        logger.info(f"Created lease {self.namespace}/{self.name}")
        return True

    def acquire(self) -> bool:
        """Attempt to become leader once; API errors count toward the fatal limit."""
        if self._attempt():
            self._set_leader(True)
            return True
        return False

    def renew(self) -> bool:
        """Renew the lease once. Does not change leadership state by itself."""
        return self.is_leader and self._attempt()

    def release(self) -> None:
        """Give up the lease so another instance can take over without waiting."""
        was_leader = self.is_leader
        self._set_leader(False)
        if not was_leader:
            return
        try:
            lease = self.api.read_namespaced_lease(
                self.name, self.namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            lease.spec.lease_duration_seconds = 1
            lease.spec.renew_time = datetime.now(timezone.utc)
            self.api.replace_namespaced_lease(
                self.name, self.namespace, lease, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
            )
            logger.info(f"Released lease {self.namespace}/{self.name}")
        except (ApiException, TransportError) as e:
            logger.warning(f"Failed to release lease {self.namespace}/{self.name}: {e}")

    def _attempt(self) -> bool:
        try:
            ok = self.try_acquire_or_renew()
            self._api_failures = 0
            return ok
        except (ApiException, TransportError, ConnectionError, TimeoutError) as e:
            self._api_failures += 1
            logger.error(
                f"Lease {self.namespace}/{self.name} API error "
                f"({self._api_failures}/{self.max_api_failures}): {e}"
            )
            if self._api_failures >= self.max_api_failures:
                self.fatal_error = FatalError(
                    f"lease API unavailable after {self._api_failures} attempts"
                )
            return False

    def _set_leader(self, leader: bool) -> None:
        if leader and not self._leader.is_set():
            self._leader.set()
            logger.info(f"{self.identity} became leader")
            if self.on_started_leading:
                self.on_started_leading()
        elif not leader and self._leader.is_set():
            self._leader.clear()
            logger.warning(f"{self.identity} is no longer leader")
            if self.on_stopped_leading:
                self.on_stopped_leading()

    def run(self, stop_event: threading.Event) -> None:
        """
        Contend for leadership and keep renewing until stopped.

        Leadership is dropped at once when the renewal deadline passes or
        another holder is seen on the lease; the instance then goes back to
        contending.
        """
        logger.info(f"Starting leader election for {self.namespace}/{self.name} as {self.identity}")

        while not stop_event.is_set() and self.fatal_error is None:
            if not self.acquire():
                stop_event.wait(self.retry_period)
                continue

            last_renew = self._clock()
            while not stop_event.wait(self.retry_period):
                if self._attempt():
                    last_renew = self._clock()
                    continue
                if not self.is_leader:
                    break
                if self.fatal_error is not None or self._clock() - last_renew >= self.renew_deadline:
                    logger.error(f"Failed to renew lease {self.namespace}/{self.name} within deadline")
                    self._set_leader(False)
                    break

        if self.fatal_error is not None:
            self._set_leader(False)
        else:
            self.release()
        logger.info("Leader election stopped")
