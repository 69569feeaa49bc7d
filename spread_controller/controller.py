"""Main controller logic for the Spread Controller."""

import logging
import os
import socket
import threading
import uuid
from pathlib import Path
from typing import List, Optional

from kubernetes import client

from .config import (
    DEFAULT_WORKERS,
    LEASE_NAME,
    LEASE_NAMESPACE,
    RESYNC_PERIOD_SECONDS,
    SHUTDOWN_GRACE_SECONDS,
)
from .crd_client import SpreadPolicyClient
from .executor import ActionExecutor
from .leader import LeaseCoordinator
from .reconciler import SpreadReconciler
from .resource_cache import CacheEvent, Kind, ResourceCache
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


def default_identity() -> str:
    """Unique identity for leader election: hostname plus a random suffix."""
    return f"{os.environ.get('POD_NAME') or socket.gethostname()}_{uuid.uuid4().hex[:8]}"


def _placement_changed(old, new) -> bool:
    if old is None or new is None:
        return True
    return (
        old.labels != new.labels
        or old.node_name != new.node_name
        or old.phase != new.phase
        or old.deleting != new.deleting
    )


def _node_changed(old, new) -> bool:
    if old is None or new is None:
        return True
    return (
        old.labels != new.labels
        or old.schedulable != new.schedulable
        or old.allocatable_pods != new.allocatable_pods
    )


class SpreadController:
    """
    CRD-based controller that watches SpreadPolicy objects and keeps the
    governed pods spread across failure domains.
    """

    def __init__(
        self,
        namespace: str = "",
        dry_run: bool = False,
        workers: int = DEFAULT_WORKERS,
        resync_period: int = RESYNC_PERIOD_SECONDS,
        leader_election: bool = True,
        lease_name: str = LEASE_NAME,
        lease_namespace: str = LEASE_NAMESPACE,
        identity: Optional[str] = None,
        ready_file: Optional[str] = None,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        coordination_api: Optional[client.CoordinationV1Api] = None,
    ):
        """
        Initialize the controller.

        Args:
            namespace: Namespace to watch ("" for all namespaces)
            dry_run: If True, don't make actual changes
            workers: Number of reconciliation worker threads
            resync_period: Seconds between unconditional re-enqueues of every policy
            leader_election: If False, act as leader immediately
            lease_name: Name of the leader election Lease
            lease_namespace: Namespace of the leader election Lease
            identity: Leader election identity (generated if omitted)
            ready_file: Path touched once the cache has synced
        """
        self.namespace = namespace
        self.dry_run = dry_run
        self.workers = workers
        self.resync_period = resync_period
        self.ready_file = ready_file

        self.v1 = core_api or client.CoreV1Api()
        self.policy_client = SpreadPolicyClient(custom_api)

        self.cache = ResourceCache(namespace=namespace)
        self._register_reflectors()
        self.cache.add_listener(self.handle_cache_event)

        self.elector: Optional[LeaseCoordinator] = None
        if leader_election:
            self.elector = LeaseCoordinator(
                identity=identity or default_identity(),
                name=lease_name,
                namespace=lease_namespace,
                coordination_api=coordination_api,
                on_started_leading=self.start_workers,
                on_stopped_leading=self.stop_workers,
            )

        self.ready = threading.Event()
        self._stop_event = threading.Event()
        self._term_lock = threading.RLock()
        self._reconciler: Optional[SpreadReconciler] = None
        self._worker_stop: Optional[threading.Event] = None
        self._worker_threads: List[threading.Thread] = []
        self._threads: List[threading.Thread] = []

    def _register_reflectors(self) -> None:
        if self.namespace:
            self.cache.add_reflector(Kind.POD, self.v1.list_namespaced_pod, {"namespace": self.namespace})
        else:
            self.cache.add_reflector(Kind.POD, self.v1.list_pod_for_all_namespaces)
        self.cache.add_reflector(Kind.NODE, self.v1.list_node)
        list_fn, list_kwargs = self.policy_client.list_call(self.namespace)
        self.cache.add_reflector(Kind.POLICY, list_fn, list_kwargs)

    @property
    def reconciler(self) -> Optional[SpreadReconciler]:
        return self._reconciler

    @property
    def is_leader(self) -> bool:
        if self.elector is None:
            return self._reconciler is not None
        return self.elector.is_leader

    # Event routing

    def _enqueue(self, key: str) -> None:
        reconciler = self._reconciler
        if reconciler is not None:
            reconciler.enqueue(key)

    def handle_cache_event(self, event: CacheEvent) -> None:
        """
        Map a cache change onto the policy keys it affects.

        Runs on the cache ingestion thread, so it only enqueues.
        """
        if self._reconciler is None:
            return

        if event.kind == Kind.POLICY:
            old, new = event.old, event.new
            if event.type == "MODIFIED" and old is not None and new is not None:
                # Status writes bump resourceVersion but not generation.
                if old.generation == new.generation and old.deleting == new.deleting:
                    return
            self._enqueue((new or old).key)
            return

        if event.kind == Kind.POD:
            if not _placement_changed(event.old, event.new):
                return
            for policy in self.cache.list_policies():
                if not hasattr(policy, "matches_pod"):
                    continue
                if any(pod is not None and policy.matches_pod(pod) for pod in (event.old, event.new)):
                    self._enqueue(policy.key)
            return

        if event.kind == Kind.NODE and _node_changed(event.old, event.new):
            for key in self.cache.policy_keys():
                self._enqueue(key)

    # Workers

    def start_workers(self) -> None:
        """Start a leadership term: fresh queue, executor and worker threads."""
        with self._term_lock:
            if self._reconciler is not None:
                return
            self._worker_stop = threading.Event()
            executor = ActionExecutor(
                core_api=self.v1,
                dry_run=self.dry_run,
                cancel_event=self._worker_stop,
            )
            self._reconciler = SpreadReconciler(
                cache=self.cache,
                executor=executor,
                policy_client=self.policy_client,
                queue=WorkQueue(),
            )
            self._worker_threads = [
                threading.Thread(
                    target=self._reconciler.run_worker,
                    args=(self._worker_stop,),
                    name=f"reconcile-worker-{i}",
                    daemon=True,
                )
                for i in range(self.workers)
            ]
            for thread in self._worker_threads:
                thread.start()

            count = self._reconciler.enqueue_all()
            logger.info(f"Started {self.workers} worker(s), enqueued {count} policy key(s)")

    def stop_workers(self, grace_period: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """
        End the leadership term.

        No new reconciliations start; pending keys are dropped; in-flight API
        calls get ``grace_period`` seconds to finish.
        """
        with self._term_lock:
            reconciler = self._reconciler
            if reconciler is None:
                return
            self._reconciler = None
            self._worker_stop.set()
            reconciler.queue.shutdown()
            threads, self._worker_threads = self._worker_threads, []

        for thread in threads:
            thread.join(grace_period)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not finish within {grace_period}s")
        logger.info("Reconciliation workers stopped")

    def periodic_resync(self) -> None:
        """Periodically enqueue every known policy."""
        logger.info(f"Starting periodic resync (interval: {self.resync_period}s)")

        while not self._stop_event.wait(self.resync_period):
            reconciler = self._reconciler
            if reconciler is None:
                continue
            count = reconciler.enqueue_all()
            logger.debug(f"Resync enqueued {count} policy key(s)")

    # Lifecycle

    def _mark_ready(self) -> None:
        self.ready.set()
        if self.ready_file:
            Path(self.ready_file).touch()
        logger.info("Controller is ready")

    def _start_thread(self, target, name: str, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def run(self) -> int:
        """
        Run the controller until stopped or a fatal error occurs.

        Returns:
            Process exit code: 0 after a requested stop, 1 after a fatal error
        """
        logger.info("=" * 60)
        logger.info("Starting Spread Controller")
        logger.info("=" * 60)
        logger.info(f"Namespace: {self.namespace or 'all namespaces'}")
        logger.info(f"Dry run: {self.dry_run}")
        logger.info(f"Leader election: {self.elector is not None}")

        self.cache.start()

        while not self.cache.wait_for_sync(timeout=1.0):
            if self.cache.fatal_error is not None or self._stop_event.is_set():
                break

        if self.cache.has_synced:
            self._mark_ready()
            self._start_thread(self.periodic_resync, "periodic-resync")
            if self.elector is None:
                self.start_workers()
            else:
                self._start_thread(self.elector.run, "leader-election", self._stop_event)

        exit_code = 0
        try:
            while not self._stop_event.wait(1.0):
                if self.cache.fatal_error is not None:
                    logger.critical(f"Fatal cache error: {self.cache.fatal_error}")
                    exit_code = 1
                    break
                if self.elector is not None and self.elector.fatal_error is not None:
                    logger.critical(f"Fatal leader election error: {self.elector.fatal_error}")
                    exit_code = 1
                    break
        except KeyboardInterrupt:
            logger.info("Shutdown requested...")

        self.shutdown()
        return exit_code

    def stop(self) -> None:
        """Request the controller to stop."""
        logger.info("Stopping controller...")
        self._stop_event.set()

    def shutdown(self) -> None:
        self._stop_event.set()
        self.stop_workers()
        for thread in self._threads:
            thread.join(5.0)
        self.cache.stop()
        self.ready.clear()
        logger.info("Controller stopped")
