"""Applies corrective actions against the cluster API."""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from .config import (
    ANTI_AFFINITY_ANNOTATION,
    API_REQUEST_TIMEOUT_SECONDS,
    AVOID_DOMAIN_ANNOTATION,
    EXECUTOR_BACKOFF_MAX_SECONDS,
    EXECUTOR_BACKOFF_SECONDS,
    EXECUTOR_MAX_ATTEMPTS,
    LAST_RECONCILED_ANNOTATION,
    OWNER_ANNOTATION,
    PREFERRED_DOMAIN_ANNOTATION,
)
from .errors import ReconcileCancelled, TransientClusterError, classify_api_error
from .models import Cordon, CorrectiveAction, Evict, Noop, PatchAntiAffinity, Uncordon
from .utils import now_iso, serialize_stable

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """What happened to each action of one reconciliation pass."""
    applied: List[CorrectiveAction] = field(default_factory=list)
    skipped: List[CorrectiveAction] = field(default_factory=list)


class ActionExecutor:
    """
    Applies corrective actions one at a time, in order.

    Mutating calls carry the resourceVersion captured at evaluation time, so
    a concurrent change surfaces as ConflictError instead of being patched
    over. Transient errors are retried with exponential backoff.
    """

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        dry_run: bool = False,
        max_attempts: int = EXECUTOR_MAX_ATTEMPTS,
        backoff: float = EXECUTOR_BACKOFF_SECONDS,
        backoff_max: float = EXECUTOR_BACKOFF_MAX_SECONDS,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the executor.

        Args:
            core_api: CoreV1Api for evictions and pod and node patches
            dry_run: If True, log actions instead of applying them
            max_attempts: Attempts per action before a transient error is final
            backoff: Delay before the first retry, doubled on each retry
            backoff_max: Upper bound of the retry delay
            cancel_event: Set to abandon the pass between calls
        """
        self.core_api = core_api or client.CoreV1Api()
        self.dry_run = dry_run
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.cancel_event = cancel_event or threading.Event()

    def execute(self, actions: Sequence[CorrectiveAction], owner: str = "") -> ExecutionReport:
        """
        Apply actions in order, stopping at the first failure.

        Args:
            actions: Ordered actions from the evaluator
            owner: Reconcile key of the policy, recorded on touched objects

        Returns:
            ExecutionReport of applied and skipped actions

        Raises:
            ConflictError: an object changed since evaluation; re-evaluate
            TransientClusterError: retries exhausted
            PolicyError: the API rejected the action permanently
            ReconcileCancelled: the cancel event was set
        """
        report = ExecutionReport()

        for action in actions:
            if isinstance(action, Noop) or not action.mutating:
                report.skipped.append(action)
                continue
            self._check_cancelled()
            self.apply(action, owner)
            report.applied.append(action)

        return report

    def apply(self, action: CorrectiveAction, owner: str = "") -> None:
        """Apply one action, retrying transient failures."""
        if isinstance(action, Noop):
            return

        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._submit(action, owner)
                return
            except (ApiException, TransportError, ConnectionError, TimeoutError) as e:
                error = classify_api_error(e, action.describe())
                if not isinstance(error, TransientClusterError):
                    logger.warning(f"{action.describe()} failed: {error}")
                    raise error from e
                if attempt == self.max_attempts:
                    logger.error(f"{action.describe()} failed after {attempt} attempt(s): {error}")
                    raise error from e
                logger.warning(
                    f"{action.describe()} attempt {attempt}/{self.max_attempts} failed: "
                    f"{error}; retrying in {delay:.1f}s"
                )
                if self.cancel_event.wait(delay):
                    raise ReconcileCancelled(f"cancelled while retrying {action.describe()}")
                delay = min(delay * 2, self.backoff_max)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ReconcileCancelled("reconciliation cancelled")

    def _submit(self, action: CorrectiveAction, owner: str) -> None:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would apply {action.describe()}")
            return

        if isinstance(action, Evict):
            self._evict(action)
        elif isinstance(action, Cordon):
            self._cordon(action, owner)
        elif isinstance(action, Uncordon):
            self._uncordon(action)
        elif isinstance(action, PatchAntiAffinity):
            self._patch_anti_affinity(action, owner)
        else:
            raise TypeError(f"unsupported action {action!r}")

        logger.info(f"Applied {action.describe()}")

    def _evict(self, action: Evict) -> None:
        delete_options = None
        if action.resource_version:
            delete_options = client.V1DeleteOptions(
                preconditions=client.V1Preconditions(resource_version=action.resource_version)
            )
        body = client.V1Eviction(
            api_version="policy/v1",
            kind="Eviction",
            metadata=client.V1ObjectMeta(name=action.pod_name, namespace=action.namespace),
            delete_options=delete_options,
        )
        self.core_api.create_namespaced_pod_eviction(
            name=action.pod_name,
            namespace=action.namespace,
            body=body,
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )

    def _cordon(self, action: Cordon, owner: str) -> None:
        metadata = {"annotations": {OWNER_ANNOTATION: owner}}
        if action.resource_version:
            metadata["resourceVersion"] = action.resource_version
        self.core_api.patch_node(
            name=action.node_name,
            body={"metadata": metadata, "spec": {"unschedulable": True}},
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )

    def _uncordon(self, action: Uncordon) -> None:
        # A null value removes the owner annotation in a merge patch.
        metadata = {"annotations": {OWNER_ANNOTATION: None}}
        if action.resource_version:
            metadata["resourceVersion"] = action.resource_version
        self.core_api.patch_node(
            name=action.node_name,
            body={"metadata": metadata, "spec": {"unschedulable": False}},
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )

    def _patch_anti_affinity(self, action: PatchAntiAffinity, owner: str) -> None:
        metadata = {
            "annotations": {
                OWNER_ANNOTATION: owner,
                AVOID_DOMAIN_ANNOTATION: action.rule.avoid_domain,
                PREFERRED_DOMAIN_ANNOTATION: action.rule.preferred_domain,
                ANTI_AFFINITY_ANNOTATION: serialize_stable(action.rule.to_dict()),
                LAST_RECONCILED_ANNOTATION: now_iso(),
            }
        }
        if action.resource_version:
            metadata["resourceVersion"] = action.resource_version
        self.core_api.patch_namespaced_pod(
            name=action.pod_name,
            namespace=action.namespace,
            body={"metadata": metadata},
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )
