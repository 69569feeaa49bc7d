"""Reconciliation logic for the Spread Controller."""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .config import OWNER_ANNOTATION
from .crd_client import SpreadPolicyClient
from .errors import (
    ConflictError,
    ControllerError,
    PolicyError,
    ReconcileCancelled,
    TransientClusterError,
)
from .evaluator import (
    REASON_SETTLING,
    REASON_UNRESOLVED_DOMAIN,
    REASON_UNSATISFIABLE,
    build_placement,
    evaluate,
)
from .executor import ActionExecutor
from .models import (
    Condition,
    ConditionType,
    CorrectiveAction,
    Evaluation,
    InvalidPolicy,
    SpreadPolicy,
    SpreadStatus,
    Uncordon,
)
from .resource_cache import ResourceCache
from .utils import now_iso
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class KeyState(str, Enum):
    IDLE = "Idle"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class Outcome(str, Enum):
    SUCCEEDED = "Succeeded"
    DELETED = "Deleted"
    INVALID = "Invalid"
    DEFERRED = "Deferred"
    CONFLICT = "Conflict"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


# Outcomes that go back to the queue with backoff.
RETRY_OUTCOMES = frozenset({Outcome.DEFERRED, Outcome.CONFLICT, Outcome.FAILED})


@dataclass
class ReconcileResult:
    key: str
    outcome: Outcome
    evaluation: Optional[Evaluation] = None
    applied: List[CorrectiveAction] = field(default_factory=list)
    error: Optional[ControllerError] = None
    status_written: bool = False


def _comparable(status: Dict[str, Any]) -> Dict[str, Any]:
    """Status without the fields that change on every pass."""
    comparable = dict(status)
    comparable.pop("lastReconcileTime", None)
    return comparable


class SpreadReconciler:
    """Reconciles SpreadPolicy keys popped from the work queue."""

    def __init__(
        self,
        cache: ResourceCache,
        executor: ActionExecutor,
        policy_client: SpreadPolicyClient,
        queue: WorkQueue,
    ):
        self.cache = cache
        self.executor = executor
        self.policy_client = policy_client
        self.queue = queue
        self._states: Dict[str, KeyState] = {}
        self._last_results: Dict[str, ReconcileResult] = {}
        self._lock = threading.Lock()

    # State tracking

    def state_of(self, key: str) -> KeyState:
        with self._lock:
            return self._states.get(key, KeyState.IDLE)

    def last_result(self, key: str) -> Optional[ReconcileResult]:
        with self._lock:
            return self._last_results.get(key)

    def _set_state(self, key: str, state: KeyState) -> None:
        with self._lock:
            self._states[key] = state

    def enqueue(self, key: str) -> None:
        """Schedule a key; a running key is marked dirty by the queue instead."""
        with self._lock:
            if self._states.get(key) != KeyState.RUNNING:
                self._states[key] = KeyState.SCHEDULED
        self.queue.enqueue(key)

    def enqueue_all(self) -> int:
        """
        Resync: schedule every policy known to the cache.

        Owners recorded on nodes are scheduled too, so cordons left behind by a
        policy deleted during another leadership term are still released.
        """
        keys = set(self.cache.policy_keys())
        keys.update(
            node.annotations[OWNER_ANNOTATION]
            for node in self.cache.list_nodes()
            if node.annotations.get(OWNER_ANNOTATION)
        )
        keys = sorted(keys)
        for key in keys:
            self.enqueue(key)
        return len(keys)

    # Worker loop

    def run_worker(self, stop_event: threading.Event) -> None:
        """Drain the queue until it shuts down or ``stop_event`` is set."""
        name = threading.current_thread().name
        logger.info(f"Worker {name} started")
        while not stop_event.is_set():
            if not self.process_next(timeout=1.0):
                break
        logger.info(f"Worker {name} stopped")

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one key from the queue.

        Returns:
            False once the queue has shut down, True otherwise
        """
        key = self.queue.dequeue(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down

        try:
            result = self.reconcile(key)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {key}")
            result = ReconcileResult(key, Outcome.FAILED, error=TransientClusterError(str(e)))

        self._finish(result)
        return True

    def _finish(self, result: ReconcileResult) -> None:
        key = result.key
        with self._lock:
            self._last_results[key] = result

        if result.outcome == Outcome.DELETED:
            self.queue.forget(key)
            self.queue.mark_done(key)
            with self._lock:
                self._states.pop(key, None)
                self._last_results.pop(key, None)
            return

        if result.outcome in RETRY_OUTCOMES:
            self._set_state(key, KeyState.FAILED)
            delay = self.queue.mark_failed(key)
            self._set_state(key, KeyState.SCHEDULED)
            logger.info(f"Reconcile of {key} {result.outcome.value.lower()}: {result.error}; retry in {delay:.1f}s")
            return

        self._set_state(key, KeyState.SUCCEEDED)
        self.queue.forget(key)
        self.queue.mark_done(key)
        with self._lock:
            # Succeeded returns to Idle unless an event arrived while running.
            if self._states.get(key) == KeyState.SUCCEEDED:
                self._states[key] = KeyState.SCHEDULED if self.queue.is_pending(key) else KeyState.IDLE

    # Reconciliation

    def reconcile(self, key: str) -> ReconcileResult:
        """
        Run one reconciliation pass for a key.

        Args:
            key: namespace/name of a SpreadPolicy

        Returns:
            ReconcileResult describing the outcome
        """
        self._set_state(key, KeyState.RUNNING)

        if not self.cache.reliable:
            return ReconcileResult(key, Outcome.DEFERRED, error=TransientClusterError(
                "resource cache is not synced or is degraded"
            ))

        policy = self.cache.get_policy(key)
        if policy is None or policy.deleting:
            failure = self._release_cordons(key)
            if failure is not None:
                return failure
            logger.info(f"Policy {key} deleted, stopping reconciliation")
            return ReconcileResult(key, Outcome.DELETED)

        if isinstance(policy, InvalidPolicy):
            return self._reconcile_invalid(policy)

        placement = build_placement(policy, self.cache.list_pods(), self.cache.list_nodes())
        evaluation = evaluate(policy, placement)
        logger.debug(
            f"Policy {key}: counts={evaluation.counts} ideal={evaluation.ideal} "
            f"skew={evaluation.skew} reason={evaluation.reason}"
        )

        try:
            report = self.executor.execute(evaluation.actions, owner=key)
        except ConflictError as e:
            logger.info(f"Conflict while applying actions for {key}, re-evaluating: {e}")
            return ReconcileResult(key, Outcome.CONFLICT, evaluation=evaluation, error=e)
        except ReconcileCancelled as e:
            logger.info(f"Reconciliation of {key} cancelled")
            return ReconcileResult(key, Outcome.CANCELLED, evaluation=evaluation, error=e)
        except (TransientClusterError, PolicyError) as e:
            outcome = Outcome.FAILED if isinstance(e, TransientClusterError) else Outcome.INVALID
            result = ReconcileResult(key, outcome, evaluation=evaluation, error=e)
            return self._write_status(policy, result, self._build_status(policy, evaluation, error=e))

        if evaluation.balanced or not policy.cordon_donor_nodes:
            failure = self._release_cordons(key)
            if failure is not None:
                failure.evaluation = evaluation
                failure.applied = report.applied
                return failure

        result = ReconcileResult(key, Outcome.SUCCEEDED, evaluation=evaluation, applied=report.applied)
        status = self._build_status(policy, evaluation, applied=report.applied)
        return self._write_status(policy, result, status)

    def _release_cordons(self, key: str) -> Optional[ReconcileResult]:
        """
        Uncordon every node cordoned on behalf of ``key``.

        Returns:
            None when nothing is left to release, else the failed result
        """
        releases = [
            Uncordon(node_name=node.name, resource_version=node.resource_version)
            for node in self.cache.list_nodes()
            if node.annotations.get(OWNER_ANNOTATION) == key
        ]
        if not releases:
            return None

        try:
            self.executor.execute(releases, owner=key)
        except ConflictError as e:
            return ReconcileResult(key, Outcome.CONFLICT, error=e)
        except ReconcileCancelled as e:
            return ReconcileResult(key, Outcome.CANCELLED, error=e)
        except (TransientClusterError, PolicyError) as e:
            logger.error(f"Failed to release nodes cordoned for {key}: {e}")
            return ReconcileResult(key, Outcome.FAILED, error=e)

        logger.info(f"Released {len(releases)} node(s) cordoned for {key}")
        return None

    def _reconcile_invalid(self, policy: InvalidPolicy) -> ReconcileResult:
        error = PolicyError(policy.error)
        result = ReconcileResult(policy.key, Outcome.INVALID, error=error)
        status = SpreadStatus(
            observed_generation=policy.generation,
            last_reconcile_time=now_iso(),
            message=policy.error,
            conditions=self._conditions(policy, [
                Condition(ConditionType.PROGRESSING, False, "InvalidSpec"),
                Condition(ConditionType.BALANCED, False, "InvalidSpec"),
                Condition(ConditionType.DEGRADED, True, "InvalidSpec", policy.error),
            ]),
        )
        return self._write_status(policy, result, status)

    def _build_status(
        self,
        policy: SpreadPolicy,
        evaluation: Evaluation,
        applied: Sequence[CorrectiveAction] = (),
        error: Optional[ControllerError] = None,
    ) -> SpreadStatus:
        applied_ids = {id(action) for action in applied}
        pending = [a.describe() for a in evaluation.actions if id(a) not in applied_ids]

        if error is not None:
            reason = "ActionFailed" if isinstance(error, TransientClusterError) else "ActionRejected"
            degraded = Condition(ConditionType.DEGRADED, True, reason, str(error))
            message = f"{evaluation.message}; {reason}: {error}"
        elif evaluation.degraded or evaluation.reason == REASON_UNSATISFIABLE:
            degraded = Condition(ConditionType.DEGRADED, True, evaluation.reason, evaluation.message)
            message = evaluation.message
        elif evaluation.unresolved:
            note = (
                f"{evaluation.unresolved} pod(s) run on nodes without label "
                f"{policy.domain_key!r} and are not counted"
            )
            degraded = Condition(ConditionType.DEGRADED, True, REASON_UNRESOLVED_DOMAIN, note)
            message = f"{evaluation.message}; {note}"
        else:
            degraded = Condition(ConditionType.DEGRADED, False, "Healthy")
            message = evaluation.message

        if applied:
            progressing = Condition(
                ConditionType.PROGRESSING, True, "ActionsApplied",
                f"applied {len(applied)} action(s)",
            )
        elif evaluation.reason == REASON_SETTLING:
            progressing = Condition(ConditionType.PROGRESSING, True, REASON_SETTLING, evaluation.message)
        else:
            progressing = Condition(ConditionType.PROGRESSING, False, "Idle")

        balanced = Condition(
            ConditionType.BALANCED,
            evaluation.balanced and error is None,
            evaluation.reason,
            evaluation.message,
        )

        return SpreadStatus(
            observed_generation=policy.generation,
            last_reconcile_time=now_iso(),
            observed_distribution=evaluation.counts,
            ideal_distribution=evaluation.ideal,
            skew=evaluation.skew,
            pending_actions=pending,
            conditions=self._conditions(policy, [progressing, balanced, degraded]),
            message=message,
        )

    def _conditions(self, policy, conditions: List[Condition]) -> List[Condition]:
        """Carry lastTransitionTime over from conditions whose status is unchanged."""
        previous = {
            c.get("type"): c for c in (policy.status or {}).get("conditions", []) if isinstance(c, dict)
        }
        now = now_iso()
        for condition in conditions:
            before = previous.get(condition.type.value)
            status = "True" if condition.status else "False"
            if before and before.get("status") == status and before.get("lastTransitionTime"):
                condition.last_transition_time = before["lastTransitionTime"]
            else:
                condition.last_transition_time = now
        return conditions

    def _write_status(self, policy, result: ReconcileResult, status: SpreadStatus) -> ReconcileResult:
        body = status.to_dict()
        if _comparable(body) == _comparable(policy.status or {}):
            logger.debug(f"Status of {policy.key} unchanged, skipping write")
            return result

        try:
            self.policy_client.update_policy_status(
                policy.name, policy.namespace, body, previous=policy.status
            )
        except ConflictError as e:
            if e.status == 404:
                logger.info(f"Policy {policy.key} disappeared before its status was written")
                return ReconcileResult(policy.key, Outcome.DELETED)
            return ReconcileResult(policy.key, Outcome.CONFLICT, result.evaluation, result.applied, e)
        except (TransientClusterError, PolicyError) as e:
            return ReconcileResult(policy.key, Outcome.FAILED, result.evaluation, result.applied, e)

        result.status_written = True
        logger.info(
            f"Policy {policy.key}: {result.outcome.value}, "
            f"distribution={status.observed_distribution}, skew={status.skew}"
        )
        return result
