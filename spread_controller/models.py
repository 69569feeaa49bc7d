"""Typed records for cluster objects, spread policies and corrective actions."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from .config import (
    DEFAULT_ACTION_MODE,
    DEFAULT_MAX_ACTIONS_PER_RECONCILE,
    DEFAULT_MAX_SKEW,
    DEFAULT_WEIGHTED_TOLERANCE,
)
from .errors import MalformedObjectError, PolicyError
from .utils import labels_match_selector, parse_quantity, parse_timestamp

logger = logging.getLogger(__name__)


class DistributionMode(str, Enum):
    EVEN = "Even"
    MAX_SKEW = "MaxSkew"
    WEIGHTED = "Weighted"


class ActionMode(str, Enum):
    ADVISORY = "Advisory"
    ENFORCING = "Enforcing"


class ConditionType(str, Enum):
    PROGRESSING = "Progressing"
    BALANCED = "Balanced"
    DEGRADED = "Degraded"


def make_key(namespace: str, name: str) -> str:
    """Create a reconcile key from namespace and name."""
    return f"{namespace}/{name}"


def split_key(key: str) -> Tuple[str, str]:
    """Split a reconcile key into (namespace, name)."""
    namespace, _, name = key.partition("/")
    return namespace, name


def _require_metadata(obj: Any, kind: str) -> Any:
    metadata = getattr(obj, "metadata", None)
    if metadata is None or not getattr(metadata, "name", None):
        raise MalformedObjectError(f"{kind} without metadata.name")
    return metadata


@dataclass(frozen=True)
class PodInfo:
    """Parsed view of a Pod, as needed for placement."""
    namespace: str
    name: str
    uid: str
    resource_version: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    node_name: Optional[str] = None
    phase: str = "Pending"
    created_at: datetime = field(default_factory=lambda: parse_timestamp(None))
    deleting: bool = False

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @property
    def is_active(self) -> bool:
        """Terminating and completed pods do not count toward placement."""
        return not self.deleting and self.phase not in ("Succeeded", "Failed")

    @classmethod
    def from_api(cls, pod: Any) -> "PodInfo":
        """Create PodInfo from a kubernetes V1Pod."""
        metadata = _require_metadata(pod, "Pod")
        if not metadata.namespace:
            raise MalformedObjectError(f"Pod {metadata.name} without namespace")

        spec = getattr(pod, "spec", None)
        status = getattr(pod, "status", None)

        return cls(
            namespace=metadata.namespace,
            name=metadata.name,
            uid=metadata.uid or "",
            resource_version=metadata.resource_version or "",
            labels=dict(metadata.labels or {}),
            annotations=dict(metadata.annotations or {}),
            node_name=getattr(spec, "node_name", None) if spec else None,
            phase=(getattr(status, "phase", None) if status else None) or "Pending",
            created_at=parse_timestamp(metadata.creation_timestamp),
            deleting=metadata.deletion_timestamp is not None,
        )


@dataclass(frozen=True)
class NodeInfo:
    """Parsed view of a Node: its labels and whether it can take new pods."""
    name: str
    resource_version: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    unschedulable: bool = False
    ready: bool = True
    allocatable_pods: Optional[int] = None

    @property
    def schedulable(self) -> bool:
        return self.ready and not self.unschedulable

    @classmethod
    def from_api(cls, node: Any) -> "NodeInfo":
        """Create NodeInfo from a kubernetes V1Node."""
        metadata = _require_metadata(node, "Node")
        spec = getattr(node, "spec", None)
        status = getattr(node, "status", None)

        ready = True
        allocatable_pods = None
        if status is not None:
            for condition in getattr(status, "conditions", None) or []:
                if condition.type == "Ready":
                    ready = condition.status == "True"
            allocatable = getattr(status, "allocatable", None) or {}
            if "pods" in allocatable:
                try:
                    allocatable_pods = parse_quantity(allocatable["pods"])
                except ValueError as e:
                    raise MalformedObjectError(
                        f"Node {metadata.name} has invalid allocatable pods: {e}"
                    ) from e

        return cls(
            name=metadata.name,
            resource_version=metadata.resource_version or "",
            labels=dict(metadata.labels or {}),
            annotations=dict(getattr(metadata, "annotations", None) or {}),
            unschedulable=bool(getattr(spec, "unschedulable", False)) if spec else False,
            ready=ready,
            allocatable_pods=allocatable_pods,
        )


@dataclass(frozen=True)
class Distribution:
    """Target distribution mode of a policy."""
    mode: DistributionMode = DistributionMode.EVEN
    max_skew: int = DEFAULT_MAX_SKEW
    weights: Tuple[Tuple[str, int], ...] = ()
    tolerance: int = DEFAULT_WEIGHTED_TOLERANCE

    def weight_map(self) -> Dict[str, int]:
        return dict(self.weights)

    @classmethod
    def from_spec(cls, spec: Dict[str, Any]) -> "Distribution":
        """Parse the ``distribution`` block of a SpreadPolicy spec."""
        if not isinstance(spec, dict):
            raise PolicyError("spec.distribution must be an object")

        raw_mode = spec.get("mode", DistributionMode.EVEN.value)
        try:
            mode = DistributionMode(raw_mode)
        except ValueError:
            raise PolicyError(f"unknown distribution mode {raw_mode!r}")

        if mode == DistributionMode.MAX_SKEW:
            max_skew = _non_negative_int(spec.get("maxSkew", DEFAULT_MAX_SKEW), "maxSkew")
            return cls(mode=mode, max_skew=max_skew)

        if mode == DistributionMode.WEIGHTED:
            weights = spec.get("weights") or {}
            if not isinstance(weights, dict) or not weights:
                raise PolicyError("Weighted distribution requires a non-empty weights map")
            parsed = tuple(
                (str(domain), _non_negative_int(weight, f"weights[{domain}]"))
                for domain, weight in sorted(weights.items())
            )
            if sum(weight for _, weight in parsed) == 0:
                raise PolicyError("Weighted distribution requires at least one positive weight")
            tolerance = _non_negative_int(
                spec.get("tolerance", DEFAULT_WEIGHTED_TOLERANCE), "tolerance"
            )
            return cls(mode=mode, weights=parsed, tolerance=tolerance)

        return cls(mode=mode)


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise PolicyError(f"{name} must be a non-negative integer, got {value!r}")
    return value


@dataclass(frozen=True)
class SpreadPolicy:
    """Parsed SpreadPolicy specification."""
    namespace: str
    name: str
    uid: str
    generation: int
    resource_version: str
    selector: Dict[str, Any]
    domain_key: str
    distribution: Distribution = field(default_factory=Distribution)
    action_mode: ActionMode = ActionMode(DEFAULT_ACTION_MODE)
    min_replicas_per_domain: int = 0
    cordon_donor_nodes: bool = False
    max_actions_per_reconcile: int = DEFAULT_MAX_ACTIONS_PER_RECONCILE
    suspend: bool = False
    deleting: bool = False
    status: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @classmethod
    def from_crd(cls, crd_object: Dict[str, Any]) -> "SpreadPolicy":
        """
        Create SpreadPolicy from a CRD object.

        Raises:
            MalformedObjectError: the object has no usable identity
            PolicyError: the identity is valid but the spec is not
        """
        metadata, spec = _policy_parts(crd_object)

        selector = spec.get("selector")
        if not isinstance(selector, dict) or not (
            selector.get("matchLabels") or selector.get("matchExpressions")
        ):
            raise PolicyError("spec.selector must set matchLabels or matchExpressions")

        domain_key = spec.get("domainKey")
        if not domain_key or not isinstance(domain_key, str):
            raise PolicyError("spec.domainKey is required")

        raw_action_mode = spec.get("actionMode", DEFAULT_ACTION_MODE)
        try:
            action_mode = ActionMode(raw_action_mode)
        except ValueError:
            raise PolicyError(f"unknown action mode {raw_action_mode!r}")

        max_actions = _non_negative_int(
            spec.get("maxActionsPerReconcile", DEFAULT_MAX_ACTIONS_PER_RECONCILE),
            "maxActionsPerReconcile",
        )
        if max_actions == 0:
            raise PolicyError("maxActionsPerReconcile must be at least 1")

        return cls(
            namespace=metadata["namespace"],
            name=metadata["name"],
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation", 1),
            resource_version=metadata.get("resourceVersion", ""),
            selector=selector,
            domain_key=domain_key,
            distribution=Distribution.from_spec(spec.get("distribution") or {}),
            action_mode=action_mode,
            min_replicas_per_domain=_non_negative_int(
                spec.get("minReplicasPerDomain", 0), "minReplicasPerDomain"
            ),
            cordon_donor_nodes=bool(spec.get("cordonDonorNodes", False)),
            max_actions_per_reconcile=max_actions,
            suspend=bool(spec.get("suspend", False)),
            deleting=bool(metadata.get("deletionTimestamp")),
            status=crd_object.get("status") or {},
        )

    def matches_pod(self, pod: PodInfo) -> bool:
        """Check if a pod is governed by this policy."""
        if pod.namespace != self.namespace:
            return False
        return labels_match_selector(pod.labels, self.selector)


@dataclass(frozen=True)
class InvalidPolicy:
    """A SpreadPolicy whose identity is valid but whose spec is not."""
    namespace: str
    name: str
    uid: str
    generation: int
    resource_version: str
    error: str
    deleting: bool = False
    status: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)


AnyPolicy = Union[SpreadPolicy, InvalidPolicy]


def _policy_parts(crd_object: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    if not isinstance(crd_object, dict):
        raise MalformedObjectError("SpreadPolicy object is not a mapping")
    metadata = crd_object.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name") or not metadata.get("namespace"):
        raise MalformedObjectError("SpreadPolicy without metadata.name/namespace")
    spec = crd_object.get("spec")
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise PolicyError("spec must be an object")
    return metadata, spec


def policy_from_crd(crd_object: Dict[str, Any]) -> AnyPolicy:
    """
    Parse a SpreadPolicy custom object.

    Spec errors do not reject the object: it is kept as an InvalidPolicy
    so the reconciler can report the problem through status conditions.
    """
    try:
        return SpreadPolicy.from_crd(crd_object)
    except PolicyError as e:
        metadata = crd_object["metadata"]
        logger.warning(f"Invalid SpreadPolicy {metadata['namespace']}/{metadata['name']}: {e}")
        return InvalidPolicy(
            namespace=metadata["namespace"],
            name=metadata["name"],
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation", 1),
            resource_version=metadata.get("resourceVersion", ""),
            error=str(e),
            deleting=bool(metadata.get("deletionTimestamp")),
            status=crd_object.get("status") or {},
        )


# Corrective actions

@dataclass(frozen=True)
class AntiAffinityRule:
    """Scheduling hint steering a workload away from a donor domain."""
    policy: str
    domain_key: str
    avoid_domain: str
    preferred_domain: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "policy": self.policy,
            "domainKey": self.domain_key,
            "avoid": self.avoid_domain,
            "prefer": self.preferred_domain,
        }


@dataclass(frozen=True)
class CorrectiveAction:
    """Base class of the action variants produced by the evaluator."""
    kind: ClassVar[str] = ""
    mutating: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind}
        data.update(asdict(self))
        return data

    def describe(self) -> str:
        return self.kind


@dataclass(frozen=True)
class Evict(CorrectiveAction):
    kind: ClassVar[str] = "Evict"

    namespace: str
    pod_name: str
    resource_version: str
    source_domain: str
    target_domain: str

    def describe(self) -> str:
        return (
            f"Evict {self.namespace}/{self.pod_name} "
            f"({self.source_domain} -> {self.target_domain})"
        )


@dataclass(frozen=True)
class Cordon(CorrectiveAction):
    kind: ClassVar[str] = "Cordon"

    node_name: str
    resource_version: str
    domain: str

    def describe(self) -> str:
        return f"Cordon node {self.node_name} ({self.domain})"


@dataclass(frozen=True)
class Uncordon(CorrectiveAction):
    """Releases a node cordoned on behalf of a policy."""
    kind: ClassVar[str] = "Uncordon"

    node_name: str
    resource_version: str

    def describe(self) -> str:
        return f"Uncordon node {self.node_name}"


@dataclass(frozen=True)
class PatchAntiAffinity(CorrectiveAction):
    kind: ClassVar[str] = "PatchAntiAffinity"

    namespace: str
    pod_name: str
    resource_version: str
    rule: AntiAffinityRule

    def describe(self) -> str:
        return (
            f"PatchAntiAffinity {self.namespace}/{self.pod_name} "
            f"({self.rule.avoid_domain} -> {self.rule.preferred_domain})"
        )


@dataclass(frozen=True)
class Noop(CorrectiveAction):
    kind: ClassVar[str] = "Noop"
    mutating: ClassVar[bool] = False

    reason: str

    def describe(self) -> str:
        return f"Noop: {self.reason}"


@dataclass(frozen=True)
class ObservedPlacement:
    """
    Pod-to-domain placement derived from one cache snapshot.

    Attributes:
        domain_key: Label that defines a domain
        pods_by_domain: Domain value -> governed pods placed there
        unscheduled: Governed pods not yet bound to a node, without a domain label
        unresolved: Governed pods bound to a node that does not carry the domain key
        terminating: Governed pods that are being deleted
        known_domains: Domains known to the cluster through node labels
        free_capacity: Domain -> free pod slots on schedulable nodes
        nodes: Node name -> NodeInfo for nodes hosting governed pods
    """
    domain_key: str
    pods_by_domain: Dict[str, Tuple[PodInfo, ...]]
    unscheduled: Tuple[PodInfo, ...] = ()
    unresolved: Tuple[PodInfo, ...] = ()
    terminating: Tuple[PodInfo, ...] = ()
    known_domains: Tuple[str, ...] = ()
    free_capacity: Dict[str, int] = field(default_factory=dict)
    nodes: Dict[str, NodeInfo] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(pods) for pods in self.pods_by_domain.values())

    def counts(self) -> Dict[str, int]:
        """Domain -> pod count, including known domains with no pods."""
        counts = {domain: 0 for domain in self.known_domains}
        for domain, pods in self.pods_by_domain.items():
            counts[domain] = len(pods)
        return dict(sorted(counts.items()))


@dataclass(frozen=True)
class Evaluation:
    """Evaluator output: the action list plus the facts behind it."""
    actions: Tuple[CorrectiveAction, ...]
    counts: Dict[str, int]
    ideal: Dict[str, int]
    skew: int
    balanced: bool
    degraded: bool = False
    reason: str = ""
    message: str = ""
    unresolved: int = 0

    def serialize(self) -> List[Dict[str, Any]]:
        return [action.to_dict() for action in self.actions]


@dataclass
class Condition:
    type: ConditionType
    status: bool
    reason: str
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type.value,
            "status": "True" if self.status else "False",
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass
class SpreadStatus:
    """Controller-owned status of a SpreadPolicy."""
    observed_generation: int
    last_reconcile_time: str
    observed_distribution: Dict[str, int] = field(default_factory=dict)
    ideal_distribution: Dict[str, int] = field(default_factory=dict)
    skew: int = 0
    pending_actions: List[str] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "lastReconcileTime": self.last_reconcile_time,
            "observedDistribution": dict(self.observed_distribution),
            "idealDistribution": dict(self.ideal_distribution),
            "skew": self.skew,
            "pendingActions": list(self.pending_actions),
            "conditions": [condition.to_dict() for condition in self.conditions],
            "message": self.message,
        }
