"""
Spread evaluation: desired policy + observed placement -> corrective actions.

Everything in this module is pure. Inputs are immutable records taken from a
cache snapshot and the output depends on nothing else, so the same snapshot
always yields the same action list.
"""

import logging
from collections import Counter
from dataclasses import replace
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import ANTI_AFFINITY_ANNOTATION
from .models import (
    ActionMode,
    AntiAffinityRule,
    Cordon,
    CorrectiveAction,
    Distribution,
    DistributionMode,
    Evaluation,
    Evict,
    NodeInfo,
    Noop,
    ObservedPlacement,
    PatchAntiAffinity,
    PodInfo,
    SpreadPolicy,
)
from .utils import serialize_stable

logger = logging.getLogger(__name__)

# Free slots assumed for a schedulable node that does not report allocatable pods.
UNBOUNDED_CAPACITY = 1 << 30

REASON_NO_PODS = "NoPods"
REASON_BALANCED = "Balanced"
REASON_AWAITING_SCHEDULING = "AwaitingScheduling"
REASON_UNKNOWN_DOMAIN_KEY = "UnknownDomainKey"
REASON_SUSPENDED = "Suspended"
REASON_REBALANCING = "Rebalancing"
REASON_UNSATISFIABLE = "Unsatisfiable"
REASON_SETTLING = "Settling"
REASON_ADVISED = "Advised"
REASON_UNRESOLVED_DOMAIN = "UnresolvedDomain"


def pod_order(pod: PodInfo) -> Tuple:
    """Oldest pod first; name breaks ties between pods created together."""
    return (pod.created_at, pod.name)


def build_placement(
    policy: SpreadPolicy,
    pods: Iterable[PodInfo],
    nodes: Iterable[NodeInfo],
) -> ObservedPlacement:
    """
    Derive the observed placement of a policy's pods.

    Args:
        policy: The policy being reconciled
        pods: Every pod visible in the cache snapshot (used for capacity too)
        nodes: Every node in the cache snapshot

    Returns:
        ObservedPlacement for the governed pods
    """
    key = policy.domain_key
    nodes_by_name = {node.name: node for node in nodes}
    pods = list(pods)
    active_pods = [pod for pod in pods if pod.is_active]
    terminating = [
        pod for pod in pods
        if pod.deleting and pod.phase not in ("Succeeded", "Failed") and policy.matches_pod(pod)
    ]

    known_domains = sorted({
        node.labels[key] for node in nodes_by_name.values() if key in node.labels
    })

    by_domain: Dict[str, List[PodInfo]] = {}
    unscheduled: List[PodInfo] = []
    unresolved: List[PodInfo] = []
    hosting: Dict[str, NodeInfo] = {}

    for pod in active_pods:
        if not policy.matches_pod(pod):
            continue
        node = nodes_by_name.get(pod.node_name) if pod.node_name else None
        if node is not None and key in node.labels:
            domain = node.labels[key]
            hosting[node.name] = node
        elif key in pod.labels:
            domain = pod.labels[key]
        elif pod.node_name:
            unresolved.append(pod)
            continue
        else:
            unscheduled.append(pod)
            continue
        by_domain.setdefault(domain, []).append(pod)

    used = Counter(pod.node_name for pod in active_pods if pod.node_name)
    free: Dict[str, int] = {}
    for node in nodes_by_name.values():
        if key not in node.labels or not node.schedulable:
            continue
        domain = node.labels[key]
        if node.allocatable_pods is None:
            slots = UNBOUNDED_CAPACITY
        else:
            slots = max(node.allocatable_pods - used[node.name], 0)
        free[domain] = min(free.get(domain, 0) + slots, UNBOUNDED_CAPACITY)

    return ObservedPlacement(
        domain_key=key,
        pods_by_domain={
            domain: tuple(sorted(domain_pods, key=pod_order))
            for domain, domain_pods in sorted(by_domain.items())
        },
        unscheduled=tuple(sorted(unscheduled, key=pod_order)),
        unresolved=tuple(sorted(unresolved, key=pod_order)),
        terminating=tuple(sorted(terminating, key=pod_order)),
        known_domains=tuple(known_domains),
        free_capacity=dict(sorted(free.items())),
        nodes=dict(sorted(hosting.items())),
    )


def even_ideal(domains: Sequence[str], total: int) -> Dict[str, int]:
    """
    Even split of ``total`` over ``domains``.

    Each domain gets ``total // len(domains)``; the remainder goes one each to
    the first domains in lexicographic order.
    """
    ordered = sorted(domains)
    if not ordered:
        return {}
    base, remainder = divmod(total, len(ordered))
    return {domain: base + (1 if i < remainder else 0) for i, domain in enumerate(ordered)}


def weighted_ideal(domains: Sequence[str], weights: Dict[str, int], total: int) -> Dict[str, int]:
    """
    Split ``total`` proportionally to ``weights`` by largest remainder.

    Domains without a weight get nothing. Leftover units go to the largest
    fractional remainders first, lexicographic order breaking ties.
    """
    ordered = sorted(set(domains) | set(weights))
    weight_sum = sum(weights.get(domain, 0) for domain in ordered)
    if weight_sum == 0:
        return {domain: 0 for domain in ordered}

    exact = {domain: Fraction(total * weights.get(domain, 0), weight_sum) for domain in ordered}
    ideal = {domain: int(share) for domain, share in exact.items()}
    leftover = total - sum(ideal.values())

    by_remainder = sorted(ordered, key=lambda d: (-(exact[d] - ideal[d]), d))
    for domain in by_remainder[:leftover]:
        ideal[domain] += 1
    return ideal


def ideal_distribution(distribution: Distribution, counts: Dict[str, int], total: int) -> Dict[str, int]:
    """Ideal count per domain under the target distribution mode."""
    if distribution.mode == DistributionMode.WEIGHTED:
        return weighted_ideal(list(counts), distribution.weight_map(), total)
    return even_ideal(list(counts), total)


def skew_of(distribution: Distribution, counts: Dict[str, int], ideal: Dict[str, int]) -> int:
    """Max minus min count, or the largest deviation from ideal for Weighted."""
    if not counts:
        return 0
    if distribution.mode == DistributionMode.WEIGHTED:
        return max(abs(counts.get(d, 0) - ideal.get(d, 0)) for d in set(counts) | set(ideal))
    return max(counts.values()) - min(counts.values())


def within_tolerance(distribution: Distribution, counts: Dict[str, int], ideal: Dict[str, int]) -> bool:
    skew = skew_of(distribution, counts, ideal)
    if distribution.mode == DistributionMode.MAX_SKEW:
        return skew <= distribution.max_skew
    if distribution.mode == DistributionMode.WEIGHTED:
        return skew <= distribution.tolerance
    return skew <= 1


def _next_move(
    policy: SpreadPolicy,
    counts: Dict[str, int],
    ideal: Dict[str, int],
    capacity: Dict[str, int],
    movable: Dict[str, List[PodInfo]],
) -> Optional[Tuple[str, str, PodInfo]]:
    donors = sorted(
        (d for d in counts if counts[d] > ideal.get(d, 0)),
        key=lambda d: (-(counts[d] - ideal.get(d, 0)), d),
    )
    recipients = sorted(
        (d for d in counts if counts[d] < ideal.get(d, 0)),
        key=lambda d: (-(ideal.get(d, 0) - counts[d]), d),
    )
    enforcing = policy.action_mode == ActionMode.ENFORCING

    for donor in donors:
        if counts[donor] - 1 < policy.min_replicas_per_domain or not movable.get(donor):
            continue
        for recipient in recipients:
            if enforcing and capacity.get(recipient, 0) <= 0:
                continue
            return donor, recipient, movable[donor][0]
    return None


def plan_moves(
    policy: SpreadPolicy,
    placement: ObservedPlacement,
    counts: Dict[str, int],
    ideal: Dict[str, int],
) -> List[Tuple[str, str, PodInfo]]:
    """
    Greedily pick (donor, recipient, pod) moves until within tolerance.

    Stops early when the per-pass action limit is hit or no move can improve
    the placement without breaking the per-domain replica floor or (when
    enforcing) overfilling a recipient domain.
    """
    working = dict(counts)
    capacity = dict(placement.free_capacity)
    movable = {domain: list(pods) for domain, pods in placement.pods_by_domain.items()}
    moves: List[Tuple[str, str, PodInfo]] = []

    while len(moves) < policy.max_actions_per_reconcile:
        if within_tolerance(policy.distribution, working, ideal):
            break
        move = _next_move(policy, working, ideal, capacity, movable)
        if move is None:
            break
        donor, recipient, pod = move
        movable[donor].pop(0)
        working[donor] -= 1
        working[recipient] += 1
        capacity[recipient] = capacity.get(recipient, 0) - 1
        moves.append(move)

    return moves


def unsatisfiable_reason(
    policy: SpreadPolicy,
    placement: ObservedPlacement,
    counts: Dict[str, int],
    ideal: Dict[str, int],
) -> str:
    """Explain why no move was planned although the placement is out of tolerance."""
    donors = [d for d in counts if counts[d] > ideal.get(d, 0)]
    if not donors:
        return "no domain holds more pods than its ideal share; the skew cannot be reduced by moving pods"
    if all(counts[d] - 1 < policy.min_replicas_per_domain for d in donors):
        return (
            f"moving a pod would drain a domain below the replica floor of "
            f"{policy.min_replicas_per_domain}"
        )
    recipients = [d for d in counts if counts[d] < ideal.get(d, 0)]
    if policy.action_mode == ActionMode.ENFORCING and all(
        placement.free_capacity.get(d, 0) <= 0 for d in recipients
    ):
        return "no domain below its ideal share has free capacity"
    return "no relocation improves the placement"


def _actions_for(
    policy: SpreadPolicy,
    placement: ObservedPlacement,
    moves: List[Tuple[str, str, PodInfo]],
) -> List[CorrectiveAction]:
    if policy.action_mode == ActionMode.ADVISORY:
        patches: List[CorrectiveAction] = []
        for donor, recipient, pod in moves:
            rule = AntiAffinityRule(
                policy=policy.key,
                domain_key=policy.domain_key,
                avoid_domain=donor,
                preferred_domain=recipient,
            )
            if pod.annotations.get(ANTI_AFFINITY_ANNOTATION) == serialize_stable(rule.to_dict()):
                continue
            patches.append(PatchAntiAffinity(
                namespace=pod.namespace,
                pod_name=pod.name,
                resource_version=pod.resource_version,
                rule=rule,
            ))
        return patches

    # Donor-side actions come first: cordons, then evictions.
    actions: List[CorrectiveAction] = []
    if policy.cordon_donor_nodes:
        seen = set()
        for donor, _, pod in moves:
            node = placement.nodes.get(pod.node_name) if pod.node_name else None
            if node is None or node.name in seen or node.unschedulable:
                continue
            seen.add(node.name)
            actions.append(Cordon(node_name=node.name, resource_version=node.resource_version, domain=donor))

    for donor, recipient, pod in moves:
        actions.append(Evict(
            namespace=pod.namespace,
            pod_name=pod.name,
            resource_version=pod.resource_version,
            source_domain=donor,
            target_domain=recipient,
        ))
    return actions


def evaluate(policy: SpreadPolicy, placement: ObservedPlacement) -> Evaluation:
    """
    Compute the corrective actions that move placement toward the policy.

    Args:
        policy: Desired spread
        placement: Observed placement from the current cache snapshot

    Returns:
        Evaluation with the ordered action list and the counts behind it
    """
    evaluation = _evaluate(policy, placement)
    if placement.unresolved:
        evaluation = replace(evaluation, unresolved=len(placement.unresolved))
    return evaluation


def _evaluate(policy: SpreadPolicy, placement: ObservedPlacement) -> Evaluation:
    counts = placement.counts()
    if policy.distribution.mode == DistributionMode.WEIGHTED:
        for domain in policy.distribution.weight_map():
            counts.setdefault(domain, 0)
        counts = dict(sorted(counts.items()))

    total = placement.total

    if total == 0:
        if placement.unresolved or (placement.unscheduled and not placement.known_domains):
            return Evaluation(
                actions=(),
                counts=counts,
                ideal={},
                skew=0,
                balanced=False,
                degraded=True,
                reason=REASON_UNKNOWN_DOMAIN_KEY,
                message=(
                    f"no governed pod resolves domain key {policy.domain_key!r}; "
                    f"{len(placement.unresolved) + len(placement.unscheduled)} pod(s) cannot be placed"
                ),
            )
        if placement.unscheduled:
            return Evaluation(
                actions=(), counts=counts, ideal={}, skew=0, balanced=True,
                reason=REASON_AWAITING_SCHEDULING,
                message=f"{len(placement.unscheduled)} pod(s) not yet scheduled",
            )
        return Evaluation(
            actions=(), counts=counts, ideal={}, skew=0, balanced=True,
            reason=REASON_NO_PODS, message="no pods match the selector",
        )

    ideal = ideal_distribution(policy.distribution, counts, total)
    skew = skew_of(policy.distribution, counts, ideal)

    if within_tolerance(policy.distribution, counts, ideal):
        return Evaluation(
            actions=(), counts=counts, ideal=ideal, skew=skew, balanced=True,
            reason=REASON_BALANCED, message=f"{total} pod(s) within tolerance",
        )

    if policy.suspend:
        return Evaluation(
            actions=(), counts=counts, ideal=ideal, skew=skew, balanced=False,
            reason=REASON_SUSPENDED, message="policy is suspended",
        )

    if policy.action_mode == ActionMode.ENFORCING and (placement.unscheduled or placement.terminating):
        # Earlier evictions have not settled; counting now would evict twice.
        pending = len(placement.unscheduled) + len(placement.terminating)
        return Evaluation(
            actions=(), counts=counts, ideal=ideal, skew=skew, balanced=False,
            reason=REASON_SETTLING,
            message=f"waiting for {pending} pod(s) to be rescheduled or terminate",
        )

    moves = plan_moves(policy, placement, counts, ideal)
    if not moves:
        reason = unsatisfiable_reason(policy, placement, counts, ideal)
        return Evaluation(
            actions=(Noop(reason=reason),), counts=counts, ideal=ideal, skew=skew,
            balanced=False, reason=REASON_UNSATISFIABLE, message=reason,
        )

    actions = _actions_for(policy, placement, moves)
    if not actions:
        return Evaluation(
            actions=(), counts=counts, ideal=ideal, skew=skew, balanced=False,
            reason=REASON_ADVISED,
            message=f"{len(moves)} pod(s) already advised to relocate",
        )

    logger.debug(f"Policy {policy.key}: planned {len(actions)} action(s) for skew {skew}")
    return Evaluation(
        actions=tuple(actions), counts=counts, ideal=ideal, skew=skew, balanced=False,
        reason=REASON_REBALANCING,
        message=f"{len(moves)} pod(s) to relocate",
    )
