"""Builders and fake Kubernetes APIs shared by the test modules."""

import copy
import inspect
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from spread_controller.config import CRD_GROUP, CRD_KIND, CRD_VERSION
from spread_controller.models import NodeInfo, PodInfo, SpreadPolicy

ZONE = "topology.kubernetes.io/zone"
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)
APP_LABELS = {"app": "web"}


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TickingClock:
    """Moves one second forward on every reading."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


# Parsed records

def make_pod(
    name: str,
    node: Optional[str] = None,
    namespace: str = "default",
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    phase: str = "Running",
    age: int = 0,
    deleting: bool = False,
    resource_version: str = "1",
) -> PodInfo:
    return PodInfo(
        namespace=namespace,
        name=name,
        uid=f"uid-{name}",
        resource_version=resource_version,
        labels=dict(APP_LABELS if labels is None else labels),
        annotations=dict(annotations or {}),
        node_name=node,
        phase=phase,
        created_at=BASE_TIME + timedelta(seconds=age),
        deleting=deleting,
    )


def make_node(
    name: str,
    zone: Optional[str] = None,
    allocatable: Optional[int] = None,
    unschedulable: bool = False,
    ready: bool = True,
    resource_version: str = "1",
) -> NodeInfo:
    return NodeInfo(
        name=name,
        resource_version=resource_version,
        labels={ZONE: zone} if zone else {},
        unschedulable=unschedulable,
        ready=ready,
        allocatable_pods=allocatable,
    )


def layout(counts: Dict[str, int], **pod_options):
    """
    Pods and nodes for a placement such as ``{"a": 3, "b": 1, "c": 0}``.

    Every domain gets one node ``node-<domain>``; pods are named
    ``<domain>-<i>`` and the lower index is always the older pod.
    """
    nodes = [make_node(f"node-{domain}", domain) for domain in sorted(counts)]
    pods = []
    age = 0
    for domain in sorted(counts):
        for i in range(counts[domain]):
            pods.append(make_pod(f"{domain}-{i}", node=f"node-{domain}", age=age, **pod_options))
            age += 1
    return pods, nodes


def policy_object(
    name: str = "web",
    namespace: str = "default",
    generation: int = 1,
    resource_version: str = "1",
    status: Optional[Dict[str, Any]] = None,
    **spec: Any,
) -> Dict[str, Any]:
    body = {
        "selector": {"matchLabels": dict(APP_LABELS)},
        "domainKey": ZONE,
        "distribution": {"mode": "Even"},
        "actionMode": "Enforcing",
    }
    body.update(spec)
    obj = {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": CRD_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "generation": generation,
            "resourceVersion": resource_version,
        },
        "spec": body,
    }
    if status is not None:
        obj["status"] = status
    return obj


def make_policy(**options: Any) -> SpreadPolicy:
    return SpreadPolicy.from_crd(policy_object(**options))


# API objects as returned by the kubernetes client

def api_pod(
    name: str,
    node: Optional[str] = None,
    namespace: str = "default",
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    phase: str = "Running",
    age: int = 0,
    deleting: bool = False,
    resource_version: str = "1",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            resource_version=resource_version,
            labels=dict(APP_LABELS if labels is None else labels),
            annotations=annotations,
            creation_timestamp=BASE_TIME + timedelta(seconds=age),
            deletion_timestamp=BASE_TIME if deleting else None,
        ),
        spec=SimpleNamespace(node_name=node),
        status=SimpleNamespace(phase=phase),
    )


def api_node(
    name: str,
    zone: Optional[str] = None,
    allocatable: Optional[str] = None,
    ready: str = "True",
    unschedulable: bool = False,
    resource_version: str = "1",
    annotations: Optional[Dict[str, str]] = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            resource_version=resource_version,
            labels={ZONE: zone} if zone else {},
            annotations=annotations,
        ),
        spec=SimpleNamespace(unschedulable=unschedulable),
        status=SimpleNamespace(
            conditions=[SimpleNamespace(type="Ready", status=ready)],
            allocatable={"pods": allocatable} if allocatable is not None else {},
        ),
    )


def api_layout(counts: Dict[str, int]):
    nodes = [api_node(f"node-{domain}", domain) for domain in sorted(counts)]
    pods = []
    age = 0
    for domain in sorted(counts):
        for i in range(counts[domain]):
            pods.append(api_pod(f"{domain}-{i}", node=f"node-{domain}", age=age))
            age += 1
    return pods, nodes


# Fake APIs

def public_methods(cls) -> List[str]:
    return sorted(
        name for name, value in vars(cls).items()
        if inspect.isfunction(value) and not name.startswith("_")
    )


class _ApiFake:
    """Base of the fakes; a fake may only define methods its real API class has."""

    api_class: Any = object

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "api_class" not in vars(cls):
            return
        invented = [name for name in public_methods(cls) if not hasattr(cls.api_class, name)]
        if invented:
            raise TypeError(f"{cls.__name__} defines methods {cls.api_class.__name__} lacks: {invented}")


class _Failing(_ApiFake):
    """Raises queued exceptions before letting calls through."""

    def __init__(self, failures: Optional[List[Exception]] = None, always: Optional[Exception] = None):
        self.failures = list(failures or [])
        self.always = always
        self.calls: List[Dict[str, Any]] = []

    def _record(self, **call: Any) -> None:
        self.calls.append(call)
        if self.failures:
            raise self.failures.pop(0)
        if self.always is not None:
            raise self.always

    def calls_of(self, op: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["op"] == op]


class FakeCoreApi(_Failing):
    api_class = client.CoreV1Api

    def list_namespaced_pod(self, namespace, **kwargs):
        return SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1"))

    def list_pod_for_all_namespaces(self, **kwargs):
        return SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1"))

    def list_node(self, **kwargs):
        return SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1"))

    def create_namespaced_pod_eviction(self, name, namespace, body, **kwargs):
        self._record(op="evict", name=name, namespace=namespace, body=body)

    def patch_node(self, name, body, **kwargs):
        self._record(op="patch_node", name=name, body=body)

    def patch_namespaced_pod(self, name, namespace, body, **kwargs):
        self._record(op="patch_namespaced_pod", name=name, namespace=namespace, body=body)


class FakeCustomApi(_Failing):
    api_class = client.CustomObjectsApi

    def list_cluster_custom_object(self, group, version, plural, **kwargs):
        return {"items": [], "metadata": {"resourceVersion": "1"}}

    def list_namespaced_custom_object(self, group, version, namespace, plural, **kwargs):
        return {"items": [], "metadata": {"resourceVersion": "1"}}

    def patch_namespaced_custom_object_status(self, group, version, namespace, plural, name, body, **kwargs):
        self._record(op="patch_status", name=name, namespace=namespace, body=body)


class FakeCoordinationApi(_ApiFake):
    """In-memory Lease store with optimistic concurrency on resourceVersion."""

    api_class = client.CoordinationV1Api

    def __init__(self) -> None:
        self.leases: Dict[str, Any] = {}
        self.error: Optional[Exception] = None
        self._version = 0

    def _bump(self, lease) -> None:
        self._version += 1
        lease.metadata.resource_version = str(self._version)

    def read_namespaced_lease(self, name, namespace, **kwargs):
        if self.error is not None:
            raise self.error
        key = f"{namespace}/{name}"
        if key not in self.leases:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.leases[key])

    def create_namespaced_lease(self, namespace, body, **kwargs):
        key = f"{namespace}/{body.metadata.name}"
        if key in self.leases:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(body)
        self._bump(stored)
        self.leases[key] = stored
        return copy.deepcopy(stored)

    def replace_namespaced_lease(self, name, namespace, body, **kwargs):
        key = f"{namespace}/{name}"
        current = self.leases[key]
        if body.metadata.resource_version != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        stored = copy.deepcopy(body)
        self._bump(stored)
        self.leases[key] = stored
        return copy.deepcopy(stored)
