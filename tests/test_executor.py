import threading

import pytest
from builders import FakeCoordinationApi, FakeCoreApi, FakeCustomApi, public_methods
from kubernetes import client
from kubernetes.client.rest import ApiException

from spread_controller.config import (
    ANTI_AFFINITY_ANNOTATION,
    AVOID_DOMAIN_ANNOTATION,
    OWNER_ANNOTATION,
    PREFERRED_DOMAIN_ANNOTATION,
)
from spread_controller.errors import (
    ConflictError,
    PolicyError,
    ReconcileCancelled,
    TransientClusterError,
)
from spread_controller.executor import ActionExecutor
from spread_controller.models import AntiAffinityRule, Cordon, Evict, Noop, PatchAntiAffinity, Uncordon


def evict(name="a-0", resource_version="7"):
    return Evict(
        namespace="default",
        pod_name=name,
        resource_version=resource_version,
        source_domain="a",
        target_domain="c",
    )


def make_executor(core=None, **options):
    options.setdefault("backoff", 0)
    return ActionExecutor(core_api=core or FakeCoreApi(), **options)


def test_eviction_carries_resource_version_precondition():
    core = FakeCoreApi()
    report = make_executor(core).execute([evict()], owner="default/web")

    assert len(report.applied) == 1
    call = core.calls_of("evict")[0]
    assert (call["name"], call["namespace"]) == ("a-0", "default")
    assert call["body"].delete_options.preconditions.resource_version == "7"
    assert call["body"].metadata.name == "a-0"


def test_conflict_is_not_retried():
    core = FakeCoreApi(always=ApiException(status=409, reason="Conflict"))

    with pytest.raises(ConflictError):
        make_executor(core).execute([evict()])
    assert len(core.calls) == 1


def test_missing_pod_is_a_conflict():
    core = FakeCoreApi(always=ApiException(status=404, reason="Not Found"))

    with pytest.raises(ConflictError) as excinfo:
        make_executor(core).execute([evict()])
    assert excinfo.value.status == 404


def test_transient_errors_are_retried():
    core = FakeCoreApi(failures=[
        ApiException(status=503, reason="Unavailable"),
        ApiException(status=429, reason="TooManyRequests"),
    ])
    report = make_executor(core, max_attempts=3).execute([evict()])

    assert len(core.calls) == 3
    assert report.applied == [evict()]


def test_transient_errors_give_up_after_max_attempts():
    core = FakeCoreApi(always=ApiException(status=500, reason="boom"))

    with pytest.raises(TransientClusterError):
        make_executor(core, max_attempts=3).execute([evict()])
    assert len(core.calls) == 3


def test_forbidden_is_a_policy_error():
    core = FakeCoreApi(always=ApiException(status=403, reason="Forbidden"))

    with pytest.raises(PolicyError):
        make_executor(core).execute([evict()])
    assert len(core.calls) == 1


def test_execution_stops_at_first_failure():
    core = FakeCoreApi(failures=[ApiException(status=409, reason="Conflict")])

    with pytest.raises(ConflictError):
        make_executor(core).execute([evict("a-0"), evict("a-1")])
    assert [call["name"] for call in core.calls] == ["a-0"]


def test_noop_is_never_submitted():
    core = FakeCoreApi()
    noop = Noop(reason="nothing to do")
    report = make_executor(core).execute([noop])

    assert report.skipped == [noop]
    assert report.applied == []
    assert core.calls == []


def test_dry_run_applies_nothing():
    core = FakeCoreApi()
    report = make_executor(core, dry_run=True).execute([evict()])

    assert report.applied == [evict()]
    assert core.calls == []


def test_cancelled_before_start():
    cancel = threading.Event()
    cancel.set()
    core = FakeCoreApi()

    with pytest.raises(ReconcileCancelled):
        make_executor(core, cancel_event=cancel).execute([evict()])
    assert core.calls == []


def test_cordon_patch():
    core = FakeCoreApi()
    make_executor(core).execute([Cordon(node_name="node-a", resource_version="3", domain="a")], owner="default/web")

    body = core.calls[0]["body"]
    assert core.calls[0]["name"] == "node-a"
    assert body["spec"] == {"unschedulable": True}
    assert body["metadata"]["resourceVersion"] == "3"
    assert body["metadata"]["annotations"][OWNER_ANNOTATION] == "default/web"


def test_anti_affinity_patch():
    core = FakeCoreApi()
    rule = AntiAffinityRule(policy="default/web", domain_key="zone", avoid_domain="a", preferred_domain="c")
    action = PatchAntiAffinity(namespace="default", pod_name="a-0", resource_version="4", rule=rule)

    make_executor(core).execute([action], owner="default/web")

    annotations = core.calls[0]["body"]["metadata"]["annotations"]
    assert annotations[AVOID_DOMAIN_ANNOTATION] == "a"
    assert annotations[PREFERRED_DOMAIN_ANNOTATION] == "c"
    assert annotations[ANTI_AFFINITY_ANNOTATION] == (
        '{"avoid":"a","domainKey":"zone","policy":"default/web","prefer":"c"}'
    )
    assert core.calls[0]["body"]["metadata"]["resourceVersion"] == "4"


def test_eviction_goes_through_the_core_api(monkeypatch):
    calls = []
    monkeypatch.setattr(
        client.CoreV1Api,
        "create_namespaced_pod_eviction",
        lambda self, name, namespace, body, **kwargs: calls.append((namespace, name)),
    )
    executor = ActionExecutor(core_api=client.CoreV1Api(client.ApiClient()), backoff=0)

    report = executor.execute([evict()])

    assert calls == [("default", "a-0")]
    assert report.applied == [evict()]


def test_uncordon_clears_owner_and_unschedulable():
    core = FakeCoreApi()
    make_executor(core).execute([Uncordon(node_name="node-a", resource_version="5")], owner="default/web")

    body = core.calls_of("patch_node")[0]["body"]
    assert body["spec"] == {"unschedulable": False}
    assert body["metadata"]["annotations"] == {OWNER_ANNOTATION: None}
    assert body["metadata"]["resourceVersion"] == "5"


@pytest.mark.parametrize("fake", [FakeCoreApi, FakeCustomApi, FakeCoordinationApi])
def test_fakes_only_define_real_api_methods(fake):
    methods = public_methods(fake)

    assert methods
    assert [name for name in methods if not hasattr(fake.api_class, name)] == []
