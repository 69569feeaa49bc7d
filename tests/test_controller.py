import threading
import time

import pytest
from builders import (
    ZONE,
    FakeCoordinationApi,
    FakeCoreApi,
    FakeCustomApi,
    TickingClock,
    api_layout,
    api_node,
    api_pod,
    policy_object,
)
from kubernetes.client.rest import ApiException

from spread_controller.controller import SpreadController
from spread_controller.leader import LeaseCoordinator
from spread_controller.reconciler import Outcome
from spread_controller.resource_cache import Kind, ReplaceMessage, WatchMessage


@pytest.fixture
def controller():
    controller = SpreadController(
        workers=0,
        leader_election=False,
        core_api=FakeCoreApi(),
        custom_api=FakeCustomApi(),
    )
    cache = controller.cache
    cache.apply(ReplaceMessage(Kind.POLICY, [policy_object(name="web"), policy_object(name="db", selector={
        "matchLabels": {"app": "db"}
    })]))
    cache.apply(ReplaceMessage(Kind.POD, [api_pod("web-0", node="n1")]))
    cache.apply(ReplaceMessage(Kind.NODE, [api_node("n1", "a")]))
    controller.start_workers()
    drain(controller)
    yield controller
    controller.stop_workers(grace_period=0)


def drain(controller):
    queue = controller.reconciler.queue
    key = queue.dequeue(timeout=0)
    while key is not None:
        queue.mark_done(key)
        key = queue.dequeue(timeout=0)


def pending(controller):
    queue = controller.reconciler.queue
    return sorted(key for key in ("default/db", "default/web") if queue.is_pending(key))


def test_start_workers_enqueues_known_policies():
    controller = SpreadController(
        workers=0, leader_election=False,
        core_api=FakeCoreApi(), custom_api=FakeCustomApi(),
    )
    controller.cache.apply(ReplaceMessage(Kind.POLICY, [policy_object()]))
    controller.start_workers()

    assert controller.is_leader
    assert controller.reconciler.queue.is_pending("default/web")
    controller.stop_workers(grace_period=0)


def test_status_only_policy_update_is_ignored(controller):
    controller.cache.apply(WatchMessage(
        Kind.POLICY, "MODIFIED", policy_object(resource_version="2", status={"skew": 0})
    ))
    assert pending(controller) == []


def test_spec_change_enqueues_policy(controller):
    controller.cache.apply(WatchMessage(
        Kind.POLICY, "MODIFIED", policy_object(resource_version="2", generation=2)
    ))
    assert pending(controller) == ["default/web"]


def test_pod_event_enqueues_matching_policies_only(controller):
    controller.cache.apply(WatchMessage(Kind.POD, "ADDED", api_pod("web-1", node="n1")))
    assert pending(controller) == ["default/web"]


def test_pod_relabel_enqueues_old_and_new_policy(controller):
    controller.cache.apply(WatchMessage(
        Kind.POD, "MODIFIED", api_pod("web-0", node="n1", labels={"app": "db"}, resource_version="2")
    ))
    assert pending(controller) == ["default/db", "default/web"]


def test_annotation_only_pod_update_is_ignored(controller):
    controller.cache.apply(WatchMessage(
        Kind.POD, "MODIFIED",
        api_pod("web-0", node="n1", annotations={"note": "x"}, resource_version="2"),
    ))
    assert pending(controller) == []


def test_node_change_enqueues_every_policy(controller):
    controller.cache.apply(WatchMessage(
        Kind.NODE, "MODIFIED", api_node("n1", "b", resource_version="2")
    ))
    assert pending(controller) == ["default/db", "default/web"]
    assert controller.cache.get_node("n1").labels == {ZONE: "b"}


def test_events_are_dropped_without_leadership(controller):
    reconciler = controller.reconciler
    controller.stop_workers(grace_period=0)

    controller.cache.apply(WatchMessage(Kind.POD, "ADDED", api_pod("web-1", node="n1")))

    assert controller.reconciler is None
    assert not controller.is_leader
    assert reconciler.queue.shutting_down


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def test_lease_loss_stops_workers_and_cancels_retries():
    core = FakeCoreApi(always=ApiException(status=503, reason="Unavailable"))
    coordination = FakeCoordinationApi()
    controller = SpreadController(
        workers=1, core_api=core, custom_api=FakeCustomApi(), coordination_api=coordination,
    )
    stop = threading.Event()

    def stopped_leading():
        controller.stop_workers(grace_period=5)
        stop.set()

    controller.elector = LeaseCoordinator(
        identity="me",
        name="spread-controller-leader",
        namespace="kube-system",
        coordination_api=coordination,
        lease_duration=15,
        renew_deadline=10,
        retry_period=0.01,
        max_api_failures=100,
        on_started_leading=controller.start_workers,
        on_stopped_leading=stopped_leading,
        clock=TickingClock(),
    )
    pods, nodes = api_layout({"a": 3, "b": 1, "c": 0})
    controller.cache.apply(ReplaceMessage(Kind.POLICY, [policy_object()]))
    controller.cache.apply(ReplaceMessage(Kind.POD, pods))
    controller.cache.apply(ReplaceMessage(Kind.NODE, nodes))

    elector = threading.Thread(target=controller.elector.run, args=(stop,))
    elector.start()
    # The worker is now backing off between eviction attempts.
    assert wait_for(lambda: core.calls_of("evict"))
    reconciler = controller.reconciler
    workers = list(controller._worker_threads)

    coordination.error = ApiException(status=500, reason="boom")
    elector.join(5)

    assert not elector.is_alive()
    assert not controller.is_leader
    assert controller.elector.fatal_error is None
    assert controller.reconciler is None
    assert workers and not any(thread.is_alive() for thread in workers)
    assert reconciler.queue.shutting_down
    assert reconciler.last_result("default/web").outcome == Outcome.CANCELLED
