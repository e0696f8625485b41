import threading
from datetime import datetime, timezone

import pytest

from kioskquota.discovery import GroupResource, GroupVersionResource
from kioskquota.monitor import (
    DeletedFinalStateUnknown,
    EventType,
    MonitorSyncError,
    QuotaMonitor,
    ResourceEvent,
)

PODS = GroupVersionResource("", "v1", "pods")
SERVICES = GroupVersionResource("", "v1", "services")
EVENTS = GroupVersionResource("", "v1", "events")
UNKNOWN = GroupVersionResource("unknown.io", "v1", "widgets")
NOW = datetime(2020, 1, 1, tzinfo=timezone.utc)


class FakeController:
    def __init__(self, synced=True):
        self.synced = synced
        self.ran = threading.Event()
        self.stop_events = []

    def run(self, stop_event):
        self.stop_events.append(stop_event)
        self.ran.set()

    def has_synced(self):
        return self.synced


class FakeInformer:
    def __init__(self):
        self.handlers = []
        self.controller = FakeController()

    def add_event_handler(self, handler, resync_period):
        self.handlers.append(handler)

    def get_controller(self):
        return self.controller

    def list(self, namespace):
        return []


class FakeFactory:
    def __init__(self, known):
        self.informers = {gvr: FakeInformer() for gvr in known}
        self.started = []

    def for_resource(self, resource):
        if resource not in self.informers:
            raise LookupError(resource)
        return self.informers[resource]

    def start(self, stop_event):
        self.started.append(stop_event)


class FakeRegistry:
    def __init__(self):
        self.evaluators = {}

    def get(self, group_resource):
        return self.evaluators.get(group_resource)

    def add(self, evaluator):
        self.evaluators[evaluator.group_resource] = evaluator


def make_monitor(factory, informers_started=None, ignored=()):
    calls = []
    qm = QuotaMonitor(
        informers_started=informers_started or threading.Event(),
        informer_factory=factory,
        ignored_resources=ignored,
        resync_period=lambda: 0.0,
        replenishment_func=lambda gr, ns: calls.append((gr, ns)),
        registry=FakeRegistry(),
        clock=lambda: NOW,
        poll_interval=0.01,
    )
    return qm, calls


def pod(phase, namespace="ns"):
    return {"metadata": {"name": "p", "namespace": namespace}, "status": {"phase": phase}}


def test_event_type_str():
    factory = FakeFactory([PODS])
    qm, _ = make_monitor(factory)
    qm.sync_monitors({PODS})
    handler = factory.informers[PODS].handlers[0]
    handler.on_update(pod("Running"), pod("Succeeded"))
    handler.on_delete(pod("Running"))
    update_event = qm.resource_changes.get_nowait()
    delete_event = qm.resource_changes.get_nowait()
    assert str(update_event.event_type) == "update"
    assert str(delete_event.event_type) == "delete"


def test_is_synced_without_monitors():
    qm, _ = make_monitor(FakeFactory([PODS]))
    assert qm.is_synced() is False


def test_sync_monitors_and_is_synced():
    factory = FakeFactory([PODS, SERVICES])
    qm, _ = make_monitor(factory, ignored={EVENTS.group_resource})
    qm.sync_monitors({PODS, SERVICES, EVENTS})
    assert qm.is_synced() is True
    factory.informers[SERVICES].controller.synced = False
    assert qm.is_synced() is False


def test_sync_creates_count_evaluator():
    factory = FakeFactory([PODS])
    qm, _ = make_monitor(factory)
    qm.sync_monitors({PODS})
    evaluator = qm.registry.get(GroupResource("", "pods"))
    assert evaluator.matching_resources(["count/pods", "cpu"]) == ["count/pods"]
    assert evaluator.usage("ns") == {"count/pods": 0}


def test_sync_error_still_creates_other_monitors():
    factory = FakeFactory([PODS])
    qm, _ = make_monitor(factory)
    with pytest.raises(MonitorSyncError) as info:
        qm.sync_monitors({PODS, UNKNOWN})
    assert len(info.value.errors) == 1
    assert "couldn't start monitor" in str(info.value)
    assert qm.is_synced() is True


def test_start_monitors_before_run_does_nothing():
    factory = FakeFactory([PODS])
    qm, _ = make_monitor(factory)
    qm.sync_monitors({PODS})
    assert qm.start_monitors() == 0
    assert not factory.informers[PODS].controller.ran.is_set()


def test_run_starts_and_stops_monitors():
    started = threading.Event()
    started.set()
    factory = FakeFactory([PODS])
    qm, _ = make_monitor(factory, informers_started=started)
    qm.sync_monitors({PODS})
    stop = threading.Event()
    result = {}
    thread = threading.Thread(target=lambda: result.update(stopped=qm.run(stop)))
    thread.start()
    controller = factory.informers[PODS].controller
    assert controller.ran.wait(2)
    stop.set()
    thread.join(2)
    assert not thread.is_alive()
    assert result["stopped"] == 1
    assert controller.stop_events[0].is_set()
    assert factory.started == [stop]


def test_resync_removes_started_monitor():
    started = threading.Event()
    started.set()
    factory = FakeFactory([PODS, SERVICES])
    qm, _ = make_monitor(factory, informers_started=started)
    qm.sync_monitors({PODS, SERVICES})
    stop = threading.Event()
    thread = threading.Thread(target=qm.run, args=(stop,))
    thread.start()
    pods_controller = factory.informers[PODS].controller
    assert pods_controller.ran.wait(2)
    qm.sync_monitors({SERVICES})
    assert pods_controller.stop_events[0].is_set()
    stop.set()
    thread.join(2)
    assert not thread.is_alive()


def test_pod_finishing_triggers_replenishment():
    factory = FakeFactory([PODS])
    qm, calls = make_monitor(factory)
    qm.sync_monitors({PODS})
    handler = factory.informers[PODS].handlers[0]
    handler.on_update(pod("Running"), pod("Succeeded"))
    assert qm.process_resource_changes() is True
    assert calls == [(GroupResource("", "pods"), "ns")]


def test_pod_update_without_quota_change_is_ignored():
    factory = FakeFactory([PODS])
    qm, calls = make_monitor(factory)
    qm.sync_monitors({PODS})
    handler = factory.informers[PODS].handlers[0]
    handler.on_update(pod("Pending"), pod("Running"))
    assert qm.process_resource_changes() is False
    assert calls == []


def test_pod_past_grace_period_no_longer_counts():
    factory = FakeFactory([PODS])
    qm, calls = make_monitor(factory)
    qm.sync_monitors({PODS})
    deleted = pod("Running")
    deleted["metadata"]["deletionTimestamp"] = "2019-12-31T00:00:00Z"
    deleted["metadata"]["deletionGracePeriodSeconds"] = 30
    factory.informers[PODS].handlers[0].on_update(pod("Running"), deleted)
    assert qm.process_resource_changes() is True
    assert len(calls) == 1


def test_service_type_change_triggers_replenishment():
    factory = FakeFactory([SERVICES])
    qm, calls = make_monitor(factory)
    qm.sync_monitors({SERVICES})
    old = {"metadata": {"namespace": "web"}, "spec": {"type": "ClusterIP"}}
    new = {"metadata": {"namespace": "web"}, "spec": {"type": "LoadBalancer"}}
    factory.informers[SERVICES].handlers[0].on_update(old, new)
    assert qm.process_resource_changes() is True
    assert calls == [(GroupResource("", "services"), "web")]


def test_delete_unwraps_final_state_unknown():
    factory = FakeFactory([PODS])
    qm, calls = make_monitor(factory)
    qm.sync_monitors({PODS})
    factory.informers[PODS].handlers[0].on_delete(
        DeletedFinalStateUnknown("other/p", pod("Running", namespace="other"))
    )
    event = qm.resource_changes.get_nowait()
    assert event.event_type is EventType.DELETE
    assert event.obj == pod("Running", namespace="other")


def test_process_skips_unexpected_items():
    qm, calls = make_monitor(FakeFactory([]))
    qm.resource_changes.put("not an event")
    qm.resource_changes.put(ResourceEvent(EventType.DELETE, object(), PODS))
    assert qm.process_resource_changes() is True
    assert qm.process_resource_changes() is True
    assert calls == []