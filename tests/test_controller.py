import copy
import threading
import time
from decimal import Decimal

import pytest

from kioskquota.controller import (
    AccountQuotaController,
    AccountQuotaControllerOptions,
    QuotaSyncError,
)
from kioskquota.discovery import DiscoveryError, GroupResource, GroupVersionResource
from kioskquota.monitor import DeletedFinalStateUnknown
from kioskquota.status import (
    AccountQuota,
    AccountQuotaStatusByNamespace,
    ResourceQuotaStatus,
    resources_equal,
)
from kioskquota.util import SPACE_ANNOTATION_ACCOUNT

PODS = GroupResource("", "pods")


class FakeEvaluator:
    def __init__(self, group_resource, names, usage_by_namespace=None):
        self.group_resource = group_resource
        self.names = list(names)
        self.usage_by_namespace = usage_by_namespace or {}

    def matching_resources(self, names):
        return [n for n in names if n in self.names]

    def usage(self, namespace):
        return self.usage_by_namespace.get(namespace, {})


class FakeRegistry:
    def __init__(self, *evaluators):
        self.evaluators = {e.group_resource: e for e in evaluators}

    def get(self, group_resource):
        return self.evaluators.get(group_resource)

    def add(self, evaluator):
        self.evaluators[evaluator.group_resource] = evaluator

    def list(self):
        return list(self.evaluators.values())


def namespace(name, account=None):
    annotations = {SPACE_ANNOTATION_ACCOUNT: account} if account else {}
    return {"metadata": {"name": name, "annotations": annotations}}


class FakeClient:
    def __init__(self, namespaces=(), quotas=()):
        self.namespaces = {_ns_name(n): n for n in namespaces}
        self.quotas = {q.name: q for q in quotas}
        self.updates = []

    def get_namespace(self, name):
        return self.namespaces[name]

    def get_account_quota(self, name):
        return copy.deepcopy(self.quotas[name])

    def list_account_quotas(self, account=None):
        return [q for q in self.quotas.values() if account is None or q.account == account]

    def list_namespaces(self, account):
        return [
            n for n in self.namespaces.values()
            if n["metadata"]["annotations"].get(SPACE_ANNOTATION_ACCOUNT) == account
        ]

    def update_account_quota_status(self, account_quota):
        self.updates.append(copy.deepcopy(account_quota))
        self.quotas[account_quota.name] = copy.deepcopy(account_quota)


def _ns_name(n):
    return n["metadata"]["name"]


class FakeInformer:
    def __init__(self):
        self.handlers = []

    def add_event_handler(self, handler, resync_period):
        self.handlers.append(handler)

    def has_synced(self):
        return True


def make_controller(client, registry=None, **kwargs):
    options = AccountQuotaControllerOptions(
        client=client, registry=registry or FakeRegistry(), **kwargs
    )
    return AccountQuotaController(options)


def test_add_quota_with_unrecorded_hard_goes_to_priority_queue():
    controller = make_controller(FakeClient())
    controller.add_quota(AccountQuota(name="q1", hard={"pods": "10"}))
    assert controller.missing_usage_queue.snapshot() == ["q1"]
    assert controller.queue.snapshot() == []


def test_add_quota_with_missing_usage_goes_to_priority_queue():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"]))
    controller = make_controller(FakeClient(), registry)
    quota = AccountQuota(
        name="q1", hard={"pods": "10"}, total=ResourceQuotaStatus(hard={"pods": "10"}, used={})
    )
    controller.add_quota(quota)
    assert controller.missing_usage_queue.snapshot() == ["q1"]


def test_add_quota_with_usage_goes_to_primary_queue():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"]))
    controller = make_controller(FakeClient(), registry)
    quota = AccountQuota(
        name="q1",
        hard={"pods": "10"},
        total=ResourceQuotaStatus(hard={"pods": "10"}, used={"pods": "1"}),
    )
    controller.add_quota(quota)
    assert controller.queue.snapshot() == ["q1"]
    assert controller.missing_usage_queue.snapshot() == []


def test_queue_deduplicates_keys():
    controller = make_controller(FakeClient())
    controller.enqueue_account_quota(AccountQuota(name="q1"))
    controller.enqueue_account_quota(AccountQuota(name="q1"))
    assert controller.queue.snapshot() == ["q1"]


def test_enqueue_namespace_queues_account_quotas():
    client = FakeClient(
        quotas=[
            AccountQuota(name="q1", account="acct"),
            AccountQuota(name="q2", account="other"),
        ]
    )
    controller = make_controller(client)
    controller.enqueue_namespace(namespace("a"))
    assert controller.queue.snapshot() == []
    controller.enqueue_namespace(namespace("a", "acct"))
    assert controller.queue.snapshot() == ["q1"]


def test_enqueue_all_queues_every_quota():
    client = FakeClient(quotas=[AccountQuota(name="q1"), AccountQuota(name="q2")])
    controller = make_controller(client)
    controller.enqueue_all()
    assert sorted(controller.queue.snapshot()) == ["q1", "q2"]


def test_namespace_handler_only_reacts_to_account_change():
    client = FakeClient(
        quotas=[AccountQuota(name="q1", account="one"), AccountQuota(name="q2", account="two")]
    )
    informer = FakeInformer()
    controller = make_controller(client, namespace_informer=informer)
    handler = informer.handlers[0]
    handler.on_update(namespace("a", "one"), namespace("a", "one"))
    assert controller.queue.snapshot() == []
    handler.on_update(namespace("a", "one"), namespace("a", "two"))
    assert controller.queue.snapshot() == ["q1", "q2"]


def test_quota_handler_ignores_status_only_updates_and_handles_tombstones():
    informer = FakeInformer()
    controller = make_controller(FakeClient(), quota_informer=informer)
    handler = informer.handlers[0]
    old = AccountQuota(name="q1", hard={"pods": "10"})
    new = copy.deepcopy(old)
    new.total.used = {"pods": "3"}
    handler.on_update(old, new)
    assert controller.queue.snapshot() == []
    assert controller.missing_usage_queue.snapshot() == []
    handler.on_delete(DeletedFinalStateUnknown("q9", None))
    assert controller.queue.snapshot() == ["q9"]


def test_sync_account_quota_aggregates_namespaces():
    registry = FakeRegistry(
        FakeEvaluator(PODS, ["pods"], {"a": {"pods": 2}, "b": {"pods": 3}})
    )
    client = FakeClient(
        namespaces=[namespace("a", "acct"), namespace("b", "acct"), namespace("c")],
        quotas=[AccountQuota(name="q1", account="acct", hard={"pods": "10"})],
    )
    controller = make_controller(client, registry)
    result = controller.sync_account_quota(client.get_account_quota("q1"))

    assert len(client.updates) == 1
    written = client.updates[0]
    assert written.name == "q1"
    assert resources_equal(written.total.hard, {"pods": "10"})
    assert resources_equal(written.total.used, {"pods": 5})
    assert [s.namespace for s in written.namespaces] == ["a", "b"]
    assert resources_equal(written.namespaces[0].status.used, {"pods": 2})
    assert resources_equal(result.total.used, written.total.used)


def test_sync_account_quota_masks_unlimited_resources():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"], {"a": {"pods": 1, "secrets": 4}}))
    client = FakeClient(
        namespaces=[namespace("a", "acct")],
        quotas=[AccountQuota(name="q1", account="acct", hard={"pods": "10"})],
    )
    controller = make_controller(
        client, registry, usage_func=lambda ns, quota, hard: registry.list()[0].usage(ns)
    )
    result = controller.sync_account_quota(client.get_account_quota("q1"))
    assert set(result.total.used) == {"pods"}
    assert set(result.namespaces[0].status.used) == {"pods"}


def test_sync_account_quota_skips_update_when_unchanged():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"], {"a": {"pods": 2}}))
    quota = AccountQuota(
        name="q1",
        account="acct",
        hard={"pods": "10"},
        total=ResourceQuotaStatus(hard={"pods": "10"}, used={"pods": "2"}),
        namespaces=[
            AccountQuotaStatusByNamespace("a", ResourceQuotaStatus(used={"pods": "2"}))
        ],
    )
    client = FakeClient(namespaces=[namespace("a", "acct")], quotas=[quota])
    controller = make_controller(client, registry)
    result = controller.sync_account_quota(client.get_account_quota("q1"))
    assert client.updates == []
    assert resources_equal(result.total.used, quota.total.used)


def test_sync_account_quota_reports_usage_errors_but_still_updates():
    def failing_usage(ns, quota, hard):
        raise RuntimeError("usage broke")

    client = FakeClient(
        namespaces=[namespace("a", "acct")],
        quotas=[AccountQuota(name="q1", account="acct", hard={"pods": "10"})],
    )
    controller = make_controller(client, usage_func=failing_usage)
    with pytest.raises(QuotaSyncError) as info:
        controller.sync_account_quota(client.get_account_quota("q1"))
    assert str(info.value) == "usage broke"
    assert len(client.updates) == 1


def test_sync_from_key_ignores_deleted_quota():
    client = FakeClient()
    controller = make_controller(client)
    assert controller.sync_account_quota_from_key("missing") is None
    assert client.updates == []


def test_replenish_quota_queues_matching_quotas():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"]))
    client = FakeClient(
        namespaces=[namespace("a", "acct"), namespace("b")],
        quotas=[
            AccountQuota(
                name="tracks-pods",
                account="acct",
                total=ResourceQuotaStatus(hard={"pods": "1"}),
            ),
            AccountQuota(
                name="tracks-cpu",
                account="acct",
                total=ResourceQuotaStatus(hard={"cpu": "1"}),
            ),
        ],
    )
    controller = make_controller(client, registry)
    controller.replenish_quota(GroupResource("", "secrets"), "a")
    controller.replenish_quota(PODS, "b")
    controller.replenish_quota(PODS, "missing")
    assert controller.queue.snapshot() == []
    controller.replenish_quota(PODS, "a")
    assert controller.queue.snapshot() == ["tracks-pods"]


def test_run_processes_queued_quotas_until_stopped():
    registry = FakeRegistry(FakeEvaluator(PODS, ["pods"], {"a": {"pods": 1}}))
    client = FakeClient(
        namespaces=[namespace("a", "acct")],
        quotas=[AccountQuota(name="q1", account="acct", hard={"pods": "10"})],
    )
    controller = make_controller(client, registry)
    stop = threading.Event()
    thread = threading.Thread(target=controller.run, args=(1, stop))
    thread.start()
    deadline = time.monotonic() + 5
    while not client.updates and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert client.updates[0].name == "q1"
    assert resources_equal(client.quotas["q1"].total.used, {"pods": 1})


RESOURCE_LISTS = [
    {
        "groupVersion": "example.com/v1",
        "resources": [{"name": "widgets", "verbs": ["create", "list", "watch", "delete"]}],
    }
]


class FakeMonitorController:
    def run(self, stop_event):
        stop_event.wait()

    def has_synced(self):
        return True


class FakeSharedInformer:
    def add_event_handler(self, handler, resync_period):
        self.handler = handler

    def get_controller(self):
        return FakeMonitorController()

    def list(self, namespace):
        return []


class FakeInformerFactory:
    def __init__(self):
        self.requested = []

    def for_resource(self, resource):
        self.requested.append(resource)
        return FakeSharedInformer()

    def start(self, stop_event):
        pass


def test_construction_with_discovery_builds_monitors():
    registry = FakeRegistry()
    factory = FakeInformerFactory()
    controller = make_controller(
        FakeClient(),
        registry,
        discovery_func=lambda: RESOURCE_LISTS,
        informer_factory=factory,
    )
    widgets = GroupVersionResource("example.com", "v1", "widgets")
    assert factory.requested == [widgets]
    assert controller.quota_monitor.is_synced() is True
    assert registry.get(widgets.group_resource) is not None


def test_construction_fails_when_discovery_fails_entirely():
    def broken():
        raise RuntimeError("no server")

    with pytest.raises(DiscoveryError):
        make_controller(FakeClient(), discovery_func=broken, informer_factory=FakeInformerFactory())


def test_sync_adds_monitors_for_new_resources():
    registry = FakeRegistry()
    factory = FakeInformerFactory()
    controller = make_controller(
        FakeClient(),
        registry,
        discovery_func=lambda: [],
        informer_factory=factory,
    )
    assert controller.quota_monitor.is_synced() is False

    stop = threading.Event()

    def discover():
        stop.set()
        return RESOURCE_LISTS

    controller.sync(discover, 0.5, stop)
    widgets = GroupVersionResource("example.com", "v1", "widgets")
    assert widgets in factory.requested
    assert registry.get(widgets.group_resource) is not None
    assert controller.quota_monitor.is_synced() is True


def test_sync_stops_on_total_discovery_failure():
    controller = make_controller(FakeClient())
    stop = threading.Event()
    calls = []

    def broken():
        calls.append(1)
        stop.set()
        raise RuntimeError("down")

    controller.sync(broken, 0.1, stop)
    assert calls == [1]
    assert controller.quota_monitor is None


def test_quota_values_are_decimal_after_sync():
    client = FakeClient(
        namespaces=[namespace("a", "acct")],
        quotas=[AccountQuota(name="q1", account="acct", hard={"pods": "10"})],
    )
    controller = make_controller(client, usage_func=lambda ns, q, hard: {"pods": "1"})
    result = controller.sync_account_quota(client.get_account_quota("q1"))
    assert result.total.hard["pods"] == Decimal("10")
    assert result.total.used["pods"] == Decimal("1")