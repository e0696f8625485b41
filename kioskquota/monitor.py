"""Watching quota-tracked resources and signalling when usage may have changed."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from kioskquota.discovery import GroupResource, GroupVersionResource

log = logging.getLogger(__name__)

PODS = GroupResource("", "pods")
SERVICES = GroupResource("", "services")


class EventType(enum.Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"

    def __str__(self) -> str:
        return self.value


@dataclass
class ResourceEvent:
    """A change to a watched object that may require quota recalculation."""

    event_type: EventType
    obj: Any
    gvr: GroupVersionResource
    old_obj: Any = None


@dataclass
class DeletedFinalStateUnknown:
    """A deleted object whose final state was not observed."""

    key: str
    obj: Any


class MonitorSyncError(RuntimeError):
    """Monitors could not be created for some resources."""

    def __init__(self, errors: list[str]) -> None:
        message = errors[0] if len(errors) == 1 else "[" + ", ".join(errors) + "]"
        super().__init__(message)
        self.errors = errors


class Controller(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...

    def has_synced(self) -> bool: ...


class SharedInformer(Protocol):
    def add_event_handler(self, handler: Any, resync_period: float) -> None: ...

    def get_controller(self) -> Controller: ...


class InformerFactory(Protocol):
    def for_resource(self, resource: GroupVersionResource) -> SharedInformer: ...

    def start(self, stop_event: threading.Event) -> None: ...


class Registry(Protocol):
    def get(self, group_resource: GroupResource) -> Any: ...

    def add(self, evaluator: Any) -> None: ...


ReplenishmentFunc = Callable[[GroupResource, str], None]


def _field(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _pod_counted(pod: Any, now: datetime) -> bool:
    """Tell whether a pod still counts against quota."""
    if _field(pod, "status", "phase") in ("Failed", "Succeeded"):
        return False
    deleted_at = _field(pod, "metadata", "deletionTimestamp")
    grace = _field(pod, "metadata", "deletionGracePeriodSeconds")
    if deleted_at is not None and grace is not None:
        if now > _parse_time(deleted_at) + timedelta(seconds=grace):
            return False
    return True


def _service_quota_type(service: Any) -> str:
    service_type = _field(service, "spec", "type")
    return service_type if service_type in ("NodePort", "LoadBalancer") else ""


def _namespace_of(obj: Any) -> str:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if not isinstance(metadata, Mapping):
            raise TypeError(f"object has no metadata: {obj!r}")
        return metadata.get("namespace", "") or ""
    namespace = getattr(obj, "namespace", None)
    if namespace is None:
        raise TypeError(f"object has no metadata: {obj!r}")
    return namespace


class _ObjectCountEvaluator:
    """Counts objects of one resource under the ``count/<resource>`` quota name."""

    def __init__(self, group_resource: GroupResource, list_func: Callable[[str], Iterable[Any]]):
        self.group_resource = group_resource
        self.resource_names = [f"count/{group_resource}"]
        self._list_func = list_func

    def matching_resources(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if name in self.resource_names]

    def usage(self, namespace: str) -> dict[str, int]:
        count = sum(1 for _ in self._list_func(namespace))
        return {name: count for name in self.resource_names}


class _ChangeHandler:
    def __init__(self, monitor: QuotaMonitor, resource: GroupVersionResource) -> None:
        self._monitor = monitor
        self._resource = resource

    def on_add(self, obj: Any) -> None:
        pass

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        # Only updates that free quota are interesting; the rest is noise.
        group_resource = self._resource.group_resource
        notify = False
        if group_resource == PODS:
            now = self._monitor.clock()
            notify = _pod_counted(old_obj, now) and not _pod_counted(new_obj, now)
        elif group_resource == SERVICES:
            notify = _service_quota_type(old_obj) != _service_quota_type(new_obj)
        if notify:
            self._monitor.resource_changes.put(
                ResourceEvent(EventType.UPDATE, new_obj, self._resource, old_obj)
            )

    def on_delete(self, obj: Any) -> None:
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        self._monitor.resource_changes.put(ResourceEvent(EventType.DELETE, obj, self._resource))


class _Monitor:
    def __init__(self, controller: Controller) -> None:
        self.controller = controller
        self.stop_event: threading.Event | None = None


class QuotaMonitor:
    """Keeps one monitor per quota-tracked resource and forwards their changes."""

    def __init__(
        self,
        informers_started: threading.Event,
        informer_factory: InformerFactory,
        ignored_resources: Iterable[GroupResource],
        resync_period: Callable[[], float],
        replenishment_func: ReplenishmentFunc,
        registry: Registry,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        poll_interval: float = 1.0,
    ) -> None:
        self.informers_started = informers_started
        self.informer_factory = informer_factory
        self.ignored_resources = set(ignored_resources)
        self.resync_period = resync_period
        self.replenishment_func = replenishment_func
        self.registry = registry
        self.clock = clock
        self.poll_interval = poll_interval
        self.resource_changes: queue.Queue[Any] = queue.Queue()
        self._monitors: dict[GroupVersionResource, _Monitor] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._running = False

    def _controller_for(self, resource: GroupVersionResource) -> Controller:
        try:
            shared = self.informer_factory.for_resource(resource)
        except Exception as exc:
            log.debug("QuotaMonitor unable to use a shared informer for %s: %s", resource, exc)
            raise RuntimeError(f'unable to monitor quota for resource "{resource}"') from exc
        shared.add_event_handler(_ChangeHandler(self, resource), self.resync_period())
        return shared.get_controller()

    def _list_func(self, resource: GroupVersionResource) -> Callable[[str], Iterable[Any]]:
        def list_objects(namespace: str) -> Iterable[Any]:
            return self.informer_factory.for_resource(resource).list(namespace)

        return list_objects

    def sync_monitors(self, resources: Iterable[GroupVersionResource]) -> None:
        """Keep, create or stop monitors so that exactly ``resources`` are watched.

        Every resource is attempted; failures are raised together afterwards
        as :class:`MonitorSyncError`. New monitors are not started.
        """
        with self._lock:
            to_remove = dict(self._monitors)
            current: dict[GroupVersionResource, _Monitor] = {}
            errors: list[str] = []
            kept = added = 0
            for resource in resources:
                if resource.group_resource in self.ignored_resources:
                    continue
                if resource in to_remove:
                    current[resource] = to_remove.pop(resource)
                    kept += 1
                    continue
                try:
                    controller = self._controller_for(resource)
                except RuntimeError as exc:
                    errors.append(f'couldn\'t start monitor for resource "{resource}": {exc}')
                    continue

                group_resource = resource.group_resource
                if self.registry.get(group_resource) is None:
                    self.registry.add(
                        _ObjectCountEvaluator(group_resource, self._list_func(resource))
                    )
                    log.info("QuotaMonitor created object count evaluator for %s", group_resource)

                current[resource] = _Monitor(controller)
                added += 1
            self._monitors = current

            for monitor in to_remove.values():
                if monitor.stop_event is not None:
                    monitor.stop_event.set()

            log.debug(
                "quota synced monitors; added %d, kept %d, removed %d",
                added, kept, len(to_remove),
            )
        if errors:
            raise MonitorSyncError(errors)

    def start_monitors(self) -> int:
        """Start every monitor not yet running; return how many were started.

        Does nothing before :meth:`run` has been called.
        """
        with self._lock:
            if not self._running:
                return 0
            self.informers_started.wait()
            started = 0
            for monitor in self._monitors.values():
                if monitor.stop_event is None:
                    monitor.stop_event = threading.Event()
                    self.informer_factory.start(self._stop_event)
                    threading.Thread(
                        target=monitor.controller.run, args=(monitor.stop_event,), daemon=True
                    ).start()
                    started += 1
            log.debug(
                "QuotaMonitor started %d new monitors, %d currently running",
                started, len(self._monitors),
            )
            return started

    def is_synced(self) -> bool:
        """Tell whether monitors exist and all of them have synced."""
        with self._lock:
            if not self._monitors:
                return False
            return all(m.controller.has_synced() for m in self._monitors.values())

    def run(self, stop_event: threading.Event) -> int:
        """Start monitors and process changes until ``stop_event`` is set.

        Running monitors are stopped before returning; their count is returned.
        """
        log.info("QuotaMonitor running")
        with self._lock:
            self._stop_event = stop_event
            self._running = True

        self.start_monitors()
        while not stop_event.is_set():
            self.process_resource_changes()

        with self._lock:
            stopped = 0
            for monitor in self._monitors.values():
                if monitor.stop_event is not None:
                    monitor.stop_event.set()
                    stopped += 1
            log.info("QuotaMonitor stopped %d of %d monitors", stopped, len(self._monitors))
            return stopped

    def process_resource_changes(self) -> bool:
        """Handle one queued change; return False if none arrived in time."""
        try:
            item = self.resource_changes.get(timeout=self.poll_interval)
        except queue.Empty:
            return False
        try:
            if not isinstance(item, ResourceEvent):
                log.error("expect a ResourceEvent, got %r", item)
                return True
            try:
                namespace = _namespace_of(item.obj)
            except TypeError as exc:
                log.error("cannot access obj: %s", exc)
                return True
            log.debug(
                "QuotaMonitor process object: %s, namespace %s, event type %s",
                item.gvr, namespace, item.event_type,
            )
            self.replenishment_func(item.gvr.group_resource, namespace)
            return True
        finally:
            self.resource_changes.task_done()