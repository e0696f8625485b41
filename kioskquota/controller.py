"""Keeping the usage recorded in account quotas up to date."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from kioskquota.discovery import (
    DiscoveryError,
    DiscoveryFunc,
    GroupResource,
    GroupVersionResource,
    get_quotable_resources,
    print_diff,
)
from kioskquota.monitor import DeletedFinalStateUnknown, MonitorSyncError, QuotaMonitor
from kioskquota.status import (
    AccountQuota,
    AccountQuotaStatusByNamespace,
    ResourceList,
    ResourceQuotaStatus,
    add_resources,
    mask_resources,
    resources_equal,
)
from kioskquota.util import get_account_from_namespace

log = logging.getLogger(__name__)

DEFAULT_RESYNC_PERIOD = 300.0
CACHE_SYNC_POLL_INTERVAL = 0.1
_BASE_DELAY = 0.005
_MAX_DELAY = 1000.0


class ControllerClient(Protocol):
    """What the controller needs from the cluster.

    Getters raise :class:`LookupError` when the object does not exist.
    """

    def get_namespace(self, name: str) -> Any: ...

    def get_account_quota(self, name: str) -> AccountQuota: ...

    def list_account_quotas(self, account: str | None = None) -> list[AccountQuota]: ...

    def list_namespaces(self, account: str) -> list[Any]: ...

    def update_account_quota_status(self, account_quota: AccountQuota) -> None: ...


class Evaluator(Protocol):
    def matching_resources(self, names: Iterable[str]) -> list[str]: ...

    def usage(self, namespace: str) -> Mapping[str, Any]: ...


class Registry(Protocol):
    def get(self, group_resource: GroupResource) -> Evaluator | None: ...

    def add(self, evaluator: Any) -> None: ...

    def list(self) -> list[Evaluator]: ...


UsageFunc = Callable[[str, AccountQuota, ResourceList], Mapping[str, Any]]


class QuotaSyncError(RuntimeError):
    """One or more steps of an account quota sync failed."""

    def __init__(self, errors: list[BaseException]) -> None:
        messages = [str(e) for e in errors]
        message = messages[0] if len(messages) == 1 else "[" + ", ".join(messages) + "]"
        super().__init__(message)
        self.errors = errors


def _started_event() -> threading.Event:
    event = threading.Event()
    event.set()
    return event


def _name_of(obj: Any) -> str:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if isinstance(metadata, Mapping):
            return metadata.get("name", "") or ""
        return ""
    return getattr(obj, "name", "") or ""


def _key_of(obj: Any) -> str:
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    if isinstance(obj, str):
        return obj
    name = _name_of(obj)
    if not name:
        raise ValueError(f"object has no name: {obj!r}")
    return name


class _RateLimitingQueue:
    """A de-duplicating work queue with per-item exponential retry delays."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def snapshot(self) -> list[str]:
        """Return the queued items in order."""
        with self._cond:
            return list(self._queue)

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> str | None:
        """Block for the next item; ``None`` once the queue is shut down and empty."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_rate_limited(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            delay = min(_BASE_DELAY * 2**failures, _MAX_DELAY)

            def fire() -> None:
                with self._cond:
                    self._timers.discard(timer)
                self.add(item)

            timer = threading.Timer(delay, fire)
            timer.daemon = True
            self._timers.add(timer)
            timer.start()

    def forget(self, item: str) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()


class _ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _wait_for_cache_sync(
    stop_event: threading.Event,
    synced_funcs: Iterable[Callable[[], bool]],
    timeout: float | None = None,
    poll_interval: float = CACHE_SYNC_POLL_INTERVAL,
) -> bool:
    funcs = list(synced_funcs)
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if all(f() for f in funcs):
            return True
        if stop_event.is_set():
            return False
        wait = poll_interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(wait, remaining)
        stop_event.wait(wait)


def _until(func: Callable[[], None], period: float, stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        func()
        if stop_event.wait(period):
            break


@dataclass
class AccountQuotaControllerOptions:
    """Everything an :class:`AccountQuotaController` is built from."""

    client: ControllerClient
    registry: Registry
    resync_period: Callable[[], float] = lambda: DEFAULT_RESYNC_PERIOD
    namespace_informer: Any = None
    quota_informer: Any = None
    discovery_func: DiscoveryFunc | None = None
    ignored_resources_func: Callable[[], Iterable[GroupResource]] = frozenset
    informers_started: threading.Event = field(default_factory=_started_event)
    informer_factory: Any = None
    replenishment_resync_period: Callable[[], float] = lambda: DEFAULT_RESYNC_PERIOD
    usage_func: UsageFunc | None = None
    sync_poll_interval: float = CACHE_SYNC_POLL_INTERVAL


class _NamespaceHandler:
    def __init__(self, controller: AccountQuotaController) -> None:
        self._controller = controller

    def on_add(self, obj: Any) -> None:
        self._controller.enqueue_namespace(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if get_account_from_namespace(old) == get_account_from_namespace(new):
            return
        self._controller.enqueue_namespace(old)
        self._controller.enqueue_namespace(new)

    def on_delete(self, obj: Any) -> None:
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        self._controller.enqueue_namespace(obj)


class _AccountQuotaHandler:
    def __init__(self, controller: AccountQuotaController) -> None:
        self._controller = controller

    def on_add(self, obj: Any) -> None:
        self._controller.add_quota(obj)

    def on_update(self, old: AccountQuota, new: AccountQuota) -> None:
        # Status updates come from this controller; only spec changes matter.
        if resources_equal(old.hard, new.hard):
            return
        self._controller.add_quota(new)

    def on_delete(self, obj: Any) -> None:
        self._controller.enqueue_account_quota(obj)


class AccountQuotaController:
    """Tracks resource usage across the namespaces of each account quota."""

    def __init__(self, options: AccountQuotaControllerOptions) -> None:
        self.client = options.client
        self.registry = options.registry
        self.resync_period = options.resync_period
        self.usage_func = options.usage_func or self._calculate_usage
        self.sync_poll_interval = options.sync_poll_interval
        self.queue = _RateLimitingQueue("accountquota_primary")
        self.missing_usage_queue = _RateLimitingQueue("accountquota_priority")
        self.quota_monitor: QuotaMonitor | None = None
        self._worker_lock = _ReadWriteLock()
        self._sync_handler: Callable[[str], Any] = self.sync_account_quota_from_key
        self._synced_funcs: list[Callable[[], bool]] = []

        if options.namespace_informer is not None:
            options.namespace_informer.add_event_handler(
                _NamespaceHandler(self), self.resync_period()
            )
            self._synced_funcs.append(options.namespace_informer.has_synced)
        if options.quota_informer is not None:
            options.quota_informer.add_event_handler(
                _AccountQuotaHandler(self), self.resync_period()
            )
            self._synced_funcs.append(options.quota_informer.has_synced)

        if options.discovery_func is not None:
            if options.informer_factory is None:
                raise ValueError("an informer factory is required for resource discovery")
            monitor = QuotaMonitor(
                informers_started=options.informers_started,
                informer_factory=options.informer_factory,
                ignored_resources=options.ignored_resources_func(),
                resync_period=options.replenishment_resync_period,
                replenishment_func=self.replenish_quota,
                registry=self.registry,
            )
            self.quota_monitor = monitor

            try:
                resources = get_quotable_resources(options.discovery_func)
            except DiscoveryError as exc:
                if not exc.partial:
                    raise
                log.error(
                    "initial discovery check failure, continuing and counting on "
                    "future sync update: %s",
                    exc,
                )
                resources = exc.resources

            try:
                monitor.sync_monitors(resources)
            except MonitorSyncError as exc:
                log.error("initial monitor sync has error: %s", exc)

            self._synced_funcs.append(monitor.is_synced)

    def _calculate_usage(
        self, namespace: str, account_quota: AccountQuota, hard_limits: ResourceList
    ) -> ResourceList:
        hard_names = list(hard_limits)
        usage: ResourceList = {}
        for evaluator in self.registry.list():
            matched = evaluator.matching_resources(hard_names)
            if not matched:
                continue
            usage = add_resources(usage, mask_resources(evaluator.usage(namespace), matched))
        return usage

    def enqueue_all(self) -> None:
        """Queue every account quota for a full recalculation of its usage."""
        try:
            quotas = self.client.list_account_quotas(None)
        except Exception as exc:
            log.error("unable to enqueue all - error listing account quotas: %s", exc)
            return
        for account_quota in quotas:
            try:
                key = _key_of(account_quota)
            except ValueError as exc:
                log.error("Couldn't get key for object %r: %s", account_quota, exc)
                continue
            self.queue.add(key)
        log.debug("account quota controller queued all account quota for full calculation of usage")

    def enqueue_account_quota(self, account_quota: Any) -> None:
        """Queue an account quota, or a deletion marker for one, in the primary queue."""
        try:
            key = _key_of(account_quota)
        except ValueError as exc:
            log.error("Couldn't get key for object %r: %s", account_quota, exc)
            return
        self.queue.add(key)

    def enqueue_namespace(self, namespace: Any) -> None:
        """Queue every account quota of the account the namespace belongs to."""
        account = get_account_from_namespace(namespace)
        if not account:
            return
        try:
            quotas = self.client.list_account_quotas(account)
        except Exception as exc:
            log.error("unable to list account quotas: %s", exc)
            return
        for account_quota in quotas:
            self.queue.add(account_quota.name)

    def add_quota(self, account_quota: AccountQuota) -> None:
        """Queue a quota, in the priority queue when it lacks status or usage."""
        try:
            key = _key_of(account_quota)
        except ValueError as exc:
            log.error("Couldn't get key for object %r: %s", account_quota, exc)
            return

        if not resources_equal(account_quota.hard, account_quota.total.hard):
            self.missing_usage_queue.add(key)
            return

        used = account_quota.total.used or {}
        for constraint in account_quota.total.hard or {}:
            if constraint in used:
                continue
            for evaluator in self.registry.list():
                if evaluator.matching_resources([constraint]):
                    self.missing_usage_queue.add(key)
                    return

        self.queue.add(key)

    def _process_next(self, work_queue: _RateLimitingQueue) -> bool:
        key = work_queue.get()
        if key is None:
            return False
        try:
            with self._worker_lock.read():
                try:
                    self._sync_handler(key)
                except Exception as exc:
                    log.error("error syncing account quota %s: %s", key, exc)
                    work_queue.add_rate_limited(key)
                else:
                    work_queue.forget(key)
        finally:
            work_queue.done(key)
        return True

    def _worker(self, work_queue: _RateLimitingQueue) -> None:
        while self._process_next(work_queue):
            pass
        log.info("account quota controller worker shutting down")

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Process quotas with ``workers`` threads per queue until ``stop_event`` is set."""
        log.info("Starting account quota controller")
        threads: list[threading.Thread] = []
        try:
            if self.quota_monitor is not None:
                threading.Thread(
                    target=self.quota_monitor.run, args=(stop_event,), daemon=True
                ).start()

            if not _wait_for_cache_sync(
                stop_event, self._synced_funcs, poll_interval=self.sync_poll_interval
            ):
                return

            for _ in range(workers):
                for work_queue in (self.queue, self.missing_usage_queue):
                    thread = threading.Thread(
                        target=self._worker, args=(work_queue,), daemon=True
                    )
                    thread.start()
                    threads.append(thread)

            threading.Thread(
                target=_until,
                args=(self.enqueue_all, self.resync_period(), stop_event),
                daemon=True,
            ).start()
            stop_event.wait()
        finally:
            self.queue.shutdown()
            self.missing_usage_queue.shutdown()
            for thread in threads:
                thread.join()
            log.info("Shutting down account quota controller")

    def sync_account_quota_from_key(self, key: str) -> AccountQuota | None:
        """Sync the named account quota; a quota that no longer exists is ignored."""
        start = time.monotonic()
        try:
            try:
                account_quota = self.client.get_account_quota(key)
            except LookupError:
                log.info("Account quota has been deleted %s", key)
                return None
            return self.sync_account_quota(account_quota)
        finally:
            log.debug(
                "Finished syncing account quota %r (%.3fs)", key, time.monotonic() - start
            )

    def sync_account_quota(self, account_quota: AccountQuota) -> AccountQuota:
        """Recalculate usage in every namespace of the quota's account.

        The status is written back when it changed. Returns the quota with the
        recalculated status; raises :class:`QuotaSyncError` if any step failed.
        """
        status_limits_dirty = not resources_equal(account_quota.hard, account_quota.total.hard)
        dirty = (
            status_limits_dirty
            or account_quota.total.hard is None
            or account_quota.total.used is None
        )
        hard_limits = add_resources({}, account_quota.hard)

        namespaces = self.client.list_namespaces(account_quota.account)

        hard_resources = list(hard_limits)
        used: list[AccountQuotaStatusByNamespace] = []
        total_used: ResourceList = {}
        errors: list[BaseException] = []
        for namespace in namespaces:
            name = _name_of(namespace)
            try:
                new_usage = dict(self.usage_func(name, account_quota, hard_limits))
            except Exception as exc:
                errors.append(exc)
                new_usage = {}

            used_list: ResourceList = {}
            for ns_status in account_quota.namespaces:
                if ns_status.namespace == name and ns_status.status.used is not None:
                    used_list = add_resources({}, ns_status.status.used)
            used_list.update(new_usage)
            used_list = mask_resources(used_list, hard_resources)

            used.append(
                AccountQuotaStatusByNamespace(
                    namespace=name, status=ResourceQuotaStatus(used=used_list)
                )
            )
            total_used = add_resources(total_used, used_list)

        usage = copy.deepcopy(account_quota)
        usage.total = ResourceQuotaStatus(hard=hard_limits, used=total_used)
        usage.namespaces = used

        dirty = dirty or not resources_equal(total_used, account_quota.total.used)
        if dirty:
            try:
                self.client.update_account_quota_status(usage)
            except Exception as exc:
                errors.append(exc)

        if errors:
            raise QuotaSyncError(errors)
        return usage

    def replenish_quota(self, group_resource: GroupResource, namespace: str) -> None:
        """Queue the quotas of a namespace's account that track ``group_resource``."""
        evaluator = self.registry.get(group_resource)
        if evaluator is None:
            return

        try:
            namespace_object = self.client.get_namespace(namespace)
        except Exception:
            log.error("quota controller could not find Namespace: %s", namespace)
            return

        account = get_account_from_namespace(namespace_object)
        if not account:
            return

        try:
            quotas = self.client.list_account_quotas(account)
        except Exception as exc:
            log.error(
                "error checking to see if namespace %s has any AccountQuota associated "
                "with it: %s",
                namespace,
                exc,
            )
            return

        for account_quota in quotas:
            names = list(account_quota.total.hard or {})
            if evaluator.matching_resources(names):
                self.enqueue_account_quota(account_quota)

    def _resync_monitors(self, resources: set[GroupVersionResource]) -> None:
        if self.quota_monitor is None:
            return
        self.quota_monitor.sync_monitors(resources)
        self.quota_monitor.start_monitors()

    def sync(
        self, discovery_func: DiscoveryFunc, period: float, stop_event: threading.Event
    ) -> None:
        """Every ``period`` seconds, update the monitors to newly discovered resources."""
        old_resources: set[GroupVersionResource] = set()

        def step() -> None:
            nonlocal old_resources
            try:
                new_resources = set(get_quotable_resources(discovery_func))
            except DiscoveryError as exc:
                log.error("%s", exc)
                if exc.partial and exc.resources:
                    # Keep existing monitors; only add what was found.
                    new_resources = set(exc.resources) | old_resources
                else:
                    return

            if new_resources == old_resources:
                log.debug("no resource updates from discovery, skipping account quota sync")
                return

            with self._worker_lock.write():
                log.info(
                    "syncing account quota controller with updated resources from "
                    "discovery: %s",
                    print_diff(old_resources, new_resources),
                )
                try:
                    self._resync_monitors(new_resources)
                except Exception as exc:
                    log.error("failed to sync resource monitors: %s", exc)
                    return
                if self.quota_monitor is not None and not _wait_for_cache_sync(
                    stop_event,
                    [self.quota_monitor.is_synced],
                    timeout=period,
                    poll_interval=self.sync_poll_interval,
                ):
                    log.error("timed out waiting for quota monitor sync")
                    return
                old_resources = new_resources
                log.info("synced quota controller")

        _until(step, period, stop_event)