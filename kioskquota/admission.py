"""An admission check that enforces account quotas on namespaced objects."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from kioskquota.accessor import AccountQuotaAccessor, QuotaClient
from kioskquota.locks import LockFactory
from kioskquota.status import ResourceQuota

TIME_TO_WAIT_FOR_CACHE_SYNC = 10.0
SYNC_POLL_INTERVAL = 0.1
HANDLED_OPERATIONS = frozenset({"CREATE", "UPDATE"})

LockAcquisition = Callable[[list[ResourceQuota]], Callable[[], None]]


class Evaluator(Protocol):
    def evaluate(self, attributes: Any) -> None: ...


class Informer(Protocol):
    def has_synced(self) -> bool: ...


class InformerCache(Protocol):
    def get_informer(self, kind: str) -> Informer: ...


EvaluatorFactory = Callable[[AccountQuotaAccessor, LockAcquisition], Evaluator]


class AdmissionForbidden(Exception):
    """The request is refused before quota evaluation could take place."""

    def __init__(self, attributes: Any, reason: str) -> None:
        name = getattr(attributes, "name", "")
        super().__init__(f'"{name}" is forbidden: {reason}')
        self.attributes = attributes
        self.reason = reason


class AccountQuotaAdmission:
    """Checks create and update requests against the account quotas of their namespace."""

    def __init__(
        self,
        client: QuotaClient,
        cache: InformerCache,
        evaluator_factory: EvaluatorFactory,
        lock_factory: LockFactory | None = None,
        cache_sync_timeout: float = TIME_TO_WAIT_FOR_CACHE_SYNC,
        poll_interval: float = SYNC_POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.cache = cache
        self.evaluator_factory = evaluator_factory
        self.lock_factory = lock_factory or LockFactory()
        self.cache_sync_timeout = cache_sync_timeout
        self.poll_interval = poll_interval
        self._init_lock = threading.Lock()
        self._evaluator: Evaluator | None = None

    def handles(self, operation: Any) -> bool:
        """Tell whether requests with ``operation`` are checked."""
        return str(getattr(operation, "value", operation)) in HANDLED_OPERATIONS

    def _get_evaluator(self) -> Evaluator:
        with self._init_lock:
            if self._evaluator is None:
                accessor = AccountQuotaAccessor(self.client)
                self._evaluator = self.evaluator_factory(accessor, self.lock_acquisition)
            return self._evaluator

    def validate(self, attributes: Any) -> None:
        """Evaluate the request; raise if it is refused.

        Sub-resource requests and cluster-level objects are let through.
        """
        if getattr(attributes, "subresource", ""):
            return
        if not getattr(attributes, "namespace", ""):
            return
        if not self.wait_for_synced_store(self.cache_sync_timeout):
            raise AdmissionForbidden(attributes, "caches not synchronized")
        self._get_evaluator().evaluate(attributes)

    def lock_acquisition(self, quotas: list[ResourceQuota]) -> Callable[[], None]:
        """Lock every quota by name in alphabetical order; return the releasing function."""
        locks = []
        for quota in sorted(quotas, key=lambda q: q.name):
            lock = self.lock_factory.get_lock(quota.name)
            lock.acquire()
            locks.append(lock)

        def release() -> None:
            for lock in reversed(locks):
                lock.release()

        return release

    def wait_for_synced_store(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the namespace and quota caches to sync."""
        try:
            namespaces = self.cache.get_informer("Namespace")
            account_quotas = self.cache.get_informer("AccountQuota")
        except Exception:
            return False

        def synced() -> bool:
            return namespaces.has_synced() and account_quotas.has_synced()

        deadline = time.monotonic() + timeout
        while not synced():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return synced()
            time.sleep(min(self.poll_interval, remaining))
        return True