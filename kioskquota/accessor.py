"""Reads account quotas as namespaced quotas and writes usage back to them."""

from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from typing import Any, Protocol

from kioskquota.status import (
    AccountQuota,
    AccountQuotaStatusByNamespace,
    ResourceQuota,
    ResourceQuotaStatus,
    add_resources,
    get_resource_quotas_status_by_namespace,
    insert_resource_quotas_status,
    subtract_resources,
)
from kioskquota.util import get_account_from_namespace

UPDATED_QUOTA_CACHE_SIZE = 100
POLL_INTERVAL = 0.1
POLL_TIMEOUT = 8.0


class QuotaClient(Protocol):
    """What the accessor needs from the cluster.

    Getters raise :class:`LookupError` (for example ``KeyError``) when the
    object does not exist.
    """

    def get_namespace(self, name: str) -> Any: ...

    def get_account_quota(self, name: str) -> AccountQuota: ...

    def list_account_quotas(self, account: str) -> list[AccountQuota]: ...

    def update_account_quota_status(self, account_quota: AccountQuota) -> None: ...


class _LRUCache:
    """A small thread-safe least-recently-used mapping."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._items: OrderedDict[str, AccountQuota] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> AccountQuota | None:
        with self._lock:
            item = self._items.get(key)
            if item is not None:
                self._items.move_to_end(key)
            return item

    def add(self, key: str, value: AccountQuota) -> None:
        with self._lock:
            self._items[key] = value
            self._items.move_to_end(key)
            while len(self._items) > self._size:
                self._items.popitem(last=False)

    def remove(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


def _parse_resource_version(version: str) -> int:
    if version in ("", "0"):
        return 0
    if not (version.isascii() and version.isdigit()):
        raise ValueError(f"invalid resource version {version!r}")
    value = int(version)
    if value >= 2**64:
        raise ValueError(f"invalid resource version {version!r}")
    return value


def _compare_resource_versions(lhs: AccountQuota, rhs: AccountQuota) -> int:
    left = _parse_resource_version(lhs.resource_version)
    right = _parse_resource_version(rhs.resource_version)
    return (left > right) - (left < right)


class AccountQuotaAccessor:
    """Presents account quotas to a quota evaluator as namespaced quotas.

    Quotas it has just written are remembered so that back-to-back
    evaluations see their own updates even when the read cache lags behind.
    """

    def __init__(
        self,
        client: QuotaClient,
        poll_interval: float = POLL_INTERVAL,
        poll_timeout: float = POLL_TIMEOUT,
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._updated = _LRUCache(UPDATED_QUOTA_CACHE_SIZE)

    def update_quota_status(self, new_quota: ResourceQuota) -> None:
        """Store the usage in ``new_quota`` as the account total and its namespace share."""
        account_quota = self._check_cache(self.client.get_account_quota(new_quota.name))
        account_quota = copy.deepcopy(account_quota)

        account_quota.name = new_quota.name
        account_quota.resource_version = new_quota.resource_version
        account_quota.labels = dict(new_quota.labels)
        account_quota.annotations = dict(new_quota.annotations)

        usage_diff = subtract_resources(new_quota.status.used, account_quota.total.used)
        account_quota.total.used = (
            None if new_quota.status.used is None else dict(new_quota.status.used)
        )

        old_totals = get_resource_quotas_status_by_namespace(
            account_quota.namespaces, new_quota.namespace
        ) or ResourceQuotaStatus()
        new_totals = copy.deepcopy(old_totals)
        new_totals.used = add_resources(old_totals.used, usage_diff)
        account_quota.namespaces = insert_resource_quotas_status(
            account_quota.namespaces,
            AccountQuotaStatusByNamespace(namespace=new_quota.namespace, status=new_totals),
        )

        self.client.update_account_quota_status(account_quota)
        self._updated.add(account_quota.name, account_quota)

    def _check_cache(self, account_quota: AccountQuota) -> AccountQuota:
        cached = self._updated.get(account_quota.name)
        if cached is None:
            return account_quota
        if _compare_resource_versions(account_quota, cached) >= 0:
            self._updated.remove(account_quota.name)
            return account_quota
        return cached

    def get_quotas(self, namespace_name: str) -> list[ResourceQuota]:
        """Return the account quotas that govern ``namespace_name`` as namespaced quotas."""
        quotas = []
        for account_quota in self._wait_for_ready_account_quotas(namespace_name):
            account_quota = self._check_cache(account_quota)
            quotas.append(
                ResourceQuota(
                    name=account_quota.name,
                    namespace=namespace_name,
                    hard=copy.deepcopy(account_quota.hard),
                    scopes=list(account_quota.scopes),
                    scope_selector=account_quota.scope_selector,
                    resource_version=account_quota.resource_version,
                    labels=dict(account_quota.labels),
                    annotations=dict(account_quota.annotations),
                    status=copy.deepcopy(account_quota.total),
                )
            )
        return quotas

    def _ready_account_quotas(self, namespace_name: str) -> list[AccountQuota] | None:
        try:
            namespace = self.client.get_namespace(namespace_name)
        except LookupError:
            return None
        account = get_account_from_namespace(namespace)
        if not account:
            return []
        return list(self.client.list_account_quotas(account))

    def _wait_for_ready_account_quotas(self, namespace_name: str) -> list[AccountQuota]:
        deadline = time.monotonic() + self.poll_timeout
        while True:
            quotas = self._ready_account_quotas(namespace_name)
            if quotas is not None:
                return quotas
            if time.monotonic() >= deadline:
                raise TimeoutError("timed out waiting for the condition")
            time.sleep(self.poll_interval)