"""A lister that reads objects of one kind through a client once synced."""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from kioskquota.convert import object_to_object


class NotSyncedError(RuntimeError):
    """The cache behind a lister has not synced yet."""


class ObjectClient(Protocol):
    def list(self, kind: str, namespace: str | None = None) -> Iterable[dict[str, Any]]: ...

    def get(self, kind: str, name: str, namespace: str = "") -> dict[str, Any]: ...


def cached_has_synced(has_synced: Callable[[], bool]) -> Callable[[], bool]:
    """Wrap ``has_synced`` so that once it reports True it is never called again."""
    synced = False

    def check() -> bool:
        nonlocal synced
        if synced:
            return True
        if has_synced():
            synced = True
            return True
        return False

    return check


class GenericLister:
    """Lists and gets objects of one kind; fails until the cache has synced."""

    def __init__(
        self,
        has_synced: Callable[[], bool],
        kind: str,
        client: ObjectClient,
        decode: Callable[[Any], Any] = object_to_object,
        namespace: str = "",
    ) -> None:
        self._has_synced = cached_has_synced(has_synced)
        self.kind = kind
        self.client = client
        self.decode = decode
        self.namespace = namespace

    def _ensure_synced(self) -> None:
        if not self._has_synced():
            raise NotSyncedError(f"{self.kind} not yet synced")

    def list(self, selector: Any = None) -> list[Any]:
        """Return every object of the kind, within the namespace if one is set.

        The selector is accepted but not applied.
        """
        self._ensure_synced()
        items = self.client.list(self.kind, namespace=self.namespace or None)
        return [self.decode(item) for item in items]

    def get(self, name: str) -> Any:
        """Return the named object."""
        self._ensure_synced()
        item = self.client.get(self.kind, name, namespace=self.namespace)
        return self.decode(item)

    def by_namespace(self, namespace: str) -> GenericLister:
        """Return a lister restricted to ``namespace`` sharing this sync state."""
        scoped = copy.copy(self)
        scoped.namespace = namespace
        return scoped