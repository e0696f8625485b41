"""Discovering which API resources the quota system can track."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any, NamedTuple

QUOTABLE_VERBS = frozenset({"create", "list", "watch", "delete"})


class GroupResource(NamedTuple):
    """An API group together with a resource name."""

    group: str = ""
    resource: str = ""

    def __str__(self) -> str:
        if not self.group:
            return self.resource
        return f"{self.resource}.{self.group}"


class GroupVersionResource(NamedTuple):
    """An API group, version and resource name."""

    group: str = ""
    version: str = ""
    resource: str = ""

    @property
    def group_resource(self) -> GroupResource:
        return GroupResource(self.group, self.resource)

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


class DiscoveryError(Exception):
    """Resource discovery failed, possibly only for some API groups.

    A discovery function raises it with ``resource_lists`` holding whatever it
    did discover. :func:`get_quotable_resources` raises it with ``partial``
    set and ``resources`` holding the quotable resources found, when some
    results came back despite the failure.
    """

    def __init__(
        self,
        message: str,
        resource_lists: Iterable[Mapping[str, Any]] | None = None,
        resources: Iterable[GroupVersionResource] | None = None,
        partial: bool = False,
    ) -> None:
        super().__init__(message)
        self.resource_lists = list(resource_lists or [])
        self.resources = set(resources or ())
        self.partial = partial


DiscoveryFunc = Callable[[], Iterable[Mapping[str, Any]]]


def _parse_group_version(group_version: str) -> tuple[str, str]:
    if group_version in ("", "/"):
        return "", ""
    parts = group_version.split("/")
    if len(parts) == 1:
        return "", group_version
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected GroupVersion string: {group_version}")


def _quotable(resource_lists: Iterable[Mapping[str, Any]]) -> set[GroupVersionResource]:
    found: set[GroupVersionResource] = set()
    for resource_list in resource_lists:
        group, version = _parse_group_version(resource_list.get("groupVersion", ""))
        for resource in resource_list.get("resources") or ():
            if QUOTABLE_VERBS <= set(resource.get("verbs") or ()):
                found.add(GroupVersionResource(group, version, resource.get("name", "")))
    return found


def get_quotable_resources(discovery_func: DiscoveryFunc) -> set[GroupVersionResource]:
    """Return every resource that supports create, list, watch and delete.

    When discovery failed for some groups but still returned results, a
    partial :class:`DiscoveryError` carrying the usable resources is raised;
    any other failure raises a non-partial one.
    """
    partial_error: DiscoveryError | None = None
    try:
        resource_lists = list(discovery_func())
    except DiscoveryError as exc:
        if not exc.resource_lists:
            raise DiscoveryError(f"failed to discover resources: {exc}") from exc
        partial_error = exc
        resource_lists = exc.resource_lists
    except Exception as exc:
        raise DiscoveryError(f"failed to discover resources: {exc}") from exc

    try:
        resources = _quotable(resource_lists)
    except ValueError as exc:
        raise DiscoveryError(f"Failed to parse resources: {exc}") from exc

    if partial_error is not None:
        raise DiscoveryError(
            str(partial_error),
            resource_lists=resource_lists,
            resources=resources,
            partial=True,
        ) from partial_error
    return resources


def print_diff(
    old_resources: Iterable[GroupVersionResource],
    new_resources: Iterable[GroupVersionResource],
) -> str:
    """Summarise which resources were added and which were removed."""
    old, new = set(old_resources), set(new_resources)
    removed = sorted({str(r) for r in old - new})
    added = sorted({str(r) for r in new - old})
    return f"added: [{' '.join(added)}], removed: [{' '.join(removed)}]"