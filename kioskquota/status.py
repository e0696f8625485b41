"""Quota objects, resource-list arithmetic and per-namespace status lists."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

ResourceList = dict[str, Any]

_BINARY_SUFFIXES = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}
_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}
_QUANTITY = re.compile(
    r"^([+-]?(?:\d+\.?\d*|\.\d+))(?:([eE][+-]?\d+)|(Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE]))?$"
)


def _quantity(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity: {value!r}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        match = _QUANTITY.match(value.strip())
        if match is None:
            raise ValueError(f"invalid quantity: {value!r}")
        number, exponent, suffix = match.groups()
        try:
            if exponent:
                return Decimal(number + exponent)
            multiplier = _BINARY_SUFFIXES.get(suffix or "") or _DECIMAL_SUFFIXES[suffix or ""]
            return Decimal(number) * multiplier
        except InvalidOperation as exc:
            raise ValueError(f"invalid quantity: {value!r}") from exc
    raise ValueError(f"invalid quantity: {value!r}")


@dataclass
class ResourceQuotaStatus:
    """Hard limits and observed usage; ``None`` means never set."""

    hard: ResourceList | None = None
    used: ResourceList | None = None


@dataclass
class AccountQuotaStatusByNamespace:
    """Usage of an account quota inside one namespace."""

    namespace: str
    status: ResourceQuotaStatus = field(default_factory=ResourceQuotaStatus)


@dataclass
class AccountQuota:
    """A cluster-wide quota spanning every namespace of an account."""

    name: str
    account: str = ""
    hard: ResourceList | None = None
    scopes: list[str] = field(default_factory=list)
    scope_selector: Any = None
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    total: ResourceQuotaStatus = field(default_factory=ResourceQuotaStatus)
    namespaces: list[AccountQuotaStatusByNamespace] = field(default_factory=list)


@dataclass
class ResourceQuota:
    """A namespaced quota as seen by the quota evaluator."""

    name: str
    namespace: str = ""
    hard: ResourceList | None = None
    scopes: list[str] = field(default_factory=list)
    scope_selector: Any = None
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    status: ResourceQuotaStatus = field(default_factory=ResourceQuotaStatus)


def get_resource_quotas_status_by_namespace(
    statuses: Iterable[AccountQuotaStatusByNamespace], namespace: str
) -> ResourceQuotaStatus | None:
    """Return the status recorded for ``namespace``, or ``None``."""
    return next((s.status for s in statuses if s.namespace == namespace), None)


def remove_resource_quotas_status_by_namespace(
    statuses: Iterable[AccountQuotaStatusByNamespace], namespace: str
) -> list[AccountQuotaStatusByNamespace]:
    """Return the statuses without the entry for ``namespace``."""
    return [s for s in statuses if s.namespace != namespace]


def insert_resource_quotas_status(
    statuses: Iterable[AccountQuotaStatusByNamespace],
    new_status: AccountQuotaStatusByNamespace,
) -> list[AccountQuotaStatusByNamespace]:
    """Return the statuses with ``new_status`` replacing its namespace's entry.

    An existing entry keeps its position; otherwise the new one is appended.
    """
    result: list[AccountQuotaStatusByNamespace] = []
    found = False
    for current in statuses:
        if current.namespace == new_status.namespace:
            result.append(new_status)
            found = True
        else:
            result.append(current)
    if not found:
        result.append(new_status)
    return result


def add_resources(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> ResourceList:
    """Sum two resource lists key by key."""
    a, b = a or {}, b or {}
    result: ResourceList = {}
    for key, value in a.items():
        quantity = _quantity(value)
        if key in b:
            quantity += _quantity(b[key])
        result[key] = quantity
    for key, value in b.items():
        if key not in result:
            result[key] = _quantity(value)
    return result


def subtract_resources(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> ResourceList:
    """Return ``a - b`` key by key; keys only in ``b`` come out negated."""
    a, b = a or {}, b or {}
    result: ResourceList = {}
    for key, value in a.items():
        quantity = _quantity(value)
        if key in b:
            quantity -= _quantity(b[key])
        result[key] = quantity
    for key, value in b.items():
        if key not in result:
            result[key] = -_quantity(value)
    return result


def mask_resources(resources: Mapping[str, Any] | None, names: Iterable[str]) -> ResourceList:
    """Keep only the resources whose names are listed."""
    wanted = set(names)
    return {key: value for key, value in (resources or {}).items() if key in wanted}


def resources_equal(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> bool:
    """Tell whether two resource lists hold the same quantities."""
    a, b = a or {}, b or {}
    if len(a) != len(b):
        return False
    return all(key in b and _quantity(value) == _quantity(b[key]) for key, value in a.items())