"""Turning webhook admission requests into admission attributes."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from kioskquota.convert import ConvertError, string_to_unstructured

CREATE = "CREATE"
UPDATE = "UPDATE"
DELETE = "DELETE"
CONNECT = "CONNECT"


class Kind(NamedTuple):
    """Group, version and kind of an object."""

    group: str = ""
    version: str = ""
    kind: str = ""


class Resource(NamedTuple):
    """Group, version and resource an object is served under."""

    group: str = ""
    version: str = ""
    resource: str = ""


class DecodeError(ValueError):
    """Raw object bytes could not be decoded."""


def decode_raw(raw: bytes, kind: Kind | None = None) -> dict[str, Any]:
    """Decode raw JSON into an object dictionary.

    When ``kind`` names a kind and the object carries a different one,
    :class:`DecodeError` is raised.
    """
    if not raw:
        raise DecodeError("there is no content to decode")
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(str(exc)) from exc
    if not isinstance(data, dict):
        raise DecodeError(f"expected an object, got {type(data).__name__}")
    found = data.get("kind")
    if kind is not None and kind.kind and found and found != kind.kind:
        raise DecodeError(f"expected kind {kind.kind!r}, got {found!r}")
    return data


Decoder = Callable[[bytes, Kind], Any]


@dataclass
class UserInfo:
    """The user a request is made on behalf of."""

    username: str = ""
    uid: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class AdmissionRequest:
    """An admission request as received by a webhook."""

    operation: str = ""
    kind: Kind = field(default_factory=Kind)
    resource: Resource = field(default_factory=Resource)
    sub_resource: str = ""
    name: str = ""
    namespace: str = ""
    uid: str = ""
    user_info: UserInfo = field(default_factory=UserInfo)
    object: bytes = b""
    old_object: bytes = b""
    options: bytes = b""
    dry_run: bool | None = None


@dataclass
class Attributes:
    """Decoded request attributes handed to an admission check."""

    object: Any
    old_object: Any
    kind: Kind
    namespace: str
    name: str
    resource: Resource
    subresource: str
    operation: str
    options: dict[str, Any] | None
    dry_run: bool
    user_info: UserInfo


def _parse_options(raw: bytes) -> dict[str, Any] | None:
    # Options that fail to parse are simply left out.
    try:
        return string_to_unstructured(raw.decode(errors="replace"))
    except ConvertError:
        return None


def new_attribute_from_request(
    request: AdmissionRequest, decode: Decoder = decode_raw
) -> Attributes:
    """Decode the objects of ``request`` and build its attributes.

    Only create, update and delete requests are supported; anything else
    raises :class:`ValueError`. Decoding errors propagate.
    """
    obj: Any = None
    old_obj: Any = None
    operation = request.operation
    if operation == CREATE:
        obj = decode(request.object, request.kind)
    elif operation == UPDATE:
        obj = decode(request.object, request.kind)
        old_obj = decode(request.old_object, request.kind)
    elif operation == DELETE:
        if request.old_object:
            old_obj = decode(request.old_object, request.kind)
    else:
        raise ValueError(f"Operation {operation} not supported")

    info = request.user_info
    user_info = UserInfo(
        username=info.username,
        uid=info.uid,
        groups=info.groups,
        extra={key: value for key, value in info.extra.items()},
    )

    return Attributes(
        object=obj,
        old_object=old_obj,
        kind=Kind(*request.kind),
        namespace=request.namespace,
        name=request.name,
        resource=Resource(*request.resource),
        subresource=request.sub_resource,
        operation=operation,
        options=_parse_options(request.options),
        dry_run=bool(request.dry_run) if request.dry_run is not None else False,
        user_info=user_info,
    )