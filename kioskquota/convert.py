"""Conversions between YAML/JSON text and plain object dictionaries."""

from __future__ import annotations

import dataclasses
import json
import re
from typing import Any

import yaml

_SEPARATOR = re.compile(r"\n---")


class ConvertError(ValueError):
    """Text could not be turned into an object."""


class ManifestError(ConvertError):
    """A multi-document manifest held at least one bad document.

    ``objects`` holds the documents that did parse.
    """

    def __init__(self, message: str, objects: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.objects = objects


def _plain(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    return obj


def _require_kind(data: Any, text: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConvertError(f"expected an object, got {type(data).__name__}")
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ConvertError(f"Object 'Kind' is missing in '{text.strip()}'")
    return data


def string_to_unstructured_array(text: str) -> list[dict[str, Any]]:
    """Split a YAML stream on ``---`` and parse every non-empty document.

    Raises :class:`ManifestError` naming the first failure; the documents that
    parsed are still available on the exception.
    """
    objects: list[dict[str, Any]] = []
    first_error: str | None = None
    for part in _SEPARATOR.split(text):
        try:
            data = yaml.safe_load(part)
            if data is not None and not isinstance(data, dict):
                raise ConvertError(f"expected an object, got {type(data).__name__}")
            if not data:
                continue
            objects.append(_require_kind(data, part))
        except (yaml.YAMLError, ConvertError) as exc:
            if first_error is None:
                first_error = f"Failed to unmarshal manifest: {exc}"
    if first_error is not None:
        raise ManifestError(first_error, objects)
    return objects


def object_to_bytes(obj: Any) -> bytes:
    """Serialise an object as compact JSON with sorted keys."""
    return json.dumps(_plain(obj), separators=(",", ":"), sort_keys=True).encode()


def string_to_unstructured(text: str) -> dict[str, Any]:
    """Parse a single YAML or JSON document that must carry a kind."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConvertError(str(exc)) from exc
    return _require_kind(data, text)


def object_to_object(obj: Any) -> Any:
    """Return an independent plain copy of ``obj`` made by a YAML round trip."""
    try:
        return yaml.safe_load(yaml.safe_dump(_plain(obj)))
    except yaml.YAMLError as exc:
        raise ConvertError(str(exc)) from exc