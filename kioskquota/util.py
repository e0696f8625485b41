"""Small helpers: running commands and reading namespace annotations."""

from __future__ import annotations

import subprocess
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import Any

SPACE_ANNOTATION_ACCOUNT = "space.kiosk.sh/account"
SPACE_ANNOTATION_INITIALIZING = "space.kiosk.sh/initializing"


class CommandError(RuntimeError):
    """A command could not be started or exited unsuccessfully."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def _execute(command: str, args: tuple[str, ...]) -> str:
    try:
        completed = subprocess.run(
            [command, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"Error in command: {exc} => ") from exc

    text = completed.stdout.decode(errors="replace")
    if completed.returncode != 0:
        raise CommandError(
            f"Error in command: exit status {completed.returncode} => {text}",
            output=text,
        )
    return text


def run(command: str, *args: str) -> None:
    """Run a command, raising :class:`CommandError` with its output on failure."""
    _execute(command, args)


def output(command: str, *args: str) -> str:
    """Run a command and return its combined stdout and stderr."""
    return _execute(command, args)


def _annotations(obj: Any) -> Mapping[str, str] | None:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata") or {}
        return metadata.get("annotations")
    return getattr(obj, "annotations", None)


def get_account_from_namespace(namespace: Any) -> str:
    """Return the account a namespace belongs to, or an empty string."""
    annotations = _annotations(namespace)
    if not annotations:
        return ""
    return annotations.get(SPACE_ANNOTATION_ACCOUNT, "")


def is_namespace_initializing(namespace: Any) -> bool:
    """Tell whether the namespace is marked as still initializing."""
    annotations = _annotations(namespace)
    if not annotations:
        return False
    return annotations.get(SPACE_ANNOTATION_INITIALIZING) == "true"


def strings_equal(a: Iterable[str] | None, b: Iterable[str] | None) -> bool:
    """Compare two string sequences as multisets, ignoring order."""
    first = list(a or [])
    second = list(b or [])
    if len(first) != len(second):
        return False
    return Counter(first) == Counter(second)