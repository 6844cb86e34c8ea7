"""Argument hygiene helpers for git invocations.

All escaping lives here. Commands are executed as argument vectors, so quoting is
only needed when a command is rendered for humans (error messages, logs); the
rendering must still be safe to paste into a POSIX shell.
"""

from __future__ import annotations

import os
import re
import shlex
from typing import Iterable, Mapping

from ..errors import InvalidArgument

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "GIT_INDEX_FILE",
    "GIT_DIR",
    "GIT_WORK_TREE",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_REF_FORBIDDEN = re.compile(r"[\s~^:?*\[\\]")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for git subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if additional:
        env.update(additional)
    return env


def quote_arg(value: str) -> str:
    """Quote a single argument for a POSIX shell.

    Single quotes, backticks, ``$()`` and embedded newlines all end up inside a
    single-quoted word, where the shell treats them literally.
    """

    if "\x00" in value:
        raise InvalidArgument("Arguments must not contain NUL bytes")
    return shlex.quote(value)


def format_command(args: Iterable[str], env: Mapping[str, str] | None = None) -> str:
    """Render an argument vector (and env overrides) as a copy-pasteable shell line."""

    prefix = [f"{key}={quote_arg(value)}" for key, value in (env or {}).items()]
    return " ".join([*prefix, *(quote_arg(arg) for arg in args)])


def validate_ref_name(name: str) -> str:
    """Reject branch/tag names git would refuse or that could be read as options."""

    if not name:
        raise InvalidArgument("Ref name must not be empty")
    if name.startswith(("-", "/")) or name.endswith(("/", ".", ".lock")):
        raise InvalidArgument(f"Invalid ref name: {name!r}")
    if ".." in name or "//" in name or "@{" in name or name == "@":
        raise InvalidArgument(f"Invalid ref name: {name!r}")
    if _CONTROL_CHARS.search(name) or _REF_FORBIDDEN.search(name):
        raise InvalidArgument(f"Invalid ref name: {name!r}")
    return name


def validate_tree_path(path: str) -> str:
    """Reject paths that would escape the tree or confuse the index."""

    if not path or path.startswith("/") or path.startswith("-"):
        raise InvalidArgument(f"Invalid tree path: {path!r}")
    if _CONTROL_CHARS.search(path):
        raise InvalidArgument(f"Invalid tree path: {path!r}")
    parts = path.split("/")
    if any(part in {"", ".", ".."} for part in parts) or parts[0] == ".git":
        raise InvalidArgument(f"Invalid tree path: {path!r}")
    return path


__all__ = [
    "format_command",
    "quote_arg",
    "sanitize_environment",
    "validate_ref_name",
    "validate_tree_path",
]
