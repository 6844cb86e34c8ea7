"""Layered lookup of the most recent context.

Layers are consulted in a fixed order and the first one that yields a valid Head
wins:

1. ``HEAD.json`` on disk (fast path).
2. ``HEAD.json`` in the context branch tip tree (durable path, no checkout).
3. The newest readable session file on disk.
4. ``context-log/CONTEXT_HEAD.yaml`` in the primary branch ``HEAD`` commit,
   written by older versions that committed the log into the project history.

A later layer is only reached when every earlier layer is missing or corrupt, so
staler data can never shadow fresher data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from ..git.objects import ObjectWriter
from .files import safe_read_json
from .models import ContextHead, Decision, Snapshot

logger = logging.getLogger(__name__)

HEAD_FILE = "HEAD.json"
SESSIONS_PREFIX = "sessions"
LEGACY_HEAD_YAML = "context-log/CONTEXT_HEAD.yaml"


@dataclass(slots=True)
class RestoreResult:
    source: str
    head: ContextHead | None = None

    @property
    def found(self) -> bool:
        return self.head is not None


def session_sort_key(session_id: str) -> tuple[str, int]:
    """Order ids like ``2025-01-01_120000`` < ``..._120000-1`` < ``..._120000-10``."""

    base, sep, suffix = session_id.rpartition("-")
    if sep and suffix.isdigit() and "_" in base:
        return base, int(suffix)
    return session_id, 0


def sorted_session_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    files = [path for path in directory.glob("*.json") if path.is_file()]
    return sorted(files, key=lambda path: session_sort_key(path.stem))


def report_corruption(source: str, detail: str) -> None:
    logger.warning(
        "Context layer unreadable, falling back",
        extra={"event": "corruption_recovered", "source": source, "detail": detail},
    )


def parse_head(data: Any, *, source: str) -> ContextHead | None:
    if data is None:
        return None
    try:
        return ContextHead.model_validate(data)
    except ValidationError as exc:
        report_corruption(source, str(exc))
        return None


def parse_snapshot(data: Any, *, source: str) -> Snapshot | None:
    if data is None:
        return None
    try:
        return Snapshot.model_validate(data)
    except ValidationError as exc:
        report_corruption(source, str(exc))
        return None


def _loads(text: str | None, *, source: str) -> Any | None:
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError as exc:
        report_corruption(source, str(exc))
        return None


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _legacy_scalar(value: str) -> Any:
    value = value.strip()
    if value in {"", "null", "~"}:
        return None
    if value == "[]":
        return []
    if value.startswith('"'):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def read_legacy_lines(text: str) -> dict[str, Any]:
    """Line-oriented reader for the unquoted YAML older releases wrote.

    Values are never quoted there, so a line such as ``message: ctx: snapshot``
    is split on the first ``": "`` only. A repeated top-level key replaces the
    earlier block, which lets an appended ``last_decision`` win.
    """

    document: dict[str, Any] = {}
    key: str | None = None
    literal: list[str] | None = None

    for line in text.splitlines():
        if literal is not None:
            if line.startswith("  ") or not line.strip():
                literal.append(line[2:])
                continue
            document[key] = "\n".join(literal).strip("\n")
            literal = None

        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if not line[0].isspace():
            name, _, value = stripped.partition(":")
            key = name.strip()
            value = value.strip()
            if value == "|":
                literal = []
            else:
                document[key] = _legacy_scalar(value) if value else None
            continue
        if key is None:
            continue

        container = document.get(key)
        if stripped.startswith("- "):
            entry = stripped[2:]
            if not isinstance(container, list):
                container = document[key] = []
            name, sep, value = entry.partition(": ")
            if sep and not entry.startswith('"'):
                container.append({name.strip(): _legacy_scalar(value)})
            else:
                container.append(_legacy_scalar(entry))
            continue

        name, sep, value = stripped.partition(": ")
        if not sep:
            if not stripped.endswith(":"):
                continue
            name, value = stripped[:-1], ""
        if isinstance(container, list):
            if container and isinstance(container[-1], dict):
                container[-1][name.strip()] = _legacy_scalar(value)
            continue
        if not isinstance(container, dict):
            container = document[key] = {}
        container[name.strip()] = _legacy_scalar(value)

    if literal is not None and key is not None:
        document[key] = "\n".join(literal).strip("\n")
    return document


def head_from_legacy_yaml(text: str) -> ContextHead | None:
    """Convert a ``CONTEXT_HEAD.yaml`` document from older releases into a Head."""

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.debug("Legacy head is not strict YAML; reading line by line", extra={"error": str(exc)})
        document = read_legacy_lines(text)
    if not isinstance(document, dict) or not isinstance(document.get("meta"), dict):
        report_corruption("legacy", "CONTEXT_HEAD.yaml has no meta block")
        return None

    meta = document["meta"]
    session = document.get("session") if isinstance(document.get("session"), dict) else {}
    hint = _text(document.get("next_session"))
    snapshot = parse_snapshot(
        {
            "session_id": _text(meta.get("session_id"), "legacy"),
            "timestamp": _text(meta.get("timestamp")),
            "branch": _text(meta.get("branch"), "unknown"),
            "commit_hash": _text(meta.get("commit"), "unknown"),
            "workflow_state": session,
            "pending_items": document.get("pending_tasks"),
            "decisions": document.get("design_decisions"),
            "recent_commits": [
                {"hash": _text(item.get("hash")), "message": _text(item.get("message"))}
                for item in document.get("recent_commits") or []
                if isinstance(item, dict)
            ],
            "next_session_hint": "" if hint == "none" else hint,
        },
        source="legacy",
    )
    if snapshot is None:
        return None

    last_decision = None
    raw_decision = document.get("last_decision")
    if isinstance(raw_decision, dict) and raw_decision.get("context"):
        reason = raw_decision.get("reason")
        reason = reason.strip() if isinstance(reason, str) else ""
        if reason in {"", "-"}:
            reason = "not specified"
        last_decision = Decision(
            timestamp=snapshot.timestamp,
            context=_text(raw_decision.get("context")),
            choice=_text(raw_decision.get("choice")),
            reason=reason,
        )
    return ContextHead(updated_at=snapshot.timestamp, snapshot=snapshot, last_decision=last_decision)


class RestoreResolver:
    """Resolve the current Head across disk, context branch and primary history."""

    def __init__(
        self,
        *,
        head_path: Path,
        sessions_dir: Path,
        writer: ObjectWriter | None = None,
    ) -> None:
        self.head_path = Path(head_path)
        self.sessions_dir = Path(sessions_dir)
        self.writer = writer

    def layers(self) -> list[tuple[str, Callable[[], ContextHead | None]]]:
        return [
            ("disk", self.from_disk),
            ("branch", self.from_branch),
            ("session", self.from_latest_session),
            ("legacy", self.from_primary),
        ]

    def resolve(self) -> RestoreResult:
        for source, loader in self.layers():
            head = loader()
            if head is not None:
                return RestoreResult(source=source, head=head)
        return RestoreResult(source="none")

    def from_disk(self) -> ContextHead | None:
        if not self.head_path.exists():
            return None
        data = safe_read_json(self.head_path)
        if data is None:
            report_corruption("disk", f"{self.head_path} is not valid JSON")
            return None
        return parse_head(data, source="disk")

    def from_branch(self) -> ContextHead | None:
        if self.writer is None:
            return None
        return parse_head(_loads(self.writer.read_file(HEAD_FILE), source="branch"), source="branch")

    def from_latest_session(self) -> ContextHead | None:
        for path in reversed(sorted_session_files(self.sessions_dir)):
            snapshot = parse_snapshot(safe_read_json(path), source="session")
            if snapshot is not None:
                return ContextHead(updated_at=snapshot.timestamp, snapshot=snapshot)
        return None

    def from_primary(self) -> ContextHead | None:
        if self.writer is None:
            return None
        text = self.writer.read_file(LEGACY_HEAD_YAML, ref="HEAD")
        if text is not None:
            return head_from_legacy_yaml(text)
        return None


__all__ = [
    "HEAD_FILE",
    "LEGACY_HEAD_YAML",
    "RestoreResolver",
    "RestoreResult",
    "head_from_legacy_yaml",
    "read_legacy_lines",
    "report_corruption",
    "parse_head",
    "parse_snapshot",
    "session_sort_key",
    "sorted_session_files",
]
