"""Context log: session snapshots and design decisions.

Every record is written to disk first (atomic replace) and then mirrored into the
context branch through :class:`~loopvault.git.objects.ObjectWriter`. Disk is the
fast path and the branch is the durable path; a failed mirror is logged and the
call still succeeds. ``prune`` only ever removes disk files, so the branch keeps
the complete history.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..errors import InvalidArgument
from ..git.objects import CommitOutcome, ObjectWriter
from ..git.runner import GitRunnerError
from .files import atomic_write_text, dump_json, safe_read_json, reserve_unique
from .models import CommitSummary, ContextHead, Decision, Snapshot
from .resolver import (
    HEAD_FILE,
    SESSIONS_PREFIX,
    RestoreResolver,
    RestoreResult,
    parse_snapshot,
    report_corruption,
    session_sort_key,
    sorted_session_files,
)
from .session_state import SessionStateFile

logger = logging.getLogger(__name__)

DECISIONS_PREFIX = "decisions"
RECENT_COMMITS = 10
RECENT_DECISIONS = 20
SEARCH_LINES = 3
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def slugify(text: str, *, limit: int = 40) -> str:
    slug = _SLUG_PATTERN.sub("-", text.lower()).strip("-")[:limit].strip("-")
    return slug or "decision"


@dataclass(slots=True)
class InitReport:
    context_dir: Path
    branch: str | None
    tip: str | None
    mirrored: bool


@dataclass(slots=True)
class SnapshotOutcome:
    snapshot: Snapshot
    path: Path
    mirror: CommitOutcome


@dataclass(slots=True)
class DecisionOutcome:
    decision: Decision
    path: Path
    mirror: CommitOutcome


@dataclass(slots=True)
class RecoveredSession:
    session_id: str
    source: str
    snapshot: Snapshot


@dataclass(slots=True)
class SearchHit:
    source: str
    name: str
    lines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TimelineEntry:
    session_id: str
    source: str
    timestamp: str = ""
    workflow: str | None = None
    phase: str | None = None
    project: str | None = None
    branch: str | None = None


class ContextLogStore:
    """Persist snapshots and decisions to disk and to the context branch."""

    def __init__(
        self,
        context_dir: Path,
        *,
        session_state: SessionStateFile,
        writer: ObjectWriter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.context_dir = Path(context_dir)
        self.sessions_dir = self.context_dir / SESSIONS_PREFIX
        self.decisions_dir = self.context_dir / DECISIONS_PREFIX
        self.head_path = self.context_dir / HEAD_FILE
        self.session_state = session_state
        self.writer = writer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.resolver = RestoreResolver(
            head_path=self.head_path,
            sessions_dir=self.sessions_dir,
            writer=writer,
        )

    def _ensure_dirs(self) -> None:
        for directory in (self.context_dir, self.sessions_dir, self.decisions_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def init(self) -> InitReport:
        """Create the log directories and, inside a repository, the context branch."""

        self._ensure_dirs()
        if self.writer is None or not self.writer.is_repository():
            logger.warning(
                "Context branch unavailable; using disk only",
                extra={"event": "durability_degraded", "context_dir": str(self.context_dir)},
            )
            return InitReport(context_dir=self.context_dir, branch=None, tip=None, mirrored=False)
        try:
            tip = self.writer.ensure_branch()
        except GitRunnerError as exc:
            logger.warning(
                "Could not create context branch",
                extra={"event": "durability_degraded", "error": str(exc)},
            )
            return InitReport(
                context_dir=self.context_dir, branch=self.writer.branch, tip=None, mirrored=False
            )
        return InitReport(context_dir=self.context_dir, branch=self.writer.branch, tip=tip, mirrored=True)

    def _mirror(self, files: dict[str, str], message: str) -> CommitOutcome:
        if self.writer is None:
            outcome = CommitOutcome(ok=False, error="git is not available")
        else:
            outcome = self.writer.commit_files(files, message)
        if not outcome.ok:
            logger.warning(
                "Context branch mirror failed; disk copy kept",
                extra={"event": "durability_degraded", "error": outcome.error, "files": sorted(files)},
            )
        return outcome

    def _primary_info(self) -> tuple[str, str, list[CommitSummary]]:
        if self.writer is None:
            return "unknown", "unknown", []
        runner = self.writer.runner
        branch = runner.output("rev-parse", "--abbrev-ref", "HEAD") or "unknown"
        commit = runner.output("rev-parse", "--short", "HEAD") or "unknown"
        recent = [
            CommitSummary(hash=commit_hash, message=subject)
            for commit_hash, subject in self.writer.log_subjects(ref="HEAD", limit=RECENT_COMMITS)
        ]
        return branch, commit, recent

    def _current_head(self) -> ContextHead | None:
        return self.resolver.from_disk() or self.resolver.from_branch()

    def snapshot(self) -> SnapshotOutcome:
        """Capture the orchestrator's current state as a new session."""

        self._ensure_dirs()
        now = self._clock()
        path = reserve_unique(self.sessions_dir, now.strftime("%Y-%m-%d_%H%M%S"))
        try:
            state = self.session_state.read() or {}
            branch, commit, recent = self._primary_info()

            workflow_state: dict[str, Any] = {}
            if isinstance(state.get("current"), dict):
                workflow_state.update(state["current"])
            for key in ("autonomy_level", "metrics"):
                if key in state:
                    workflow_state[key] = state[key]
            pending = [
                task
                for task in state.get("pending_tasks") or []
                if not (isinstance(task, dict) and task.get("status") == "done")
            ]

            snapshot = Snapshot(
                session_id=path.stem,
                timestamp=now.isoformat(),
                branch=branch,
                commit_hash=commit,
                workflow_state=workflow_state,
                pending_items=pending,
                decisions=state.get("design_decisions"),
                recent_commits=recent,
                next_session_hint=self.session_state.read_next_session(),
            )
            previous = self._current_head()
            head = ContextHead(
                updated_at=snapshot.timestamp,
                snapshot=snapshot,
                last_decision=previous.last_decision if previous else None,
                recent_decisions=previous.recent_decisions if previous else [],
            )

            session_text = dump_json(snapshot.to_json_dict())
            head_text = dump_json(head.to_json_dict())
            atomic_write_text(path, session_text)
            atomic_write_text(self.head_path, head_text)
        except BaseException:
            if path.exists() and path.stat().st_size == 0:
                path.unlink()
            raise

        mirror = self._mirror(
            {f"{SESSIONS_PREFIX}/{path.name}": session_text, HEAD_FILE: head_text},
            f"ctx: snapshot {snapshot.session_id}",
        )
        logger.info(
            "Context snapshot written",
            extra={"session_id": snapshot.session_id, "mirrored": mirror.ok, "commit": mirror.commit},
        )
        return SnapshotOutcome(snapshot=snapshot, path=path, mirror=mirror)

    def decide(self, context: str, choice: str, reason: str | None = None) -> DecisionOutcome:
        """Record a design decision and merge it into the Head."""

        context = (context or "").strip()
        choice = (choice or "").strip()
        if not context or not choice:
            raise InvalidArgument('Usage: decide "<context>" "<choice>" "<reason>"')
        reason = (reason or "").strip() or "not specified"

        self._ensure_dirs()
        now = self._clock()
        branch, commit, _ = self._primary_info()
        decision = Decision(
            timestamp=now.isoformat(),
            commit_hash=commit,
            branch=branch,
            context=context,
            choice=choice,
            reason=reason,
        )

        path = reserve_unique(self.decisions_dir, f"{now.strftime('%Y-%m-%d_%H%M%S')}_{slugify(context)}")
        try:
            head = self._current_head() or ContextHead(updated_at=decision.timestamp)
            head.updated_at = decision.timestamp
            head.last_decision = decision
            head.recent_decisions = [*head.recent_decisions, decision][-RECENT_DECISIONS:]

            decision_text = dump_json(decision.to_json_dict())
            head_text = dump_json(head.to_json_dict())
            atomic_write_text(path, decision_text)
            atomic_write_text(self.head_path, head_text)
        except BaseException:
            if path.exists() and path.stat().st_size == 0:
                path.unlink()
            raise

        mirror = self._mirror(
            {f"{DECISIONS_PREFIX}/{path.name}": decision_text, HEAD_FILE: head_text},
            f"ctx: {context} -> {choice}",
        )
        self.session_state.append_decision(decision)
        logger.info(
            "Decision recorded",
            extra={"decision_file": path.name, "mirrored": mirror.ok, "commit": mirror.commit},
        )
        return DecisionOutcome(decision=decision, path=path, mirror=mirror)

    def restore(self) -> RestoreResult:
        """Resolve the latest Head, repairing the disk copy from the branch if needed."""

        result = self.resolver.resolve()
        if result.source == "branch" and result.head is not None:
            try:
                atomic_write_text(self.head_path, dump_json(result.head.to_json_dict()))
            except OSError as exc:
                logger.warning(
                    "Could not rewrite disk Head", extra={"path": str(self.head_path), "error": str(exc)}
                )
        if result.source not in {"disk", "none"}:
            logger.info("Context restored from fallback layer", extra={"source": result.source})
        return result

    def recover(self, session_id: str | None = "latest") -> RecoveredSession | None:
        """Return a named (or the latest) session snapshot, disk first then branch."""

        session_id = (session_id or "latest").strip()
        if session_id != "latest" and (not _ID_PATTERN.match(session_id) or ".." in session_id):
            raise InvalidArgument(f"Invalid session id: {session_id!r}")

        if session_id == "latest":
            for path in reversed(sorted_session_files(self.sessions_dir)):
                snapshot = parse_snapshot(safe_read_json(path), source="session")
                if snapshot is not None:
                    return RecoveredSession(session_id=path.stem, source="disk", snapshot=snapshot)
            return self._recover_latest_from_branch()

        path = self.sessions_dir / f"{session_id}.json"
        if path.exists():
            snapshot = parse_snapshot(safe_read_json(path), source="session")
            if snapshot is not None:
                return RecoveredSession(session_id=session_id, source="disk", snapshot=snapshot)
        return self._recover_from_branch(session_id)

    def _recover_from_branch(self, session_id: str) -> RecoveredSession | None:
        if self.writer is None:
            return None
        text = self.writer.read_file(f"{SESSIONS_PREFIX}/{session_id}.json")
        if text is None:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return None
        snapshot = parse_snapshot(data, source="branch")
        if snapshot is None:
            return None
        return RecoveredSession(session_id=session_id, source="branch", snapshot=snapshot)

    def _recover_latest_from_branch(self) -> RecoveredSession | None:
        if self.writer is None:
            return None
        names = [
            Path(name).stem
            for name in self.writer.list_files(SESSIONS_PREFIX)
            if name.endswith(".json")
        ]
        for name in sorted(names, key=session_sort_key, reverse=True):
            recovered = self._recover_from_branch(name)
            if recovered is not None:
                return recovered
        return None

    def search(self, keyword: str) -> list[SearchHit]:
        """Case-insensitive substring search over log files and ctx commit subjects."""

        needle = (keyword or "").strip().lower()
        if not needle:
            raise InvalidArgument('Usage: search "<keyword>"')

        hits: list[SearchHit] = []
        for source, directory in (("session", self.sessions_dir), ("decision", self.decisions_dir)):
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                try:
                    content = path.read_text(encoding="utf-8")
                except (OSError, ValueError) as exc:
                    report_corruption(source, f"{path}: {exc}")
                    continue
                if needle not in content.lower():
                    continue
                lines = [line.strip() for line in content.splitlines() if needle in line.lower()]
                hits.append(SearchHit(source=source, name=f"{directory.name}/{path.name}", lines=lines[:SEARCH_LINES]))

        if self.writer is not None:
            for commit_hash, subject in self.writer.log_subjects():
                if needle in subject.lower():
                    hits.append(SearchHit(source="branch", name=commit_hash, lines=[subject]))
            for commit_hash, subject in self.writer.log_subjects(ref="HEAD"):
                if subject.startswith("ctx:") and needle in subject.lower():
                    hits.append(SearchHit(source="primary", name=commit_hash, lines=[subject]))
        return hits

    def timeline(self, limit: int = 10) -> list[TimelineEntry]:
        """Summaries of the `limit` most recent sessions, oldest first."""

        if limit < 1:
            raise InvalidArgument("timeline count must be >= 1")

        entries: list[TimelineEntry] = []
        for path in sorted_session_files(self.sessions_dir)[-limit:]:
            snapshot = parse_snapshot(safe_read_json(path), source="session")
            if snapshot is None:
                entries.append(TimelineEntry(session_id=path.stem, source="disk"))
                continue
            state = snapshot.workflow_state
            entries.append(
                TimelineEntry(
                    session_id=snapshot.session_id,
                    source="disk",
                    timestamp=snapshot.timestamp,
                    workflow=state.get("workflow"),
                    phase=state.get("phase"),
                    project=state.get("project"),
                    branch=snapshot.branch,
                )
            )
        if entries or self.writer is None:
            return entries

        prefix = "ctx: snapshot "
        snapshots = [
            subject[len(prefix):].strip()
            for _, subject in self.writer.log_subjects()
            if subject.startswith(prefix)
        ]
        return [TimelineEntry(session_id=session_id, source="branch") for session_id in reversed(snapshots[:limit])]

    def prune(self, days: int = 30) -> int:
        """Delete disk entries older than `days`; the context branch keeps them."""

        if days < 0:
            raise InvalidArgument("prune days must be >= 0")
        cutoff = self._clock().timestamp() - days * 86400
        removed = 0
        for directory in (self.sessions_dir, self.decisions_dir):
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if not path.is_file():
                    continue
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
        logger.info("Pruned context log entries", extra={"removed": removed, "days": days})
        return removed


__all__ = [
    "ContextLogStore",
    "DecisionOutcome",
    "InitReport",
    "RecoveredSession",
    "SearchHit",
    "SnapshotOutcome",
    "TimelineEntry",
    "slugify",
]
