from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import git, requires_git
from loopvault.errors import InvalidArgument
from loopvault.git import GitRunner, ObjectWriter
from loopvault.storage import ContextLogStore, SessionStateFile
from loopvault.storage.context_log import slugify
from loopvault.storage.resolver import read_legacy_lines

FIXED = datetime(2025, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime = FIXED) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _store(repo: Path | None, home: Path, clock: Clock) -> ContextLogStore:
    writer = ObjectWriter(GitRunner(repo), branch="ctx/log") if repo is not None else None
    return ContextLogStore(
        home / "context-log",
        session_state=SessionStateFile(home / ".session_state.json", home / "NEXT_SESSION.md"),
        writer=writer,
        clock=clock,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def store(repo: Path, home: Path, clock: Clock) -> ContextLogStore:
    return _store(repo, home, clock)


def _write_state(home: Path, **state: object) -> None:
    (home / ".session_state.json").write_text(json.dumps(state), encoding="utf-8")


def test_slugify() -> None:
    assert slugify("Database: Postgres vs SQLite?") == "database-postgres-vs-sqlite"
    assert slugify("!!!") == "decision"
    assert len(slugify("x" * 100)) == 40


@requires_git
def test_init_creates_dirs_and_branch(store: ContextLogStore, repo: Path) -> None:
    report = store.init()

    assert report.mirrored and report.branch == "ctx/log"
    assert store.sessions_dir.is_dir() and store.decisions_dir.is_dir()
    assert git(repo, "rev-parse", "--verify", "refs/heads/ctx/log") == report.tip


@requires_git
def test_init_outside_repository_is_disk_only(home: Path, tmp_path: Path, clock: Clock) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    store = _store(plain, home, clock)

    report = store.init()

    assert not report.mirrored and report.branch is None
    assert store.sessions_dir.is_dir()


@requires_git
def test_snapshot_is_written_to_disk_and_branch(
    store: ContextLogStore, repo: Path, home: Path
) -> None:
    _write_state(
        home,
        current={"workflow": "feature", "phase": "build", "project": "demo"},
        autonomy_level=2,
        pending_tasks=[{"task": "a", "status": "done"}, {"task": "b", "status": "open"}],
        design_decisions=[{"context": "db"}],
    )
    (home / "NEXT_SESSION.md").write_text("Resume with task b\n", encoding="utf-8")

    outcome = store.snapshot()

    snapshot = outcome.snapshot
    assert snapshot.session_id == "2025-03-14_092653"
    assert outcome.path == store.sessions_dir / "2025-03-14_092653.json"
    assert snapshot.workflow_state == {
        "workflow": "feature",
        "phase": "build",
        "project": "demo",
        "autonomy_level": 2,
    }
    assert snapshot.pending_items == [{"task": "b", "status": "open"}]
    assert snapshot.next_session_hint == "Resume with task b"
    assert snapshot.branch == git(repo, "rev-parse", "--abbrev-ref", "HEAD")
    assert [commit.message for commit in snapshot.recent_commits] == ["initial"]

    assert outcome.mirror.ok and outcome.mirror.changed
    branch_session = json.loads(git(repo, "show", f"ctx/log:sessions/{outcome.path.name}"))
    assert branch_session == json.loads(outcome.path.read_text(encoding="utf-8"))
    branch_head = json.loads(git(repo, "show", "ctx/log:HEAD.json"))
    assert branch_head["snapshot"]["session_id"] == snapshot.session_id
    assert git(repo, "log", "-1", "--format=%s", "ctx/log") == f"ctx: snapshot {snapshot.session_id}"
    assert git(repo, "status", "--porcelain") == ""


@requires_git
def test_same_second_snapshots_get_distinct_ids(store: ContextLogStore, repo: Path) -> None:
    first = store.snapshot()
    second = store.snapshot()
    third = store.snapshot()

    ids = [first.snapshot.session_id, second.snapshot.session_id, third.snapshot.session_id]
    assert ids == ["2025-03-14_092653", "2025-03-14_092653-1", "2025-03-14_092653-2"]
    names = git(repo, "ls-tree", "--name-only", "ctx/log:sessions").splitlines()
    assert sorted(names) == sorted(f"{session_id}.json" for session_id in ids)


@requires_git
def test_restore_survives_deleting_the_disk_head(store: ContextLogStore, clock: Clock) -> None:
    store.snapshot()
    clock.advance(seconds=5)
    store.decide("cache", "redis", "shared")
    clock.advance(seconds=5)
    last = store.snapshot()
    expected = json.loads(store.head_path.read_text(encoding="utf-8"))

    store.head_path.unlink()
    result = store.restore()

    assert result.source == "branch"
    assert result.head is not None
    assert result.head.to_json_dict() == expected
    assert result.head.snapshot.session_id == last.snapshot.session_id
    assert result.head.last_decision.choice == "redis"
    assert json.loads(store.head_path.read_text(encoding="utf-8")) == expected


@requires_git
def test_corrupt_disk_head_falls_back_to_branch(store: ContextLogStore) -> None:
    outcome = store.snapshot()
    store.head_path.write_text("{not json", encoding="utf-8")

    result = store.restore()

    assert result.source == "branch"
    assert result.head.snapshot.session_id == outcome.snapshot.session_id


@requires_git
def test_restore_prefers_disk(store: ContextLogStore) -> None:
    store.snapshot()

    assert store.restore().source == "disk"


@requires_git
def test_restore_falls_back_to_latest_session(
    home: Path, clock: Clock, tmp_path: Path
) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    store = _store(plain, home, clock)
    store.snapshot()
    clock.advance(seconds=1)
    latest = store.snapshot()
    store.head_path.unlink()

    result = store.restore()

    assert result.source == "session"
    assert result.head.snapshot.session_id == latest.snapshot.session_id


@requires_git
def test_restore_with_nothing_recorded(store: ContextLogStore) -> None:
    result = store.restore()

    assert result.source == "none"
    assert not result.found


@requires_git
def test_restore_reads_legacy_yaml_from_primary_history(
    repo: Path, home: Path, clock: Clock
) -> None:
    legacy = repo / "context-log"
    legacy.mkdir()
    (legacy / "CONTEXT_HEAD.yaml").write_text(
        "meta:\n"
        "  session_id: old-1\n"
        "  timestamp: '2024-01-01T00:00:00Z'\n"
        "  branch: main\n"
        "  commit: abc1234\n"
        "session:\n"
        "  workflow: legacy\n"
        "pending_tasks:\n"
        "  - migrate\n"
        "last_decision:\n"
        "  context: storage\n"
        "  choice: files\n"
        "next_session: none\n",
        encoding="utf-8",
    )
    git(repo, "add", "context-log")
    git(repo, "commit", "-q", "-m", "ctx: legacy head")

    result = _store(repo, home, clock).restore()

    assert result.source == "legacy"
    assert result.head.snapshot.session_id == "old-1"
    assert result.head.snapshot.workflow_state == {"workflow": "legacy"}
    assert result.head.snapshot.pending_items == ["migrate"]
    assert result.head.snapshot.next_session_hint == ""
    assert result.head.last_decision.choice == "files"
    assert result.head.last_decision.reason == "not specified"


UNQUOTED_HEAD = """\
# Context Snapshot: 2024-12-31_0900
# Commit: abc1234

meta:
  session_id: 2024-12-31_0900
  timestamp: 2024-12-31T09:00:00.000Z
  branch: main
  commit: abc1234
  schema_version: 1.0
session:
  workflow: feature
  phase: build
  project: null
  autonomy_level: 2
pending_tasks:
  - id: t1
    status: open
design_decisions: []
recent_commits:
  - hash: abc1234
    message: ctx: snapshot 2024-12-30_1800
  - hash: def5678
    message: feat: add parser
next_session: |
  Resume parser work
  then ship

# Latest Decision (2024-12-31T09:05:00.000Z)
last_decision:
  context: storage
  choice: sqlite
  reason: -

# Latest Decision (2024-12-31T09:10:00.000Z)
last_decision:
  context: storage
  choice: postgres
  reason: needs concurrency
"""


@requires_git
def test_restore_reads_unquoted_legacy_head(repo: Path, home: Path, clock: Clock) -> None:
    legacy = repo / "context-log"
    legacy.mkdir()
    (legacy / "CONTEXT_HEAD.yaml").write_text(UNQUOTED_HEAD, encoding="utf-8")
    git(repo, "add", "context-log")
    git(repo, "commit", "-q", "-m", "ctx: storage -> postgres")

    result = _store(repo, home, clock).restore()

    assert result.source == "legacy"
    snapshot = result.head.snapshot
    assert snapshot.session_id == "2024-12-31_0900"
    assert snapshot.timestamp == "2024-12-31T09:00:00.000Z"
    assert snapshot.commit_hash == "abc1234"
    assert snapshot.workflow_state == {
        "workflow": "feature",
        "phase": "build",
        "project": None,
        "autonomy_level": "2",
    }
    assert snapshot.pending_items == [{"id": "t1", "status": "open"}]
    assert snapshot.decisions == []
    assert [(c.hash, c.message) for c in snapshot.recent_commits] == [
        ("abc1234", "ctx: snapshot 2024-12-30_1800"),
        ("def5678", "feat: add parser"),
    ]
    assert snapshot.next_session_hint == "Resume parser work\nthen ship"
    assert result.head.last_decision.choice == "postgres"
    assert result.head.last_decision.reason == "needs concurrency"


def test_read_legacy_lines_keeps_first_separator_only() -> None:
    document = read_legacy_lines(
        "meta:\n  session_id: s\nlast_decision:\n  context: a: b\n  choice: x\n  reason: -\n"
    )

    assert document["meta"] == {"session_id": "s"}
    assert document["last_decision"] == {"context": "a: b", "choice": "x", "reason": "-"}


def test_disk_only_when_git_is_missing(home: Path, clock: Clock) -> None:
    store = _store(None, home, clock)

    outcome = store.snapshot()
    decided = store.decide("api", "rest", None)

    assert not outcome.mirror.ok and outcome.path.exists()
    assert not decided.mirror.ok and decided.path.exists()
    assert outcome.snapshot.branch == "unknown"
    assert store.restore().source == "disk"


@requires_git
def test_decide_writes_file_head_and_session_state(
    store: ContextLogStore, repo: Path, home: Path
) -> None:
    _write_state(home, design_decisions=[])

    outcome = store.decide("  Database choice ", "postgres", "")

    decision = outcome.decision
    assert decision.context == "Database choice"
    assert decision.reason == "not specified"
    assert decision.commit_hash == git(repo, "rev-parse", "--short", "HEAD")
    assert outcome.path.name == "2025-03-14_092653_database-choice.json"
    head = json.loads(store.head_path.read_text(encoding="utf-8"))
    assert head["last_decision"]["choice"] == "postgres"
    assert len(head["recent_decisions"]) == 1
    assert git(repo, "log", "-1", "--format=%s", "ctx/log") == "ctx: Database choice -> postgres"
    state = json.loads((home / ".session_state.json").read_text(encoding="utf-8"))
    assert state["design_decisions"][0]["decision"] == "postgres"
    assert state["design_decisions"][0]["git_commit"] == decision.commit_hash


@requires_git
def test_decide_keeps_snapshot_and_snapshot_keeps_decisions(store: ContextLogStore) -> None:
    store.snapshot()
    store.decide("queue", "sqs", "managed")
    store.decide("queue", "rabbitmq", "on-prem")
    outcome = store.snapshot()

    head = store.restore().head
    assert head.snapshot.session_id == outcome.snapshot.session_id
    assert [d.choice for d in head.recent_decisions] == ["sqs", "rabbitmq"]
    assert head.last_decision.choice == "rabbitmq"


@pytest.mark.parametrize("context, choice", [("", "x"), ("x", ""), ("   ", "x")])
def test_decide_requires_context_and_choice(home: Path, clock: Clock, context: str, choice: str) -> None:
    store = _store(None, home, clock)

    with pytest.raises(InvalidArgument):
        store.decide(context, choice)
    assert not store.decisions_dir.exists() or list(store.decisions_dir.iterdir()) == []


@requires_git
def test_recover_latest_and_by_id(store: ContextLogStore, clock: Clock) -> None:
    first = store.snapshot()
    clock.advance(seconds=1)
    second = store.snapshot()

    latest = store.recover("latest")
    named = store.recover(first.snapshot.session_id)

    assert latest.session_id == second.snapshot.session_id and latest.source == "disk"
    assert named.snapshot.session_id == first.snapshot.session_id
    assert store.recover("2000-01-01_000000") is None


@requires_git
def test_recover_from_branch_after_disk_loss(store: ContextLogStore, clock: Clock) -> None:
    first = store.snapshot()
    clock.advance(seconds=1)
    second = store.snapshot()
    for path in store.sessions_dir.iterdir():
        path.unlink()

    named = store.recover(first.snapshot.session_id)
    latest = store.recover()

    assert named.source == "branch"
    assert named.snapshot == first.snapshot
    assert latest.session_id == second.snapshot.session_id and latest.source == "branch"


@pytest.mark.parametrize("session_id", ["../HEAD", "a/b", "x y", "..hidden"])
def test_recover_rejects_unsafe_ids(home: Path, clock: Clock, session_id: str) -> None:
    with pytest.raises(InvalidArgument):
        _store(None, home, clock).recover(session_id)


@requires_git
def test_search_covers_files_and_commit_subjects(store: ContextLogStore, repo: Path) -> None:
    store.decide("Caching layer", "Redis", "latency")
    (repo / "notes.txt").write_text("n\n", encoding="utf-8")
    git(repo, "add", "notes.txt")
    git(repo, "commit", "-q", "-m", "ctx: redis rollout notes")

    hits = store.search("REDIS")

    sources = {hit.source for hit in hits}
    assert sources == {"decision", "branch", "primary"}
    decision_hit = next(hit for hit in hits if hit.source == "decision")
    assert decision_hit.name.startswith("decisions/")
    assert 0 < len(decision_hit.lines) <= 3
    assert all("redis" in line.lower() for line in decision_hit.lines)
    assert store.search("nothing-matches-this") == []


def test_search_skips_undecodable_files(
    home: Path, clock: Clock, caplog: pytest.LogCaptureFixture
) -> None:
    store = _store(None, home, clock)
    store.snapshot()
    (store.decisions_dir / "bad.json").write_bytes(b"\xff\xfe garbage")

    with caplog.at_level(logging.WARNING):
        hits = store.search("session_id")

    assert [hit.source for hit in hits] == ["session"]
    assert any(getattr(record, "event", None) == "corruption_recovered" for record in caplog.records)


def test_search_requires_keyword(home: Path, clock: Clock) -> None:
    with pytest.raises(InvalidArgument):
        _store(None, home, clock).search("  ")


@requires_git
def test_timeline_orders_oldest_first_and_limits(
    store: ContextLogStore, home: Path, clock: Clock
) -> None:
    ids = []
    for phase in ("plan", "build", "ship"):
        _write_state(home, current={"workflow": "wf", "phase": phase})
        ids.append(store.snapshot().snapshot.session_id)
        clock.advance(seconds=1)

    entries = store.timeline(2)

    assert [entry.session_id for entry in entries] == ids[1:]
    assert [entry.phase for entry in entries] == ["build", "ship"]
    assert all(entry.source == "disk" for entry in entries)


@requires_git
def test_timeline_falls_back_to_branch_subjects(store: ContextLogStore, clock: Clock) -> None:
    ids = []
    for _ in range(3):
        ids.append(store.snapshot().snapshot.session_id)
        clock.advance(seconds=1)
    for path in store.sessions_dir.iterdir():
        path.unlink()

    entries = store.timeline(10)

    assert [entry.session_id for entry in entries] == ids
    assert {entry.source for entry in entries} == {"branch"}


def test_timeline_rejects_non_positive_limit(home: Path, clock: Clock) -> None:
    with pytest.raises(InvalidArgument):
        _store(None, home, clock).timeline(0)


@requires_git
def test_prune_removes_old_disk_entries_only(store: ContextLogStore, clock: Clock) -> None:
    old = store.snapshot()
    decided = store.decide("old", "choice")
    stale = (FIXED - timedelta(days=45)).timestamp()
    os.utime(old.path, (stale, stale))
    os.utime(decided.path, (stale, stale))
    clock.advance(seconds=1)
    fresh = store.snapshot()

    removed = store.prune(30)

    assert removed == 2
    assert not old.path.exists() and not decided.path.exists()
    assert fresh.path.exists()
    recovered = store.recover(old.snapshot.session_id)
    assert recovered is not None and recovered.source == "branch"


def test_prune_rejects_negative_days(home: Path, clock: Clock) -> None:
    with pytest.raises(InvalidArgument):
        _store(None, home, clock).prune(-1)


@requires_git
def test_latest_session_orders_numeric_suffixes(store: ContextLogStore) -> None:
    for _ in range(11):
        store.snapshot()

    latest = store.recover("latest")

    assert latest.session_id == "2025-03-14_092653-10"
