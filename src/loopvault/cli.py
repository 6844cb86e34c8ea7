"""loopvault command-line interface.

Two command groups share one entry point:

- ``loopvault ctx <command>``: context log (init, snapshot, decide, restore,
  recover, search, timeline, prune).
- ``loopvault loop <command>``: loop harness (init, checkpoint, verify, rollback,
  next, success, abort, status).

``loopvault-ctx`` and ``loopvault-loop`` are shortcuts for the two groups.
Exit status is 0 on success and 1 on precondition failure, verification failure
or unrecoverable state; the reason is printed to stderr as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

import yaml
from pydantic import ValidationError

from . import __version__
from .config import LoopVaultSettings, get_settings
from .errors import InvalidArgument, LoopVaultError
from .git import GitCommandError, GitNotFoundError, GitRunner, GitRunnerError, ObjectWriter
from .harness import LoopHarness, default_lock_path
from .storage import ContextLogStore, FileLoopStateStore, SessionStateFile

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the CLI; records go to stderr."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def load_context_store(settings: LoopVaultSettings) -> ContextLogStore:
    writer: ObjectWriter | None
    try:
        writer = ObjectWriter(
            GitRunner(settings.home, timeout=settings.git_timeout),
            branch=settings.context_branch,
        )
    except GitNotFoundError as exc:
        logger.warning("git unavailable; context log is disk only", extra={"error": str(exc)})
        writer = None
    return ContextLogStore(
        settings.context_dir,
        session_state=SessionStateFile(settings.session_state_path, settings.next_session_path),
        writer=writer,
    )


def load_harness(settings: LoopVaultSettings) -> LoopHarness:
    runner = GitRunner(settings.project_root, timeout=settings.git_timeout)
    lock_path = settings.lock_path or default_lock_path(runner, settings.project_root)
    return LoopHarness(
        runner,
        FileLoopStateStore(lock_path),
        verify_result_path=settings.resolved_verify_result_path,
    )


def _emit(payload: Any, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        print(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True).rstrip())


def _parse_int(value: str | None, default: int, name: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidArgument(f"{name} must be an integer, got {value!r}") from exc


def _parse_float(value: str | None, default: float, name: str) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise InvalidArgument(f"{name} must be a number, got {value!r}") from exc


# --- context log -------------------------------------------------------------


def cmd_ctx_init(args: argparse.Namespace) -> int:
    report = load_context_store(get_settings()).init()
    if report.mirrored:
        print(f"Context log ready at {report.context_dir} (branch {report.branch} @ {report.tip[:7]})")
    else:
        print(f"Context log ready at {report.context_dir} (disk only)")
    return 0


def cmd_ctx_snapshot(args: argparse.Namespace) -> int:
    outcome = load_context_store(get_settings()).snapshot()
    print(f"Context snapshot written: {outcome.snapshot.session_id}")
    print(f"  file: {outcome.path.name}")
    if outcome.mirror.ok:
        print(f"  commit: {outcome.mirror.commit}")
    else:
        print("  commit: none (branch mirror failed, disk copy kept)")
    return 0


def cmd_ctx_decide(args: argparse.Namespace) -> int:
    outcome = load_context_store(get_settings()).decide(args.context, args.choice, args.reason)
    print(f"Decision recorded: {outcome.decision.context} -> {outcome.decision.choice}")
    print(f"  file: {outcome.path.name}")
    if outcome.mirror.ok:
        print(f"  commit: {outcome.mirror.commit}")
    return 0


def cmd_ctx_restore(args: argparse.Namespace) -> int:
    result = load_context_store(get_settings()).restore()
    if result.head is None:
        print("No context history found. Fresh start.")
        return 0
    print(f"# restored from: {result.source}", file=sys.stderr)
    _emit(result.head.to_json_dict(), as_json=args.json)
    return 0


def cmd_ctx_recover(args: argparse.Namespace) -> int:
    recovered = load_context_store(get_settings()).recover(args.session_id)
    if recovered is None:
        print(f"Session not found: {args.session_id}", file=sys.stderr)
        return 1
    print(f"# recovered {recovered.session_id} from: {recovered.source}", file=sys.stderr)
    _emit(recovered.snapshot.to_json_dict(), as_json=args.json)
    return 0


def cmd_ctx_search(args: argparse.Namespace) -> int:
    hits = load_context_store(get_settings()).search(args.keyword)
    if args.json:
        _emit([asdict(hit) for hit in hits], as_json=True)
        return 0
    for hit in hits:
        print(f"[{hit.source}] {hit.name}")
        for line in hit.lines:
            print(f"    {line}")
    print(f"{len(hits)} result(s)")
    return 0


def cmd_ctx_timeline(args: argparse.Namespace) -> int:
    limit = _parse_int(args.count, 10, "count")
    entries = load_context_store(get_settings()).timeline(limit)
    if not entries:
        print("No history found.")
        return 0
    _emit([asdict(entry) for entry in entries], as_json=args.json)
    return 0


def cmd_ctx_prune(args: argparse.Namespace) -> int:
    days = _parse_int(args.days, 30, "days")
    removed = load_context_store(get_settings()).prune(days)
    if removed:
        print(f"Pruned {removed} entries older than {days} days (kept in the context branch)")
    else:
        print("Nothing to prune.")
    return 0


# --- loop harness ------------------------------------------------------------


def cmd_loop_init(args: argparse.Namespace) -> int:
    max_retries = _parse_int(args.max_retries, 3, "maxRetries")
    max_cost = _parse_float(args.max_cost, 2.0, "maxCost")
    state = load_harness(get_settings()).init(max_retries, max_cost)
    print(f"Loop initialized. Tagged: {state.start_tag}")
    return 0


def cmd_loop_checkpoint(args: argparse.Namespace) -> int:
    tag = load_harness(get_settings()).checkpoint()
    print(f"Checkpoint: {tag}")
    return 0


def cmd_loop_verify(args: argparse.Namespace) -> int:
    load_harness(get_settings()).verify()
    print("Verification passed.")
    return 0


def cmd_loop_rollback(args: argparse.Namespace) -> int:
    tag = load_harness(get_settings()).rollback()
    print(f"Rolled back to {tag}; clean slate restored.")
    return 0


def cmd_loop_next(args: argparse.Namespace) -> int:
    state = load_harness(get_settings()).next()
    print(f"Advancing to attempt {state.attempt}/{state.max_retries}")
    return 0


def cmd_loop_success(args: argparse.Namespace) -> int:
    tags = load_harness(get_settings()).success()
    print(f"Harness released; removed {len(tags)} tag(s).")
    return 0


def cmd_loop_abort(args: argparse.Namespace) -> int:
    if load_harness(get_settings()).abort():
        print("Lock file removed. Reset git manually if needed.")
    else:
        print("No active loop found.")
    return 0


def cmd_loop_status(args: argparse.Namespace) -> int:
    state = load_harness(get_settings()).status()
    if state is None:
        print("No active loop.")
        return 0
    _emit(state.to_json_dict(), as_json=args.json)
    return 0


def _add_ctx_commands(sub: argparse._SubParsersAction) -> None:
    p_init = sub.add_parser("init", help="Create the context log directories and branch")
    p_init.set_defaults(func=cmd_ctx_init)

    p_snapshot = sub.add_parser("snapshot", help="Record a session snapshot")
    p_snapshot.set_defaults(func=cmd_ctx_snapshot)

    p_decide = sub.add_parser("decide", help="Record a design decision")
    p_decide.add_argument("context", nargs="?")
    p_decide.add_argument("choice", nargs="?")
    p_decide.add_argument("reason", nargs="?")
    p_decide.set_defaults(func=cmd_ctx_decide)

    p_restore = sub.add_parser("restore", help="Show the most recent context")
    p_restore.add_argument("--json", action="store_true", help="Output JSON")
    p_restore.set_defaults(func=cmd_ctx_restore)

    p_recover = sub.add_parser("recover", help="Show a session snapshot by id")
    p_recover.add_argument("session_id", nargs="?", default="latest")
    p_recover.add_argument("--json", action="store_true", help="Output JSON")
    p_recover.set_defaults(func=cmd_ctx_recover)

    p_search = sub.add_parser("search", help="Search sessions, decisions and ctx commits")
    p_search.add_argument("keyword", nargs="?")
    p_search.add_argument("--json", action="store_true", help="Output JSON")
    p_search.set_defaults(func=cmd_ctx_search)

    p_timeline = sub.add_parser("timeline", help="List recent sessions")
    p_timeline.add_argument("count", nargs="?")
    p_timeline.add_argument("--json", action="store_true", help="Output JSON")
    p_timeline.set_defaults(func=cmd_ctx_timeline)

    p_prune = sub.add_parser("prune", help="Delete old disk entries (branch keeps them)")
    p_prune.add_argument("days", nargs="?")
    p_prune.set_defaults(func=cmd_ctx_prune)


def _add_loop_commands(sub: argparse._SubParsersAction) -> None:
    p_init = sub.add_parser("init", help="Start a loop on a clean working tree")
    p_init.add_argument("max_retries", nargs="?")
    p_init.add_argument("max_cost", nargs="?")
    p_init.set_defaults(func=cmd_loop_init)

    for name, func, help_text in (
        ("checkpoint", cmd_loop_checkpoint, "Tag the start of the current attempt"),
        ("verify", cmd_loop_verify, "Check the external verification result"),
        ("rollback", cmd_loop_rollback, "Reset the tree to the loop start"),
        ("next", cmd_loop_next, "Advance to the next attempt"),
        ("success", cmd_loop_success, "Delete loop tags and release the lock"),
        ("abort", cmd_loop_abort, "Release the lock, leaving tags and tree untouched"),
    ):
        sub.add_parser(name, help=help_text).set_defaults(func=func)

    p_status = sub.add_parser("status", help="Show the active loop state")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_loop_status)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loopvault", description="Git-backed context log and loop harness")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    groups = parser.add_subparsers(dest="group")

    p_ctx = groups.add_parser("ctx", help="Context log commands")
    _add_ctx_commands(p_ctx.add_subparsers(dest="cmd"))

    p_loop = groups.add_parser("loop", help="Loop harness commands")
    _add_loop_commands(p_loop.add_subparsers(dest="cmd"))

    return parser


def _fail(reason: str, message: str) -> int:
    print(json.dumps({"error": reason, "message": message}), file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on usage errors; --help and --version exit 0.
        return 0 if exc.code in (0, None) else 1
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except ValidationError as exc:
        return _fail("invalid_configuration", str(exc))
    configure_logging(settings.log_level)

    try:
        return args.func(args)
    except LoopVaultError as exc:
        return _fail(exc.reason, str(exc))
    except GitCommandError as exc:
        return _fail("subprocess_failure", str(exc))
    except GitRunnerError as exc:
        return _fail("git_unavailable", str(exc))
    except OSError as exc:
        return _fail("io_error", str(exc))


def ctx_main(argv: list[str] | None = None) -> int:
    return main(["ctx", *(sys.argv[1:] if argv is None else argv)])


def loop_main(argv: list[str] | None = None) -> int:
    return main(["loop", *(sys.argv[1:] if argv is None else argv)])


if __name__ == "__main__":
    raise SystemExit(main())
