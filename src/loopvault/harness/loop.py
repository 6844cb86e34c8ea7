"""Checkpoint/rollback loop harness with a retry circuit breaker.

The harness brackets each attempt of a generate -> verify cycle:

    init -> checkpoint -> (external work) -> verify
         -> success                       (pass)
         -> rollback -> next -> checkpoint (fail, attempt + 1)

``loop-start-<id>`` marks the commit the loop started from and every rollback
returns there. ``attempt-<id>-<n>`` tags record where each attempt began. When
``next`` would exceed ``maxRetries`` the loop fails terminally and leaves the
lock file and tags in place for a human to inspect.

State-changing git calls raise :class:`~loopvault.git.runner.GitCommandError`,
which carries the failing command and its stderr.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..errors import CircuitBreakerTripped, InvalidArgument, PreconditionFailure, VerificationFailed
from ..git.runner import GitRunner
from ..storage.files import safe_read_json
from ..storage.lock import LoopStateStore
from ..storage.models import AttemptRecord, LoopState, VerificationResult

logger = logging.getLogger(__name__)


def default_lock_path(runner: GitRunner, project_root: Path) -> Path:
    """Place the lock inside the git directory, out of reach of reset and clean."""

    git_dir = runner.output("rev-parse", "--absolute-git-dir")
    if git_dir:
        return Path(git_dir) / "loopvault" / "loop.lock"
    return Path(project_root) / ".loopvault" / "loop.lock"


class LoopHarness:
    def __init__(
        self,
        runner: GitRunner,
        store: LoopStateStore,
        *,
        verify_result_path: Path,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.runner = runner
        self.store = store
        self.verify_result_path = Path(verify_result_path)
        self._clock = clock or time.time

    def _require_state(self) -> LoopState:
        state = self.store.load()
        if state is not None:
            return state
        if self.store.exists():
            raise PreconditionFailure("Loop state file is unreadable; run 'loopvault loop abort' to clean up.")
        raise PreconditionFailure("No active loop.")

    def status(self) -> LoopState | None:
        return self.store.load()

    def init(self, max_retries: int = 3, max_cost: float = 2.0) -> LoopState:
        """Start a loop on a clean working tree and tag the starting commit."""

        if max_retries < 1:
            raise InvalidArgument("maxRetries must be >= 1")
        if max_cost < 0:
            raise InvalidArgument("maxCost must be >= 0")

        if not self.runner.run("rev-parse", "--is-inside-work-tree").ok:
            raise PreconditionFailure("Not a git repository. The harness requires git.")
        status = self.runner.run("status", "--porcelain")
        if not status.ok:
            raise PreconditionFailure(f"Could not read working tree status: {status.stderr.strip()}")
        if status.stdout.strip():
            raise PreconditionFailure(
                "Dirty working directory detected. Commit or stash your changes before starting the loop."
            )
        if self.store.exists():
            existing = self.store.load()
            loop_id = existing.id if existing is not None else "unknown"
            raise PreconditionFailure(
                f"Existing lock file found. Previous loop (ID: {loop_id}) did not finish correctly. "
                "Run 'loopvault loop abort' to clean up."
            )
        if not self.runner.run("rev-parse", "--verify", "--quiet", "HEAD").ok:
            raise PreconditionFailure("Repository has no commits to checkpoint.")

        millis = int(self._clock() * 1000)
        state = LoopState(
            id=str(millis),
            attempt=1,
            max_retries=max_retries,
            max_cost=max_cost,
            start_time=millis,
        )
        self.runner.check("tag", state.start_tag)
        try:
            self.store.save(state)
        except OSError:
            self.runner.run("tag", "-d", state.start_tag)
            raise
        logger.info(
            "Loop initialized",
            extra={"loop_id": state.id, "tag": state.start_tag, "max_retries": max_retries},
        )
        return state

    def checkpoint(self) -> str:
        """Tag the current commit for this attempt; an existing tag is kept."""

        state = self._require_state()
        tag = state.attempt_tag()
        if self.runner.run("rev-parse", "--verify", "--quiet", f"refs/tags/{tag}").ok:
            logger.info("Checkpoint already exists", extra={"tag": tag})
            return tag
        self.runner.check("tag", tag)
        logger.info("Checkpoint created", extra={"tag": tag})
        return tag

    def read_verification(self) -> VerificationResult | None:
        data = safe_read_json(self.verify_result_path)
        if data is None:
            return None
        try:
            return VerificationResult.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "Verification result is malformed",
                extra={"path": str(self.verify_result_path), "error": str(exc)},
            )
            return None

    def verify(self) -> VerificationResult:
        """Return the passing verification result or raise :class:`VerificationFailed`."""

        self._require_state()
        result = self.read_verification()
        if result is None:
            raise VerificationFailed("Verification result missing or corrupted.")
        if not result.success:
            raise VerificationFailed(f"Verification failed: {result.error or 'Unknown'}")
        logger.info("Verification passed")
        return result

    def rollback(self) -> str:
        """Hard-reset to the loop start and delete untracked files."""

        state = self._require_state()
        target = state.start_tag
        logger.info("Rolling back", extra={"tag": target})
        self.runner.check("reset", "--hard", target)
        self.runner.check("clean", "-fd")
        return target

    def next(self) -> LoopState:
        """Record the last verification and advance to the next attempt."""

        state = self._require_state()
        result = self.read_verification()
        if result is not None:
            state.history.append(AttemptRecord(attempt=state.attempt, result=result))
        state.attempt += 1
        if state.attempt > state.max_retries:
            logger.error(
                "Max retries exceeded; lock and tags left for inspection",
                extra={"loop_id": state.id, "max_retries": state.max_retries},
            )
            raise CircuitBreakerTripped(
                f"Max retries exceeded ({state.max_retries}). Loop {state.id} failed; "
                "lock file and tags were left for inspection."
            )
        self.store.save(state)
        logger.info(
            "Advancing attempt",
            extra={"loop_id": state.id, "attempt": state.attempt, "max_retries": state.max_retries},
        )
        return state

    def success(self) -> list[str]:
        """Delete every tag of the active loop, then release the lock."""

        if not self.store.exists():
            logger.info("No active loop to clean")
            return []
        state = self._require_state()
        listed = self.runner.check("tag", "--list", state.start_tag, f"attempt-{state.id}-*")
        tags = [line.strip() for line in listed.stdout.splitlines() if line.strip()]
        for tag in tags:
            self.runner.check("tag", "-d", tag)
        self.store.delete()
        logger.info("Loop succeeded; harness released", extra={"loop_id": state.id, "tags": tags})
        return tags

    def abort(self) -> bool:
        """Remove the lock only; tags and the working tree are left untouched."""

        removed = self.store.delete()
        if removed:
            logger.warning("Loop aborted; lock removed, reset git manually if needed")
        else:
            logger.info("No active loop found")
        return removed


__all__ = ["LoopHarness", "default_lock_path"]
