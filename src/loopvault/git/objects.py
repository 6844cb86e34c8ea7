"""Object-level commits into a side branch.

`ObjectWriter` appends file contents to a branch using git plumbing only:
`read-tree` into a private index, `hash-object`, `update-index`, `write-tree`,
`commit-tree` and a compare-and-swap `update-ref`. The caller's checked-out
branch, index and working tree are never read or written.

A concurrent writer that advanced the branch between our `read-tree` and our
`update-ref` makes the ref update fail; the outcome is a failed commit for one of
the two writers, never a corrupted index or a rewritten tip.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .runner import GitCommandError, GitRunner, GitRunnerError
from .utils import validate_ref_name, validate_tree_path

logger = logging.getLogger(__name__)

EMPTY_TREE_MESSAGE = "ctx: initialize context log"


@dataclass(slots=True)
class CommitOutcome:
    """Result of an attempt to commit files into the side branch."""

    ok: bool
    commit: str | None = None
    changed: bool = False
    error: str | None = None


class ObjectWriter:
    """Commit named file contents into `branch` without touching the work tree."""

    def __init__(self, runner: GitRunner, *, branch: str) -> None:
        self.runner = runner
        self.branch = validate_ref_name(branch)

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}"

    def is_repository(self) -> bool:
        return self.runner.run("rev-parse", "--git-dir").ok

    def branch_tip(self) -> str | None:
        tip = self.runner.output("rev-parse", "--verify", "--quiet", f"{self.ref}^{{commit}}")
        return tip or None

    def ensure_branch(self) -> str:
        """Return the branch tip, creating an orphan empty-tree commit when missing."""

        tip = self.branch_tip()
        if tip:
            return tip

        with tempfile.TemporaryDirectory(prefix="loopvault-orphan-") as tmp:
            message_file = Path(tmp) / "COMMIT_MSG"
            message_file.write_text(EMPTY_TREE_MESSAGE + "\n", encoding="utf-8")
            tree = self.runner.check("mktree", input="").stdout.strip()
            commit = self.runner.check("commit-tree", tree, "-F", str(message_file)).stdout.strip()
        # An empty old value makes git refuse the update if the ref appeared meanwhile.
        result = self.runner.run("update-ref", self.ref, commit, "")
        if not result.ok:
            tip = self.branch_tip()
            if tip:
                return tip
            raise GitCommandError(result)
        logger.info("Created context branch", extra={"branch": self.branch, "commit": commit})
        return commit

    def commit_files(self, files: Mapping[str, str], message: str) -> CommitOutcome:
        """Commit `files` (tree path -> text) on top of the branch tip."""

        try:
            paths = {validate_tree_path(path): content for path, content in files.items()}
        except ValueError as exc:
            return CommitOutcome(ok=False, error=str(exc))

        try:
            if not self.is_repository():
                return CommitOutcome(ok=False, error=f"Not a git repository: {self.runner.cwd}")
            with tempfile.TemporaryDirectory(prefix="loopvault-index-") as tmp:
                return self._commit(paths, message, Path(tmp))
        except GitRunnerError as exc:
            return CommitOutcome(ok=False, error=str(exc))
        except OSError as exc:
            return CommitOutcome(ok=False, error=f"Temporary storage failed: {exc}")

    def _commit(self, files: Mapping[str, str], message: str, workdir: Path) -> CommitOutcome:
        parent = self.ensure_branch()
        env = {"GIT_INDEX_FILE": str(workdir / "index")}

        self.runner.check("read-tree", parent, env=env)
        for path, content in files.items():
            blob = self.runner.check("hash-object", "-w", "--stdin", input=content).stdout.strip()
            self.runner.check(
                "update-index", "--add", "--cacheinfo", f"100644,{blob},{path}", env=env
            )
        tree = self.runner.check("write-tree", env=env).stdout.strip()

        parent_tree = self.runner.output("rev-parse", f"{parent}^{{tree}}")
        if tree == parent_tree:
            return CommitOutcome(ok=True, commit=self._short(parent), changed=False)

        message_file = workdir / "COMMIT_MSG"
        message_file.write_text(message if message.endswith("\n") else message + "\n", encoding="utf-8")
        commit = self.runner.check(
            "commit-tree", tree, "-p", parent, "-F", str(message_file)
        ).stdout.strip()
        self.runner.check("update-ref", self.ref, commit, parent)
        return CommitOutcome(ok=True, commit=self._short(commit), changed=True)

    def _short(self, commit: str) -> str:
        return self.runner.output("rev-parse", "--short", commit) or commit[:7]

    def read_file(self, path: str, *, ref: str | None = None) -> str | None:
        """Return the contents of `path` at `ref` (default: the branch tip)."""

        target = ref or self.ref
        result = self.runner.run("show", f"{target}:{validate_tree_path(path)}")
        if not result.ok:
            return None
        return result.stdout

    def list_files(self, prefix: str, *, ref: str | None = None) -> list[str]:
        target = ref or self.ref
        out = self.runner.output("ls-tree", "-r", "--name-only", target, "--", validate_tree_path(prefix))
        return [line for line in out.splitlines() if line.strip()]

    def log_subjects(self, *, ref: str | None = None, limit: int | None = None) -> list[tuple[str, str]]:
        """Return ``(short hash, subject)`` pairs, newest first."""

        args = ["log", "--format=%h%x09%s"]
        if limit is not None:
            args.append(f"--max-count={int(limit)}")
        args.append(ref or self.ref)
        args.append("--")
        out = self.runner.output(*args)
        entries: list[tuple[str, str]] = []
        for line in out.splitlines():
            if not line.strip():
                continue
            commit, _, subject = line.partition("\t")
            entries.append((commit, subject))
        return entries


__all__ = ["CommitOutcome", "ObjectWriter"]
