"""Blocking runner for the git CLI with a host-enforced timeout."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from .utils import format_command, sanitize_environment

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitRunnerError):
    """Raised when a git command exits non-zero or times out."""

    def __init__(self, result: "GitExecutionResult") -> None:
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"Git command failed: {result.command}\n{detail}")


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    env: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def command(self) -> str:
        return format_command(self.args, self.env)


class GitRunner:
    """Execute git commands synchronously inside one repository."""

    def __init__(
        self,
        cwd: Path,
        *,
        executable: Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.cwd = Path(cwd)
        self.timeout = timeout
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"Git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("Git executable not found on PATH")
        return Path(binary)

    def run(
        self,
        *args: str,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> GitExecutionResult:
        """Run git with ``args`` and return the result without raising on failure."""

        return self._invoke(args, env=dict(env or {}), input=input)

    def check(
        self,
        *args: str,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> GitExecutionResult:
        """Run git and raise :class:`GitCommandError` unless it succeeds."""

        result = self.run(*args, env=env, input=input)
        if not result.ok:
            raise GitCommandError(result)
        return result

    def output(self, *args: str, env: Mapping[str, str] | None = None) -> str:
        """Return stripped stdout, or an empty string when the command fails."""

        result = self.run(*args, env=env)
        if not result.ok:
            logger.debug(
                "git read failed",
                extra={"command": result.command, "stderr": result.stderr.strip()},
            )
            return ""
        return result.stdout.strip()

    def _invoke(
        self,
        args: Iterable[str],
        *,
        env: dict[str, str],
        input: str | None,
    ) -> GitExecutionResult:
        argv = (str(self._executable_path), *args)
        display = ("git", *args)
        if not self.cwd.is_dir():
            return GitExecutionResult(
                args=display,
                returncode=128,
                stdout="",
                stderr=f"working directory does not exist: {self.cwd}",
                env=env,
            )
        try:
            process = subprocess.run(
                argv,
                cwd=self.cwd,
                input=input,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                env=sanitize_environment(env),
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "git command timed out",
                extra={"command": format_command(display, env), "timeout": self.timeout},
            )
            return GitExecutionResult(
                args=display,
                returncode=-1,
                stdout="",
                stderr=f"timed out after {self.timeout}s",
                timed_out=True,
                env=env,
            )
        except FileNotFoundError as exc:
            raise GitNotFoundError(f"Git executable disappeared: {self._executable_path}") from exc
        return GitExecutionResult(
            args=display,
            returncode=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
            env=env,
        )


class FakeGitRunner(GitRunner):
    """Test double that records invocations and replays canned results."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[GitExecutionResult] | None = None,
        *,
        cwd: Path = Path("."),
    ) -> None:
        self.cwd = Path(cwd)
        self.timeout = DEFAULT_TIMEOUT
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/usr/bin/git")

    def _invoke(  # type: ignore[override]
        self,
        args: Iterable[str],
        *,
        env: dict[str, str],
        input: str | None,
    ) -> GitExecutionResult:
        args = tuple(args)
        self._invocations.append(args)
        if self._responses:
            return self._responses.pop(0)
        return GitExecutionResult(args=("git", *args), returncode=0, stdout="", stderr="", env=env)

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
]
