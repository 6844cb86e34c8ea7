"""Git CLI plumbing used as the only durable-write primitive."""

from .objects import CommitOutcome, ObjectWriter
from .runner import (
    FakeGitRunner,
    GitCommandError,
    GitExecutionResult,
    GitNotFoundError,
    GitRunner,
    GitRunnerError,
)

__all__ = [
    "CommitOutcome",
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
    "ObjectWriter",
]
