"""Disk and context-branch persistence for loopvault."""

from .context_log import (
    ContextLogStore,
    DecisionOutcome,
    InitReport,
    RecoveredSession,
    SearchHit,
    SnapshotOutcome,
    TimelineEntry,
)
from .lock import FileLoopStateStore, InMemoryLoopStateStore, LoopStateStore
from .models import ContextHead, Decision, LoopState, Snapshot, VerificationResult
from .resolver import RestoreResolver, RestoreResult
from .session_state import SessionStateFile

__all__ = [
    "ContextHead",
    "ContextLogStore",
    "Decision",
    "DecisionOutcome",
    "FileLoopStateStore",
    "InMemoryLoopStateStore",
    "InitReport",
    "LoopState",
    "LoopStateStore",
    "RecoveredSession",
    "RestoreResolver",
    "RestoreResult",
    "SearchHit",
    "SessionStateFile",
    "Snapshot",
    "SnapshotOutcome",
    "TimelineEntry",
    "VerificationResult",
]
