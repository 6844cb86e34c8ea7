"""Persisted record models.

Every record carries ``schema_version``. Unknown fields are ignored and malformed
optional fields fall back to defaults so that older or newer writers never make a
read fail outright.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = 1


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    return {}


class VersionedRecord(BaseModel):
    """Base model for JSON documents written to disk or to the context branch."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION)

    @field_validator("schema_version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return SCHEMA_VERSION

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CommitSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hash: str
    message: str = ""


class Decision(VersionedRecord):
    """A single recorded design decision."""

    timestamp: str
    commit_hash: str = "unknown"
    branch: str = "unknown"
    context: str
    choice: str
    reason: str = "not specified"


class Snapshot(VersionedRecord):
    """Point-in-time capture of orchestration state."""

    session_id: str
    timestamp: str
    branch: str = "unknown"
    commit_hash: str = "unknown"
    workflow_state: dict[str, Any] = Field(default_factory=dict)
    pending_items: list[Any] = Field(default_factory=list)
    decisions: list[Any] = Field(default_factory=list)
    recent_commits: list[CommitSummary] = Field(default_factory=list)
    next_session_hint: str = ""

    @field_validator("workflow_state", mode="before")
    @classmethod
    def _ensure_dict(cls, value: Any) -> dict[str, Any]:
        return _as_dict(value)

    @field_validator("pending_items", "decisions", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any) -> list[Any]:
        return _as_list(value)

    @field_validator("recent_commits", mode="before")
    @classmethod
    def _drop_bad_commits(cls, value: Any) -> list[Any]:
        return [
            item
            for item in _as_list(value)
            if isinstance(item, CommitSummary) or (isinstance(item, dict) and "hash" in item)
        ]

    @field_validator("next_session_hint", mode="before")
    @classmethod
    def _hint_text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class ContextHead(VersionedRecord):
    """Most recently known state: the latest snapshot plus the latest decisions."""

    updated_at: str
    snapshot: Snapshot | None = None
    last_decision: Decision | None = None
    recent_decisions: list[Decision] = Field(default_factory=list)

    @field_validator("recent_decisions", mode="before")
    @classmethod
    def _ensure_decisions(cls, value: Any) -> list[Any]:
        return [
            item
            for item in _as_list(value)
            if isinstance(item, Decision)
            or (isinstance(item, dict) and {"timestamp", "context", "choice"} <= item.keys())
        ]


class VerificationResult(BaseModel):
    """Outcome written by an external test/build runner."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    error: str | None = None


class AttemptRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    attempt: int
    result: VerificationResult


class LoopState(VersionedRecord):
    """Harness bookkeeping; its file doubles as the single-writer lock."""

    id: str
    attempt: int = 1
    max_retries: int = Field(default=3, alias="maxRetries")
    max_cost: float = Field(default=2.0, alias="maxCost")
    start_time: int = Field(default=0, alias="startTime")
    history: list[AttemptRecord] = Field(default_factory=list)

    @field_validator("history", mode="before")
    @classmethod
    def _ensure_history(cls, value: Any) -> list[Any]:
        return [
            item
            for item in _as_list(value)
            if isinstance(item, AttemptRecord)
            or (isinstance(item, dict) and isinstance(item.get("result"), dict) and "attempt" in item)
        ]

    @field_validator("id", mode="before")
    @classmethod
    def _id_text(cls, value: Any) -> str:
        return str(value)

    @property
    def start_tag(self) -> str:
        return f"loop-start-{self.id}"

    def attempt_tag(self, attempt: int | None = None) -> str:
        return f"attempt-{self.id}-{self.attempt if attempt is None else attempt}"


__all__ = [
    "AttemptRecord",
    "CommitSummary",
    "ContextHead",
    "Decision",
    "LoopState",
    "SCHEMA_VERSION",
    "Snapshot",
    "VerificationResult",
    "VersionedRecord",
]
