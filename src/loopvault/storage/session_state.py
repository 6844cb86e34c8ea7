"""Access to the orchestrator's session state files.

The orchestrator owns ``.session_state.json`` (workflow, phase, tasks, decisions)
and ``NEXT_SESSION.md``. The context log only reads them, except for appending
decisions on a best-effort basis.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .files import atomic_write_json, safe_read_json
from .models import Decision

logger = logging.getLogger(__name__)


class SessionStateFile:
    def __init__(self, state_path: Path, next_session_path: Path) -> None:
        self.state_path = Path(state_path)
        self.next_session_path = Path(next_session_path)

    def read(self) -> dict[str, Any] | None:
        data = safe_read_json(self.state_path)
        return data if isinstance(data, dict) else None

    def read_next_session(self) -> str:
        try:
            return self.next_session_path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def append_decision(self, decision: Decision) -> bool:
        """Append `decision` to ``design_decisions``; never raises."""

        state = self.read()
        if state is None:
            return False
        try:
            decisions = state.get("design_decisions")
            if not isinstance(decisions, list):
                decisions = []
            decisions.append(
                {
                    "context": decision.context,
                    "decision": decision.choice,
                    "reason": decision.reason,
                    "timestamp": decision.timestamp,
                    "git_commit": decision.commit_hash,
                }
            )
            state["design_decisions"] = decisions
            state["updated_at"] = datetime.now(timezone.utc).isoformat()
            atomic_write_json(self.state_path, state)
        except OSError as exc:
            logger.warning(
                "Could not append decision to session state",
                extra={"path": str(self.state_path), "error": str(exc)},
            )
            return False
        return True


__all__ = ["SessionStateFile"]
