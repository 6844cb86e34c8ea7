"""Loop state persistence; the state file is also the harness lock."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .files import atomic_write_json, safe_read_json
from .models import LoopState

logger = logging.getLogger(__name__)


class LoopStateStore(Protocol):
    """Storage port for the harness state."""

    def exists(self) -> bool:
        ...

    def load(self) -> LoopState | None:
        ...

    def save(self, state: LoopState) -> None:
        ...

    def delete(self) -> bool:
        ...


class FileLoopStateStore:
    """Lock file backed store. Presence of the file means a loop is active."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> LoopState | None:
        data = safe_read_json(self.path)
        if data is None:
            return None
        try:
            return LoopState.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "Loop state file is invalid",
                extra={"event": "corruption_recovered", "path": str(self.path), "error": str(exc)},
            )
            return None

    def save(self, state: LoopState) -> None:
        atomic_write_json(self.path, state.to_json_dict())

    def delete(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class InMemoryLoopStateStore:
    """Test double keeping the state in memory."""

    def __init__(self, state: LoopState | None = None) -> None:
        self.state = state

    def exists(self) -> bool:
        return self.state is not None

    def load(self) -> LoopState | None:
        if self.state is None:
            return None
        return self.state.model_copy(deep=True)

    def save(self, state: LoopState) -> None:
        self.state = state.model_copy(deep=True)

    def delete(self) -> bool:
        existed = self.state is not None
        self.state = None
        return existed


__all__ = ["FileLoopStateStore", "InMemoryLoopStateStore", "LoopStateStore"]
