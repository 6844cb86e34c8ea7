"""Loop harness exports."""

from .loop import LoopHarness, default_lock_path

__all__ = ["LoopHarness", "default_lock_path"]
