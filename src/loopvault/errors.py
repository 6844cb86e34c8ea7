"""Error taxonomy shared by the context log, the loop harness and the CLI."""

from __future__ import annotations


class LoopVaultError(RuntimeError):
    """Base class for failures reported to the caller with a non-zero exit."""

    reason = "error"
    exit_code = 1

    def to_payload(self) -> dict[str, str]:
        return {"error": self.reason, "message": str(self)}


class PreconditionFailure(LoopVaultError):
    """Raised when the environment forbids the operation (dirty tree, lock, no repo)."""

    reason = "precondition_failure"


class InvalidArgument(LoopVaultError, ValueError):
    """Raised when a required argument is missing or malformed."""

    reason = "invalid_argument"


class VerificationFailed(LoopVaultError):
    """Raised when the verification result is negative or unreadable."""

    reason = "verification_failed"


class CircuitBreakerTripped(LoopVaultError):
    """Raised when the next attempt would exceed the configured retry ceiling."""

    reason = "circuit_breaker_tripped"


__all__ = [
    "CircuitBreakerTripped",
    "InvalidArgument",
    "LoopVaultError",
    "PreconditionFailure",
    "VerificationFailed",
]
