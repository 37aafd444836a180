"""
Prestage Error Hierarchy

Unified exception hierarchy for the image prestage orchestrator.
All custom exceptions inherit from PrestageError so callers can catch the
whole family, and each carries a machine-readable ``code`` that ends up in
per-host results and in the CLI outcome table.

Usage:
    from prestage.errors import IntegrityError, TransferError

    try:
        await engine.fetch(manifest.metainfo_uri, dest)
    except TransferError as e:
        job.fail(e.code, e.message)
"""

from typing import Any

__all__ = [
    "ConfigError",
    "ConflictError",
    "ConversionError",
    "DeadlineExceededError",
    "FirewallError",
    "IntegrityError",
    # Base error
    "PrestageError",
    "SSHError",
    "StartupError",
    "SwarmError",
    "TransferError",
]


class PrestageError(Exception):
    """Base exception for all prestage errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "PRESTAGE_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Swarm (seed host) Errors
# =============================================================================


class SwarmError(PrestageError):
    """Base class for seed-side swarm lifecycle errors.

    These abort the whole run before any node is dispatched.
    """
    code: str = "SWARM_ERROR"


class ConflictError(SwarmError):
    """A swarm session for this artifact is already active."""
    code: str = "CONFLICT"

    def __init__(
        self,
        message: str,
        artifact_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if artifact_id:
            self.context["artifact_id"] = artifact_id


class StartupError(SwarmError):
    """Tracker or seeder could not be started.

    Raised when a port is still bound after the reclaim attempt, or when
    a freshly spawned daemon exits right away.
    """
    code: str = "STARTUP_ERROR"

    def __init__(
        self,
        message: str,
        port: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if port is not None:
            self.context["port"] = port


# =============================================================================
# Node Errors
# =============================================================================


class TransferError(PrestageError):
    """Swarm fetch failed or stalled."""
    code: str = "TRANSFER_ERROR"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if exit_code is not None:
            self.context["exit_code"] = exit_code


class IntegrityError(PrestageError):
    """Downloaded artifact does not match the published checksum."""
    code: str = "INTEGRITY_ERROR"

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if expected:
            self.context["expected"] = expected
        if actual:
            self.context["actual"] = actual


class ConversionError(PrestageError):
    """Image format conversion or final placement failed."""
    code: str = "CONVERSION_ERROR"


class DeadlineExceededError(PrestageError):
    """Per-node or global deadline exceeded.

    Carries the ``TIMEOUT`` code used in fleet results.
    """
    code: str = "TIMEOUT"

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if timeout_seconds is not None:
            self.context["timeout_seconds"] = timeout_seconds


class FirewallError(PrestageError):
    """iptables rule could not be added or removed."""
    code: str = "FIREWALL_ERROR"


# =============================================================================
# Infrastructure / Validation Errors
# =============================================================================


class SSHError(PrestageError):
    """SSH connection or remote command execution error.

    Raised when the remote agent cannot be reached or returns no result.
    """
    code: str = "SSH_ERROR"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if host:
            self.context["host"] = host
        if exit_code is not None:
            self.context["exit_code"] = exit_code


class ConfigError(PrestageError):
    """Invalid or missing configuration / required input."""
    code: str = "CONFIG_ERROR"
