# src/sandboxcore/exceptions.py
"""
Sandbox-specific exceptions for the sandboxcore orchestration layer.

This module defines a hierarchy of exceptions that can occur while
provisioning sandboxes, running commands inside them, and driving git
operations through them.

Exception Hierarchy:
    SandboxError (base)
    ├── SandboxInitializationError - Failed to create/resume a sandbox
    │   └── SandboxNotFoundError - Resume target does not exist
    ├── SandboxExecutionError - Command exited with a non-zero code
    ├── SandboxTimeoutError - Command exceeded its time limit
    ├── SandboxAccessDenied - Backend not allowed in this environment
    ├── SandboxConnectionError - Control plane / docker daemon unreachable
    ├── SandboxCleanupError - Failed to release sandbox resources
    ├── InvalidBranchNameError - Branch/ref contains dangerous characters
    ├── GitIntegrityError - git fsck failed after an operation
    ├── SetupScriptError - Setup script exited non-zero
    └── McpConfigError - MCP server config failed validation

Push failures are not exceptions: see ``sandboxcore.base.PushResult``.
"""

from typing import Any


class SandboxError(Exception):
    """
    Base exception for all sandbox-related errors.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary with additional context
        sandbox_id: ID of the affected sandbox (if known)
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        sandbox_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.sandbox_id = sandbox_id

    def __str__(self) -> str:
        """Return formatted error message."""
        base_msg = self.message
        if self.sandbox_id:
            base_msg = f"[Sandbox {self.sandbox_id[:8]}] {base_msg}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_msg = f"{base_msg} ({detail_str})"
        return base_msg

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "sandbox_id": self.sandbox_id,
        }


class SandboxInitializationError(SandboxError):
    """
    Raised when sandbox creation or resumption fails.

    This can occur due to:
    - Provider SDK not installed
    - Missing API credentials
    - Control plane errors that persisted through all retry attempts

    Example:
        >>> raise SandboxInitializationError(
        ...     "DAYTONA_API_KEY is not set",
        ...     details={"provider": "workspace"}
        ... )
    """

    pass


class SandboxNotFoundError(SandboxInitializationError):
    """Raised when resuming a sandbox id the provider does not know about."""

    def __init__(self, message: str = "Sandbox not found", **kwargs):
        super().__init__(message, **kwargs)


class SandboxExecutionError(SandboxError):
    """
    Raised when a command run inside the sandbox exits with a non-zero code.

    The message always embeds the exit code and the captured output so it
    can be surfaced to a user without further formatting.

    Attributes:
        command: The command that failed
        exit_code: Exit code if available
        stdout: Standard output if available
        stderr: Standard error if available
    """

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        **kwargs,
    ):
        """
        Initialize the execution error.

        Args:
            message: Human-readable error description
            command: The command that failed
            exit_code: Exit code if available
            stdout: Standard output if available
            stderr: Standard error if available
            **kwargs: Additional arguments passed to parent
        """
        super().__init__(message, **kwargs)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @classmethod
    def from_streams(
        cls,
        command: str,
        exit_code: int | None,
        stdout: str | None,
        stderr: str | None,
        **kwargs,
    ) -> "SandboxExecutionError":
        """Build the error with the standard two-stream message layout."""
        exit_part = f" with exit code {exit_code}" if exit_code else ""
        message = (
            f"Command failed{exit_part}\n\n"
            f"stdout:\n {stdout or '(empty)'}\n"
            f"stderr:\n {stderr or '(empty)'}"
        )
        return cls(
            message, command=command, exit_code=exit_code, stdout=stdout, stderr=stderr, **kwargs
        )

    @classmethod
    def from_output(
        cls, command: str, exit_code: int | None, output: str | None, **kwargs
    ) -> "SandboxExecutionError":
        """Build the error for backends that only report merged output."""
        message = f"Command failed with exit code {exit_code}\n\noutput:\n {output or '(empty)'}"
        return cls(message, command=command, exit_code=exit_code, stdout=output, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update(
            {
                "command": self.command[:200] if self.command else None,
                "exit_code": self.exit_code,
                "stdout": self.stdout[:500] if self.stdout else None,
                "stderr": self.stderr[:500] if self.stderr else None,
            }
        )
        return result


class SandboxTimeoutError(SandboxError):
    """
    Raised when a sandbox command exceeds its time limit.

    The message has the fixed shape ``Command timed out after <N>ms`` across
    every backend so callers can tell it apart from a non-zero exit.

    Attributes:
        timeout_ms: The timeout that was exceeded, in milliseconds
        operation: Description of the operation that timed out
    """

    def __init__(
        self,
        message: str | None = None,
        timeout_ms: int | None = None,
        operation: str | None = None,
        **kwargs,
    ):
        if message is None:
            message = f"Command timed out after {timeout_ms or 0}ms"
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update({"timeout_ms": self.timeout_ms, "operation": self.operation})
        return result


class SandboxAccessDenied(SandboxError):
    """
    Raised when a policy prevents an operation.

    The registry raises this when a non-production backend (mock, local
    container) is requested in the production environment.

    Attributes:
        resource: The resource that was denied
        reason: Why access was denied
        policy: The policy that was violated
    """

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        reason: str | None = None,
        policy: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.reason = reason
        self.policy = policy

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update({"resource": self.resource, "reason": self.reason, "policy": self.policy})
        return result


class SandboxConnectionError(SandboxError):
    """
    Raised when the backend control plane cannot be reached.

    Attributes:
        host: The host that couldn't be reached
        connection_type: Type of connection (docker, e2b_api, daytona_api)
    """

    def __init__(
        self,
        message: str,
        host: str | None = None,
        connection_type: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.host = host
        self.connection_type = connection_type

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update({"host": self.host, "connection_type": self.connection_type})
        return result


class SandboxCleanupError(SandboxError):
    """
    Raised when sandbox shutdown fails.

    This is non-fatal but indicates resources may be leaked until the
    provider's own auto-delete policy reclaims them.

    Attributes:
        resources_leaked: List of resources that weren't cleaned
        partial_cleanup: Whether some cleanup succeeded
    """

    def __init__(
        self,
        message: str,
        resources_leaked: list | None = None,
        partial_cleanup: bool = False,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.resources_leaked = resources_leaked or []
        self.partial_cleanup = partial_cleanup

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update(
            {"resources_leaked": self.resources_leaked, "partial_cleanup": self.partial_cleanup}
        )
        return result


class InvalidBranchNameError(SandboxError):
    """
    Raised when a branch or ref name contains characters that are unsafe
    to interpolate into a shell command.

    Attributes:
        branch_name: The rejected name
        label: What the name was used as (branch name, upstream branch name, ...)
    """

    def __init__(self, branch_name: str, label: str = "branch name", **kwargs):
        super().__init__(f"Invalid {label}: {branch_name} (contains dangerous characters)", **kwargs)
        self.branch_name = branch_name
        self.label = label


class GitIntegrityError(SandboxError):
    """
    Raised when ``git fsck`` fails after an operation that can materialize
    blobs in a blobless clone. There is no safe recovery, so this propagates.

    Attributes:
        operation: The git operation after which the check failed
    """

    def __init__(self, operation: str, message: str | None = None, **kwargs):
        super().__init__(message or f"Git integrity check failed after {operation}", **kwargs)
        self.operation = operation


class SetupScriptError(SandboxError):
    """Raised when a repository or custom setup script fails."""

    pass


class McpConfigError(SandboxError):
    """
    Raised when a user-supplied MCP server configuration is invalid.

    The message is the single most specific validation problem, prefixed
    with its dotted path (``mcpServers.<name>.<field>: <message>``).
    """

    pass
