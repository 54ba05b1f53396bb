# src/sandboxcore/base.py
"""
Abstract base classes and core data models for sandbox providers.

This module defines the contract every backend (container, micro-VM,
workspace, mock) implements, plus the immutable request/result types that
flow between the orchestrator, the setup pipeline and the git operations.

CRITICAL INVARIANT:
    All file and command operations on a SandboxSession are relative to
    its repository directory unless an explicit ``cwd`` is given.

Classes:
    SandboxProviderKind: Enum of backend kinds
    Environment: Deployment environment used for provider gating
    SandboxStatus: Lifecycle tag persisted by the caller
    BootingSubstatus: Finer-grained phase while booting
    CreateSandboxOptions: Immutable request describing the desired sandbox
    PushResult: Tagged result of the push-with-rebase protocol
    GitDiffStats: Parsed ``git diff --shortstat`` output
    SandboxSession: Abstract contract for one running sandbox
    SandboxProvider: Abstract contract for creating/resuming sandboxes
"""

import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

OutputCallback = Callable[[str], None]


class SandboxProviderKind(str, Enum):
    """Backend kind selecting a ProviderAdapter."""

    CONTAINER = "container"
    MICROVM = "microvm"
    WORKSPACE = "workspace"
    MOCK = "mock"


class Environment(str, Enum):
    """
    Deployment environment the registry is running in.

    PROD: Only cloud backends may be constructed
    DEV: All backends, including local container and mock
    TEST: All backends, including local container and mock
    """

    PROD = "prod"
    DEV = "dev"
    TEST = "test"


class SandboxStatus(str, Enum):
    """
    Lifecycle status of a sandbox as persisted by the caller.

    Values are stored in external records; never remove one.
    """

    UNKNOWN = "unknown"
    PROVISIONING = "provisioning"
    BOOTING = "booting"
    RUNNING = "running"
    PAUSED = "paused"
    KILLED = "killed"


class BootingSubstatus(str, Enum):
    """Phase reported while the sandbox status is ``booting``."""

    PROVISIONING = "provisioning"
    PROVISIONING_DONE = "provisioning-done"
    CLONING_REPO = "cloning-repo"
    INSTALLING_AGENT = "installing-agent"
    INSTALLING_SANDBOX_SCRIPTS = "installing-sandbox-scripts"
    RUNNING_SETUP_SCRIPT = "running-setup-script"
    BOOTING_DONE = "booting-done"


class SandboxSize(str, Enum):
    """Size class mapped to a provider template/snapshot by configuration."""

    SMALL = "small"
    LARGE = "large"


class AgentKind(str, Enum):
    """Coding agent that will run inside the sandbox."""

    CLAUDE_CODE = "claudeCode"
    CODEX = "codex"
    AMP = "amp"
    GEMINI = "gemini"
    OPENCODE = "opencode"


class PushErrorCode(str, Enum):
    """Failure category of a push attempt."""

    CONFLICT = "CONFLICT"
    REJECTED = "REJECTED"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class EnvironmentVariable:
    """A user-supplied environment variable."""

    key: str
    value: str


@dataclass(frozen=True)
class AgentCredentials:
    """
    Credentials for the coding agent.

    Only ``env-var`` credentials affect the sandbox environment; other
    types (for example OAuth token files) are handled by agent installers.
    """

    type: str
    contents: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusUpdate:
    """Payload delivered to ``CreateSandboxOptions.on_status_update``."""

    sandbox_id: str | None
    sandbox_status: SandboxStatus
    booting_status: BootingSubstatus | None


async def _no_branch_name(thread_name: str | None) -> str | None:
    return None


async def _ignore_status(update: StatusUpdate) -> None:
    return None


@dataclass(frozen=True)
class CreateSandboxOptions:
    """
    Immutable request describing the desired sandbox.

    Attributes:
        github_repo_full_name: ``owner/repo`` to clone
        repo_base_branch_name: Branch to clone; empty means the remote default
        github_access_token: Token exported as ``GH_TOKEN``
        sandbox_provider: Backend kind to use
        sandbox_size: Size class for the template/snapshot lookup
        create_new_branch: Whether to create a working branch after cloning
        branch_name: Explicit working branch name (skips generation)
        environment_variables: User environment variables
        mcp_config: Validated user MCP config (``{"mcpServers": {...}}``)
        agent: Agent kind, drives which config files are written
        agent_credentials: Agent credentials, ``env-var`` types are exported
        auto_update_daemon: Rewrite and restart an outdated daemon on resume
        custom_system_prompt: Written to the agent's instructions file
        skip_setup_script: Do not run any setup script
        setup_script: Environment-level setup script overriding the repo one
        fast_resume: Hint for callers that resume latency matters
        public_url: Base URL of the web app (model proxy for codex)
        feature_flags: Serialized into the daemon environment
        generate_branch_name: Async callback ``thread_name -> name | None``
        on_status_update: Async callback invoked at each lifecycle transition

    Example:
        >>> options = CreateSandboxOptions(
        ...     github_repo_full_name="owner/repo",
        ...     github_access_token="ghs_xxx",
        ...     sandbox_provider=SandboxProviderKind.MICROVM,
        ... )
    """

    github_repo_full_name: str
    github_access_token: str
    sandbox_provider: SandboxProviderKind = SandboxProviderKind.MICROVM
    repo_base_branch_name: str = "main"
    thread_name: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    sandbox_size: SandboxSize = SandboxSize.SMALL
    create_new_branch: bool = True
    branch_name: str | None = None
    environment_variables: tuple[EnvironmentVariable, ...] = ()
    mcp_config: Mapping[str, Any] | None = None
    agent: AgentKind | None = None
    agent_credentials: AgentCredentials | None = None
    auto_update_daemon: bool = False
    custom_system_prompt: str | None = None
    skip_setup_script: bool = False
    setup_script: str | None = None
    fast_resume: bool = False
    public_url: str = ""
    feature_flags: Mapping[str, Any] = field(default_factory=dict)
    generate_branch_name: Callable[[str | None], Awaitable[str | None]] = _no_branch_name
    on_status_update: Callable[[StatusUpdate], Awaitable[None]] = _ignore_status

    def __post_init__(self):
        """Normalize list-typed inputs so the options stay hashable/immutable."""
        if not isinstance(self.environment_variables, tuple):
            object.__setattr__(self, "environment_variables", tuple(self.environment_variables))
        if isinstance(self.sandbox_provider, str) and not isinstance(
            self.sandbox_provider, SandboxProviderKind
        ):
            object.__setattr__(self, "sandbox_provider", SandboxProviderKind(self.sandbox_provider))
        if not isinstance(self.sandbox_size, SandboxSize):
            object.__setattr__(self, "sandbox_size", SandboxSize(self.sandbox_size))
        if self.agent is not None and not isinstance(self.agent, AgentKind):
            object.__setattr__(self, "agent", AgentKind(self.agent))

    def env_dict(self) -> dict[str, str]:
        """Return the user environment variables as a dict (later keys win)."""
        return {var.key: var.value for var in self.environment_variables}


@dataclass(frozen=True)
class PushResult:
    """
    Result of the push-with-rebase protocol.

    Push failure is an expected outcome, so it is returned rather than
    raised. ``error`` is set whenever ``success`` is False.
    """

    success: bool
    message: str
    did_update: bool | None = None
    error: PushErrorCode | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        result: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.did_update is not None:
            result["didUpdate"] = self.did_update
        if self.error is not None:
            result["error"] = self.error.value
        return result


@dataclass(frozen=True)
class GitDiffStats:
    """Counts parsed from ``git diff --shortstat``; zero when nothing changed."""

    files: int = 0
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class CommitAndPushResult:
    """Outcome of commit-and-push: exactly one field is set."""

    branch_name: str | None = None
    error_message: str | None = None


class SandboxSession(ABC):
    """
    Uniform contract for one running sandbox.

    A session is created by a SandboxProvider on create or resume and is
    bound to a single ``sandbox_id``. Hibernating and later resuming
    produces a new session value for the same id.

    Concurrent calls on one session are allowed; the caller owns ordering
    (git porcelain is not safe for concurrent mutation of one work tree).
    """

    @property
    @abstractmethod
    def sandbox_id(self) -> str:
        """Provider-assigned sandbox identifier."""

    @property
    @abstractmethod
    def sandbox_provider(self) -> SandboxProviderKind:
        """Backend kind of this session."""

    @property
    def home_dir(self) -> str:
        """Home directory as a path segment under the filesystem root."""
        return "root"

    @property
    def repo_dir(self) -> str:
        """Repository directory as a path segment under the home directory."""
        return "repo"

    @property
    def home_path(self) -> str:
        """Absolute home directory path."""
        return posixpath.join("/", self.home_dir)

    @property
    def repo_path(self) -> str:
        """Absolute repository directory path."""
        return posixpath.join(self.home_path, self.repo_dir)

    def resolve_cwd(self, cwd: str | None) -> str:
        """
        Resolve a command working directory.

        Absolute paths are kept, relative paths are taken from the home
        directory, and no cwd means the repository directory.
        """
        if not cwd:
            return self.repo_path
        if cwd.startswith("/"):
            return cwd
        return posixpath.normpath(posixpath.join(self.home_path, cwd))

    def resolve_path(self, path: str) -> str:
        """Resolve a file path; relative paths are taken from the repository."""
        if path.startswith("/"):
            return path
        return posixpath.normpath(posixpath.join(self.repo_path, path))

    @abstractmethod
    async def run_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> str:
        """
        Run a command and block until it exits.

        Args:
            command: Shell command line
            env: Extra environment variables for this command
            cwd: Working directory (see ``resolve_cwd``)
            timeout_ms: Provider-enforced timeout in milliseconds
            on_stdout: Called with each stdout chunk as it arrives
            on_stderr: Called with each stderr chunk as it arrives

        Returns:
            Captured stdout

        Raises:
            SandboxTimeoutError: If the timeout elapsed
            SandboxExecutionError: If the command exited non-zero
        """

    @abstractmethod
    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        """
        Dispatch a command without waiting for it to finish.

        Merged stdout/stderr chunks are delivered to ``on_output`` until
        the process ends or the timeout elapses. The process may outlive
        the timeout inside the sandbox.
        """

    @abstractmethod
    async def read_text_file(self, path: str) -> str:
        """Read a UTF-8 text file from the sandbox."""

    @abstractmethod
    async def write_text_file(self, path: str, content: str) -> None:
        """Write a UTF-8 text file to the sandbox, creating parent dirs."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes) -> None:
        """Write a binary file to the sandbox, creating parent dirs."""

    @abstractmethod
    async def hibernate(self) -> None:
        """Suspend the sandbox so it can be resumed later."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Destroy the sandbox."""

    def get_info(self) -> dict[str, Any]:
        """Return identity information for logging."""
        return {
            "sandbox_id": self.sandbox_id,
            "provider": self.sandbox_provider.value,
            "home_dir": self.home_dir,
            "repo_dir": self.repo_dir,
        }


class SandboxProvider(ABC):
    """
    Contract for creating and resuming sandboxes of one backend kind.

    Control-plane calls (create, resume) are wrapped in a RetryPolicy by
    implementations; command execution is never retried.
    """

    kind: SandboxProviderKind

    @abstractmethod
    async def get_sandbox_or_none(self, sandbox_id: str) -> SandboxSession | None:
        """Resume a sandbox by id, returning None when it cannot be resumed."""

    @abstractmethod
    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions
    ) -> SandboxSession:
        """
        Resume ``sandbox_id`` or create a new sandbox when it is None.

        Raises:
            SandboxNotFoundError: If resuming an id that cannot be found
            SandboxInitializationError: If creation failed after retries
        """

    @abstractmethod
    async def hibernate_by_id(self, sandbox_id: str) -> None:
        """Suspend a sandbox without holding a session for it."""

    @abstractmethod
    async def extend_life(self, sandbox_id: str) -> None:
        """Push back the sandbox's idle auto-stop deadline."""
