# src/sandboxcore/__init__.py
"""
Sandbox orchestration core for coding agents.

This package provisions remote sandboxes (container, micro-VM, workspace),
prepares them for a coding agent and performs the git operations an agent
session needs, behind one provider-agnostic session contract.

Main Components:
    - SandboxSession / SandboxProvider: the backend contract
    - ProviderRegistry: backend selection with environment gating
    - SandboxOrchestrator: create/resume plus setup pipeline
    - git_ops: default branch, diff, integrity, push-with-rebase, commit-and-push
    - DaemonClient: in-sandbox agent daemon install and messaging
    - McpConfig: MCP server configuration validation and merging

Usage:
    >>> from sandboxcore import (
    ...     CreateSandboxOptions,
    ...     Environment,
    ...     ProviderRegistry,
    ...     SandboxOrchestrator,
    ... )
    >>>
    >>> registry = ProviderRegistry(Environment.PROD)
    >>> orchestrator = SandboxOrchestrator(registry)
    >>> session = await orchestrator.get_or_create_sandbox(None, options)
    >>> await session.run_command("git status")
"""

# =============================================================================
# BASE CLASSES AND DATA MODELS
# =============================================================================

from .base import (
    AgentCredentials,
    AgentKind,
    BootingSubstatus,
    CommitAndPushResult,
    CreateSandboxOptions,
    Environment,
    EnvironmentVariable,
    GitDiffStats,
    PushErrorCode,
    PushResult,
    SandboxProvider,
    SandboxProviderKind,
    SandboxSession,
    SandboxSize,
    SandboxStatus,
    StatusUpdate,
)

# =============================================================================
# EXCEPTIONS
# =============================================================================

from .exceptions import (
    GitIntegrityError,
    InvalidBranchNameError,
    McpConfigError,
    SandboxAccessDenied,
    SandboxCleanupError,
    SandboxConnectionError,
    SandboxError,
    SandboxExecutionError,
    SandboxInitializationError,
    SandboxNotFoundError,
    SandboxTimeoutError,
    SetupScriptError,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

from .config import SandboxSystemConfig, load_sandbox_config
from .retry import RetryPolicy, retry_async

# =============================================================================
# PROVIDERS AND ORCHESTRATION
# =============================================================================

from .providers import (
    DaytonaSandboxProvider,
    DockerSandboxProvider,
    E2BSandboxProvider,
    MockSandboxProvider,
)
from .registry import NON_PRODUCTION_PROVIDERS, ProviderRegistry, is_provider_allowed
from .orchestrator import SandboxOrchestrator, get_or_create_sandbox

# =============================================================================
# GIT, DAEMON, MCP
# =============================================================================

from .daemon import DaemonBundle, DaemonClient, DaemonMessage
from .git_ops import (
    get_git_default_branch,
    git_commit_and_push_branch,
    git_diff,
    git_diff_stats,
    git_push_with_rebase,
    parse_git_shortstat,
    validate_branch_name,
)
from .mcp_config import McpConfig, build_merged_mcp_config, validate_mcp_config

__version__ = "0.1.0"

__all__ = [
    # Base
    "AgentCredentials",
    "AgentKind",
    "BootingSubstatus",
    "CommitAndPushResult",
    "CreateSandboxOptions",
    "Environment",
    "EnvironmentVariable",
    "GitDiffStats",
    "PushErrorCode",
    "PushResult",
    "SandboxProvider",
    "SandboxProviderKind",
    "SandboxSession",
    "SandboxSize",
    "SandboxStatus",
    "StatusUpdate",
    # Exceptions
    "GitIntegrityError",
    "InvalidBranchNameError",
    "McpConfigError",
    "SandboxAccessDenied",
    "SandboxCleanupError",
    "SandboxConnectionError",
    "SandboxError",
    "SandboxExecutionError",
    "SandboxInitializationError",
    "SandboxNotFoundError",
    "SandboxTimeoutError",
    "SetupScriptError",
    # Configuration
    "SandboxSystemConfig",
    "load_sandbox_config",
    "RetryPolicy",
    "retry_async",
    # Providers and orchestration
    "DaytonaSandboxProvider",
    "DockerSandboxProvider",
    "E2BSandboxProvider",
    "MockSandboxProvider",
    "NON_PRODUCTION_PROVIDERS",
    "ProviderRegistry",
    "is_provider_allowed",
    "SandboxOrchestrator",
    "get_or_create_sandbox",
    # Git, daemon, MCP
    "DaemonBundle",
    "DaemonClient",
    "DaemonMessage",
    "get_git_default_branch",
    "git_commit_and_push_branch",
    "git_diff",
    "git_diff_stats",
    "git_push_with_rebase",
    "parse_git_shortstat",
    "validate_branch_name",
    "McpConfig",
    "build_merged_mcp_config",
    "validate_mcp_config",
]
