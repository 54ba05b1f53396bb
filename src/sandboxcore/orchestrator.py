# src/sandboxcore/orchestrator.py
"""
Sandbox lifecycle orchestration.

``get_or_create_sandbox`` drives a sandbox through::

    no-session -> provisioning -> booting(provisioning-done) -> running

Resuming an existing id skips the provisioning emission and the one-time
setup. Every failure propagates to the caller, which owns any retry of
the whole call.

Usage:
    >>> registry = ProviderRegistry(Environment.PROD, config)
    >>> orchestrator = SandboxOrchestrator(registry, DaemonBundle.load(config.daemon))
    >>> session = await orchestrator.get_or_create_sandbox(None, options)
"""

import logging
import time
from typing import Awaitable, Callable

from .base import (
    BootingSubstatus,
    CommitAndPushResult,
    CreateSandboxOptions,
    SandboxProviderKind,
    SandboxSession,
    SandboxStatus,
    StatusUpdate,
)
from .config import SandboxSystemConfig
from .daemon import DaemonBundle, DaemonClient
from .git_ops import git_commit_and_push_branch, git_diff
from .logging_config import log_display
from .registry import ProviderRegistry
from .setup_pipeline import setup_sandbox_every_time, setup_sandbox_one_time

logger = logging.getLogger(__name__)


class SandboxOrchestrator:
    """
    Creates or resumes sandboxes and runs the setup pipeline on them.

    Attributes:
        registry: Provider registry (carries the environment gate)
        daemon_bundle: Daemon scripts; daemon steps are skipped when None
        config: System configuration
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        daemon_bundle: DaemonBundle | None = None,
        config: SandboxSystemConfig | None = None,
    ):
        self.registry = registry
        self.daemon_bundle = daemon_bundle
        self.config = config or registry.config

    def _daemon_for(self, session: SandboxSession) -> DaemonClient | None:
        if self.daemon_bundle is None:
            return None
        return DaemonClient(session, self.daemon_bundle, self.config.daemon)

    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions
    ) -> SandboxSession:
        """
        Resume ``sandbox_id`` or create a new sandbox, then set it up.

        Args:
            sandbox_id: Existing sandbox to resume, or None to create one
            options: Sandbox request

        Returns:
            A ready SandboxSession

        Raises:
            SandboxAccessDenied: If the provider is not allowed here
            SandboxNotFoundError: If ``sandbox_id`` cannot be resumed
            SandboxError: If provisioning or setup fails
        """
        kind = options.sandbox_provider.value
        provider = self.registry.get_provider(options.sandbox_provider)
        is_creating = not sandbox_id
        start_time = time.time()

        if is_creating:
            logger.info(f"[{kind}] Creating new sandbox for {options.github_repo_full_name}...")
            await options.on_status_update(
                StatusUpdate(
                    sandbox_id=None,
                    sandbox_status=SandboxStatus.PROVISIONING,
                    booting_status=BootingSubstatus.PROVISIONING,
                )
            )
        else:
            logger.info(f"[{kind}] Resuming sandbox {sandbox_id}...")

        session = await provider.get_or_create_sandbox(sandbox_id, options)

        if is_creating:
            await options.on_status_update(
                StatusUpdate(
                    sandbox_id=session.sandbox_id,
                    sandbox_status=SandboxStatus.BOOTING,
                    booting_status=BootingSubstatus.PROVISIONING_DONE,
                )
            )

        logger.debug(f"[{kind}] Every-time setup for {session.sandbox_id}")
        await setup_sandbox_every_time(
            session,
            options,
            is_creating_sandbox=is_creating,
            daemon=self._daemon_for(session),
        )
        if is_creating:
            logger.debug(f"[{kind}] One-time setup for {session.sandbox_id}")
            await setup_sandbox_one_time(session, options)

        duration_ms = int((time.time() - start_time) * 1000)
        verb = "Created" if is_creating else "Resumed"
        log_display(
            logger, logging.INFO, f"[{kind}] {verb} sandbox {session.sandbox_id} in {duration_ms}ms"
        )

        await options.on_status_update(
            StatusUpdate(
                sandbox_id=session.sandbox_id,
                sandbox_status=SandboxStatus.RUNNING,
                booting_status=None,
            )
        )
        return session

    async def get_sandbox_or_none(
        self, provider: SandboxProviderKind | str, sandbox_id: str
    ) -> SandboxSession | None:
        return await self.registry.get_provider(provider).get_sandbox_or_none(sandbox_id)

    async def hibernate_sandbox(self, provider: SandboxProviderKind | str, sandbox_id: str) -> None:
        await self.registry.get_provider(provider).hibernate_by_id(sandbox_id)

    async def extend_sandbox_life(self, provider: SandboxProviderKind | str, sandbox_id: str) -> None:
        await self.registry.get_provider(provider).extend_life(sandbox_id)

    async def commit_and_push(
        self,
        session: SandboxSession,
        generate_commit_message: Callable[[str], Awaitable[str]],
        base_branch: str | None = None,
        repo_root: str | None = None,
    ) -> CommitAndPushResult:
        """Commit and push with the bot identity, cutoff and fsck setting from ``config.git``."""
        git = self.config.git
        return await git_commit_and_push_branch(
            session,
            git.github_app_name,
            generate_commit_message,
            base_branch=base_branch,
            repo_root=repo_root,
            enable_integrity_checks=git.integrity_checks,
            character_cutoff=git.diff_cutoff,
        )

    async def diff(
        self,
        session: SandboxSession,
        base_branch: str | None = None,
        output_file: str = "git-diff.patch",
        repo_root: str | None = None,
    ) -> str:
        return await git_diff(
            session,
            base_branch=base_branch,
            output_file=output_file,
            repo_root=repo_root,
            character_cutoff=self.config.git.diff_cutoff,
        )


async def get_or_create_sandbox(
    sandbox_id: str | None,
    options: CreateSandboxOptions,
    registry: ProviderRegistry,
    daemon_bundle: DaemonBundle | None = None,
) -> SandboxSession:
    """Convenience wrapper around ``SandboxOrchestrator.get_or_create_sandbox``."""
    orchestrator = SandboxOrchestrator(registry, daemon_bundle)
    return await orchestrator.get_or_create_sandbox(sandbox_id, options)
