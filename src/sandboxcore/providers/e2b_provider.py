# src/sandboxcore/providers/e2b_provider.py
"""
Micro-VM backend using the E2B ``AsyncSandbox`` SDK.

Sandboxes are created from a template chosen by size and kept alive for
``sleep_timeout_seconds`` after the last activity. Hibernation pauses the
VM (memory and filesystem are persisted); connecting to a paused sandbox
resumes it.

Usage:
    >>> provider = E2BSandboxProvider(E2BConfig(templates={"small": "tmpl-small"}))
    >>> session = await provider.get_or_create_sandbox(None, options)
    >>> await session.run_command("ls", cwd="/")

Requirements:
    - e2b package (pip install e2b)
    - ``E2B_API_KEY`` (or the configured variable) in the environment
"""

import asyncio
import logging
import os
import time
from typing import Any, Mapping

from ..base import (
    CreateSandboxOptions,
    OutputCallback,
    SandboxProvider,
    SandboxProviderKind,
    SandboxSession,
)
from ..config import E2BConfig
from ..exceptions import (
    SandboxExecutionError,
    SandboxInitializationError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)


def _import_e2b() -> Any:
    try:
        import e2b
    except ImportError:
        raise SandboxInitializationError("e2b package not installed. Install with: pip install e2b")
    return e2b


class E2BSession(SandboxSession):
    """Session wrapping one ``e2b.AsyncSandbox``."""

    def __init__(self, sandbox: Any):
        self._sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.MICROVM

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
        Run a command as root and wait for it.

        A ``timeout_ms`` of None or 0 leaves the command unbounded.

        Raises:
            SandboxTimeoutError: On ``e2b.TimeoutException``
            SandboxExecutionError: On ``e2b.CommandExitException``
        """
        e2b = _import_e2b()
        start_time = time.time()
        logger.debug(f"[e2b] Running command: {command}")
        try:
            result = await self._sandbox.commands.run(
                command,
                envs=dict(env or {}),
                cwd=self.resolve_cwd(cwd),
                user="root",
                timeout=(timeout_ms or 0) / 1000,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except e2b.TimeoutException:
            raise SandboxTimeoutError(
                timeout_ms=timeout_ms or 0, operation=command, sandbox_id=self.sandbox_id
            )
        except e2b.CommandExitException as e:
            raise SandboxExecutionError.from_streams(
                command,
                getattr(e, "exit_code", None),
                getattr(e, "stdout", None),
                getattr(e, "stderr", None),
                sandbox_id=self.sandbox_id,
            )

        logger.debug(f"[e2b] Command finished (took {int((time.time() - start_time) * 1000)}ms)")
        return result.stdout

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        """Start a background command; both streams go to ``on_output``."""

        def _emit(data: str) -> None:
            if on_output:
                on_output(data)

        await self._sandbox.commands.run(
            command,
            background=True,
            envs=dict(env or {}),
            cwd=self.repo_path,
            user="root",
            timeout=(timeout_ms or 0) / 1000,
            on_stdout=_emit,
            on_stderr=_emit,
        )

    async def read_text_file(self, path: str) -> str:
        return await self._sandbox.files.read(self.resolve_path(path))

    async def write_text_file(self, path: str, content: str) -> None:
        await self._sandbox.files.write(self.resolve_path(path), content)

    async def write_file(self, path: str, data: bytes) -> None:
        await self._sandbox.files.write(self.resolve_path(path), data)

    async def hibernate(self) -> None:
        logger.info(f"[e2b] Pausing sandbox {self.sandbox_id}")
        await self._sandbox.beta_pause()

    async def shutdown(self) -> None:
        logger.info(f"[e2b] Killing sandbox {self.sandbox_id}")
        await self._sandbox.kill()


class E2BSandboxProvider(SandboxProvider):
    """Creates and resumes E2B micro-VM sandboxes."""

    kind = SandboxProviderKind.MICROVM

    def __init__(self, config: E2BConfig | None = None, retry: RetryPolicy | None = None):
        self._config = config or E2BConfig()
        self._retry = retry or RetryPolicy()

    def _api_opts(self) -> dict[str, Any]:
        api_key = os.environ.get(self._config.api_key_env)
        return {"api_key": api_key} if api_key else {}

    def _template_for(self, options: CreateSandboxOptions) -> str:
        size = options.sandbox_size.value
        try:
            return self._config.templates[size]
        except KeyError:
            raise SandboxInitializationError(
                f"No E2B template configured for size '{size}'",
                details={"configured": sorted(self._config.templates)},
            )

    async def _resume(self, sandbox_id: str) -> E2BSession:
        e2b = _import_e2b()

        async def _connect() -> E2BSession:
            start_time = time.time()
            logger.info(f"[e2b] Resuming sandbox {sandbox_id}...")
            sandbox = await e2b.AsyncSandbox.connect(
                sandbox_id, timeout=self._config.sleep_timeout_seconds, **self._api_opts()
            )
            logger.info(
                f"[e2b] Resumed sandbox {sandbox_id} in {int((time.time() - start_time) * 1000)}ms"
            )
            session = E2BSession(sandbox)
            # Check the VM accepts commands
            await session.run_command("echo 'hello'", cwd="/")
            return session

        return await self._retry.run(_connect, label=f"resume sandbox {sandbox_id}")

    async def get_sandbox_or_none(self, sandbox_id: str) -> SandboxSession | None:
        try:
            return await self._resume(sandbox_id)
        except Exception as e:
            logger.warning(f"Failed to resume sandbox {sandbox_id}: {e}")
            return None

    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions
    ) -> SandboxSession:
        if sandbox_id:
            try:
                return await self._resume(sandbox_id)
            except SandboxInitializationError:
                raise
            except Exception as e:
                raise SandboxNotFoundError(f"Sandbox not found: {e}", sandbox_id=sandbox_id)

        e2b = _import_e2b()
        template = self._template_for(options)

        async def _create() -> Any:
            start_time = time.time()
            logger.info(f"[e2b] Creating sandbox with template {template}...")
            sandbox = await e2b.AsyncSandbox.create(
                template=template,
                timeout=self._config.sleep_timeout_seconds,
                envs=options.env_dict(),
                **self._api_opts(),
            )
            logger.info(
                f"[e2b] Created sandbox {sandbox.sandbox_id} "
                f"in {int((time.time() - start_time) * 1000)}ms"
            )
            return sandbox

        sandbox = await self._retry.run(_create, label=f"create sandbox with template {template}")
        return E2BSession(sandbox)

    async def hibernate_by_id(self, sandbox_id: str) -> None:
        e2b = _import_e2b()
        sandbox = await e2b.AsyncSandbox.connect(sandbox_id, **self._api_opts())
        start_time = time.time()
        logger.info(f"[e2b] Pausing sandbox {sandbox_id}...")
        await asyncio.wait_for(
            sandbox.beta_pause(), timeout=self._config.pause_request_timeout_seconds
        )
        logger.info(f"[e2b] Paused sandbox in {int((time.time() - start_time) * 1000)}ms")

    async def extend_life(self, sandbox_id: str) -> None:
        e2b = _import_e2b()
        sandbox = await e2b.AsyncSandbox.connect(sandbox_id, **self._api_opts())
        await sandbox.set_timeout(self._config.sleep_timeout_seconds)
