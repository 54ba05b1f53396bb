# src/sandboxcore/providers/daytona_provider.py
"""
Workspace backend using the Daytona ``AsyncDaytona`` SDK.

Daytona workspaces stop automatically after ``auto_stop_interval``
minutes idle, archive ``auto_archive_interval`` minutes after stopping and
are deleted after ``auto_delete_interval`` minutes. Hibernation is a plain
stop; resumption starts the workspace again.

Streaming command output is only available through Daytona's stateful
process sessions, so commands with callbacks go through
``_run_with_session``:

1. create a process session
2. ``cd`` into the working directory
3. ``export`` each variable (shell-safe key, single-quoted value)
4. dispatch the command asynchronously
5. race log collection against the timeout
6. read the exit code from the finished session command

Commands without callbacks use the one-shot ``process.exec`` call.

Requirements:
    - daytona-sdk package (pip install daytona-sdk)
    - ``DAYTONA_API_KEY`` (or the configured variable) in the environment
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
from ..config import DaytonaConfig
from ..exceptions import (
    SandboxExecutionError,
    SandboxInitializationError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from ..retry import RetryPolicy
from ..utils import bash_quote, random_id, safe_env_key

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_MARKER = "Operation timed out"
EXEC_TIMEOUT_MARKER = "command execution timeout"

PROMPT_PROFILE_PATH = "/etc/profile.d/prompt.sh"
# PS1 must be set or .bashrc returns early in login shells
PROMPT_PROFILE_CONTENTS = "[ -n \"${PS1-}\" ] || PS1='\\w $ '\nexport PS1"


def _import_daytona() -> Any:
    try:
        import daytona_sdk
    except ImportError:
        raise SandboxInitializationError(
            "daytona-sdk package not installed. Install with: pip install daytona-sdk"
        )
    return daytona_sdk


def _state_name(sandbox: Any) -> str:
    state = getattr(sandbox, "state", None)
    return str(getattr(state, "value", state) or "").lower()


class DaytonaSession(SandboxSession):
    """Session wrapping one Daytona sandbox."""

    def __init__(self, sandbox: Any, config: DaytonaConfig | None = None):
        self._sandbox = sandbox
        self._config = config or DaytonaConfig()
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.id

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.WORKSPACE

    async def _delete_session(self, session_id: str) -> None:
        try:
            await self._sandbox.process.delete_session(session_id)
        except Exception as e:
            logger.error(f"[daytona] Error deleting session {session_id}: {e}")

    async def _run_with_session(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None,
        cwd: str | None,
        timeout_ms: int | None,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
        block_until_complete: bool,
    ) -> tuple[int | None, str, str]:
        """
        Execute through a process session.

        Returns:
            (exit_code, stdout, stderr); exit_code is None when not blocking
        """
        daytona_sdk = _import_daytona()
        process = self._sandbox.process
        session_id = random_id(21)
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        effective_timeout = timeout_ms or self._config.default_timeout_ms

        def _collect_stdout(chunk: str) -> None:
            stdout_parts.append(chunk)
            if on_stdout:
                on_stdout(chunk)

        def _collect_stderr(chunk: str) -> None:
            stderr_parts.append(chunk)
            if on_stderr:
                on_stderr(chunk)

        try:
            await process.create_session(session_id)
            await process.execute_session_command(
                session_id,
                daytona_sdk.SessionExecuteRequest(command=f"cd {self.resolve_cwd(cwd)}", run_async=False),
            )
            for key, value in (env or {}).items():
                await process.execute_session_command(
                    session_id,
                    daytona_sdk.SessionExecuteRequest(
                        command=f"export {safe_env_key(key)}={bash_quote(value)}", run_async=False
                    ),
                )
            response = await process.execute_session_command(
                session_id, daytona_sdk.SessionExecuteRequest(command=command, run_async=True)
            )
            cmd_id = response.cmd_id

            logs_task = asyncio.ensure_future(
                process.get_session_command_logs_async(
                    session_id, cmd_id, _collect_stdout, _collect_stderr
                )
            )
            if not block_until_complete:
                self._background_tasks.add(logs_task)
                logs_task.add_done_callback(self._background_tasks.discard)
                return None, "", ""

            try:
                await asyncio.wait_for(logs_task, timeout=effective_timeout / 1000)
            except asyncio.TimeoutError:
                raise SandboxTimeoutError(
                    timeout_ms=effective_timeout, operation=command, sandbox_id=self.sandbox_id
                )

            finished = await process.get_session_command(session_id, cmd_id)
            return finished.exit_code, "".join(stdout_parts), "".join(stderr_parts)
        except Exception as e:
            logger.error(f"[daytona] Error running command with session: {e}")
            await self._delete_session(session_id)
            if isinstance(e, SandboxTimeoutError):
                raise
            if SESSION_TIMEOUT_MARKER in str(e):
                raise SandboxTimeoutError(
                    timeout_ms=effective_timeout, operation=command, sandbox_id=self.sandbox_id
                )
            raise

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
        """Run a command, streaming through a session when callbacks are given."""
        logger.debug(f"[daytona] Running command: {command}")
        start_time = time.time()

        if on_stdout is not None or on_stderr is not None:
            exit_code, stdout, stderr = await self._run_with_session(
                command,
                env=env,
                cwd=cwd,
                timeout_ms=timeout_ms,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
                block_until_complete=True,
            )
            if exit_code != 0:
                raise SandboxExecutionError.from_streams(
                    command, exit_code, stdout, stderr, sandbox_id=self.sandbox_id
                )
            return stdout

        workdir = self.resolve_cwd(cwd)
        effective_timeout = timeout_ms if timeout_ms is not None else self._config.default_timeout_ms
        try:
            response = await self._sandbox.process.exec(
                command,
                cwd=workdir,
                env=dict(env) if env else None,
                timeout=max(1, -(-effective_timeout // 1000)),
            )
        except Exception as e:
            logger.error(f"[daytona] Error running command: {e}")
            if EXEC_TIMEOUT_MARKER in str(e):
                raise SandboxTimeoutError(
                    timeout_ms=effective_timeout, operation=command, sandbox_id=self.sandbox_id
                )
            raise

        logger.debug(
            f"[daytona] Command exited {response.exit_code} in {workdir} "
            f"(took {int((time.time() - start_time) * 1000)}ms)"
        )
        if response.exit_code != 0:
            raise SandboxExecutionError.from_output(
                command, response.exit_code, response.result, sandbox_id=self.sandbox_id
            )
        return response.result or ""

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        logger.debug(f"[daytona] Running background command: {command}")
        await self._run_with_session(
            command,
            env=env,
            cwd=None,
            timeout_ms=timeout_ms,
            on_stdout=on_output,
            on_stderr=on_output,
            block_until_complete=False,
        )

    async def read_text_file(self, path: str) -> str:
        data = await self._sandbox.fs.download_file(self.resolve_path(path))
        return data.decode("utf-8") if isinstance(data, bytes) else str(data)

    async def write_text_file(self, path: str, content: str) -> None:
        await self._sandbox.fs.upload_file(content.encode("utf-8"), self.resolve_path(path))

    async def write_file(self, path: str, data: bytes) -> None:
        await self._sandbox.fs.upload_file(bytes(data), self.resolve_path(path))

    async def hibernate(self) -> None:
        # Archival is left to the auto-archive interval
        logger.info(f"[daytona] Stopping sandbox {self.sandbox_id}")
        await self._sandbox.stop()

    async def shutdown(self) -> None:
        logger.info(f"[daytona] Deleting sandbox {self.sandbox_id}")
        await self._sandbox.stop()
        await self._sandbox.delete()


class DaytonaSandboxProvider(SandboxProvider):
    """Creates and resumes Daytona workspace sandboxes."""

    kind = SandboxProviderKind.WORKSPACE

    def __init__(
        self,
        config: DaytonaConfig | None = None,
        retry: RetryPolicy | None = None,
        client: Any | None = None,
    ):
        self._config = config or DaytonaConfig()
        self._retry = retry or RetryPolicy()
        self._client = client

    def _get_client(self) -> Any:
        """
        Return the AsyncDaytona client, creating it on first use.

        Raises:
            SandboxInitializationError: If the SDK is missing or no API key is set
        """
        if self._client is not None:
            return self._client
        daytona_sdk = _import_daytona()
        api_key = os.environ.get(self._config.api_key_env)
        if not api_key:
            raise SandboxInitializationError(f"{self._config.api_key_env} is not set")
        kwargs: dict[str, Any] = {"api_key": api_key}
        if self._config.api_url:
            kwargs["api_url"] = self._config.api_url
        self._client = daytona_sdk.AsyncDaytona(daytona_sdk.DaytonaConfig(**kwargs))
        return self._client

    def _snapshot_for(self, options: CreateSandboxOptions) -> str:
        size = options.sandbox_size.value
        try:
            return self._config.snapshots[size]
        except KeyError:
            raise SandboxInitializationError(
                f"No Daytona snapshot configured for size '{size}'",
                details={"configured": sorted(self._config.snapshots)},
            )

    async def _resume(self, sandbox_id: str) -> Any:
        client = self._get_client()

        async def _start() -> Any:
            start_time = time.time()
            logger.info(f"[daytona] Resuming sandbox {sandbox_id}...")
            sandbox = await client.get(sandbox_id)
            state = _state_name(sandbox)
            logger.info(f"[daytona] Sandbox {sandbox_id} state: {state}")
            if state == "stopping":
                await sandbox.wait_for_sandbox_stop()
            if state in ("starting", "restoring"):
                await sandbox.wait_for_sandbox_start()
            elif state != "started":
                await sandbox.start()
            logger.info(
                f"[daytona] Resumed sandbox {sandbox_id} in {int((time.time() - start_time) * 1000)}ms"
            )
            return sandbox

        return await self._retry.run(_start, label=f"resume sandbox {sandbox_id}")

    async def get_sandbox_or_none(self, sandbox_id: str) -> SandboxSession | None:
        try:
            sandbox = await self._resume(sandbox_id)
        except Exception as e:
            logger.warning(f"Failed to resume sandbox {sandbox_id}: {e}")
            return None
        return DaytonaSession(sandbox, self._config)

    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions
    ) -> SandboxSession:
        if sandbox_id:
            session = await self.get_sandbox_or_none(sandbox_id)
            if session is None:
                raise SandboxNotFoundError(sandbox_id=sandbox_id)
            return session

        daytona_sdk = _import_daytona()
        client = self._get_client()
        snapshot = self._snapshot_for(options)

        async def _create() -> Any:
            start_time = time.time()
            logger.info(f"[daytona] Creating sandbox with snapshot {snapshot}...")
            sandbox = await client.create(
                daytona_sdk.CreateSandboxFromSnapshotParams(
                    user="root",
                    snapshot=snapshot,
                    env_vars=options.env_dict(),
                    auto_stop_interval=self._config.auto_stop_interval,
                    auto_archive_interval=self._config.auto_archive_interval,
                    auto_delete_interval=self._config.auto_delete_interval,
                )
            )
            logger.info(
                f"[daytona] Created sandbox {sandbox.id} "
                f"in {int((time.time() - start_time) * 1000)}ms"
            )
            return sandbox

        sandbox = await self._retry.run(_create, label=f"create sandbox with snapshot {snapshot}")
        session = DaytonaSession(sandbox, self._config)
        await self.setup_one_time(session)
        return session

    @staticmethod
    async def setup_one_time(session: SandboxSession) -> None:
        """Install the login-shell prompt profile so ``.bashrc`` runs fully."""
        await session.run_command(
            f"if [ ! -f {PROMPT_PROFILE_PATH} ]; then "
            f"echo {bash_quote(PROMPT_PROFILE_CONTENTS)} >> {PROMPT_PROFILE_PATH}; "
            f"chmod 644 {PROMPT_PROFILE_PATH}; fi",
            cwd="/",
        )

    async def hibernate_by_id(self, sandbox_id: str) -> None:
        try:
            sandbox = await self._get_client().get(sandbox_id)
            await sandbox.stop()
        except Exception as e:
            logger.error(f"Failed to hibernate sandbox {sandbox_id}: {e}")

    async def extend_life(self, sandbox_id: str) -> None:
        session = await self.get_sandbox_or_none(sandbox_id)
        if session is None:
            raise SandboxNotFoundError(sandbox_id=sandbox_id)
        await session.run_command("echo 'hello'")
