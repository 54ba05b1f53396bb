# src/sandboxcore/providers/docker_provider.py
"""
Container backend using the docker-py SDK.

Each sandbox is one long-lived container running ``sleep infinity``.
Hibernation maps to ``docker pause`` and resumption to ``unpause`` (or
``start`` for a stopped container), so the filesystem survives a
stop/resume cycle.

Command execution uses the low-level exec API so output can be streamed
to callbacks while it is produced and the exit code read afterwards.
docker-py is synchronous; every SDK call runs in the default executor.

Usage:
    >>> provider = DockerSandboxProvider(DockerConfig(image="my-sandbox:latest"))
    >>> session = await provider.get_or_create_sandbox(None, options)
    >>> await session.run_command("git status")
    >>> await session.shutdown()

Requirements:
    - docker-py package (pip install docker)
    - Docker daemon running and accessible
"""

import asyncio
import codecs
import io
import logging
import posixpath
import tarfile
import time
from typing import Any, Callable, Mapping

from ..base import (
    CreateSandboxOptions,
    OutputCallback,
    SandboxProvider,
    SandboxProviderKind,
    SandboxSession,
)
from ..config import DockerConfig
from ..exceptions import (
    SandboxCleanupError,
    SandboxConnectionError,
    SandboxExecutionError,
    SandboxInitializationError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from ..retry import RetryPolicy
from ..utils import bash_quote, random_id

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "sandboxcore.sandbox"
TEST_LABEL = "sandboxcore.test"


class _StreamDecoder:
    """Decode UTF-8 byte chunks that may split multi-byte characters."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | None) -> str:
        if not chunk:
            return ""
        return self._decoder.decode(chunk)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


class DockerSession(SandboxSession):
    """
    Session bound to one running container.

    Attributes:
        _client: docker.DockerClient
        _container: docker Container model
        _config: Container backend configuration
    """

    def __init__(self, client: Any, container: Any, config: DockerConfig):
        self._client = client
        self._container = container
        self._config = config
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def sandbox_id(self) -> str:
        return self._container.id

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.CONTAINER

    def _exec_blocking(
        self,
        command: str,
        env: Mapping[str, str] | None,
        workdir: str,
        on_stdout: Callable[[str], None] | None,
        on_stderr: Callable[[str], None] | None,
    ) -> tuple[int, str, str]:
        """Run one exec to completion; called in an executor thread."""
        api = self._client.api
        exec_id = api.exec_create(
            self._container.id,
            ["bash", "-c", command],
            environment=dict(env or {}),
            workdir=workdir,
            user="root",
        )
        out_decoder, err_decoder = _StreamDecoder(), _StreamDecoder()
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        for out_chunk, err_chunk in api.exec_start(exec_id, stream=True, demux=True):
            text = out_decoder.feed(out_chunk)
            if text:
                stdout_parts.append(text)
                if on_stdout:
                    on_stdout(text)
            text = err_decoder.feed(err_chunk)
            if text:
                stderr_parts.append(text)
                if on_stderr:
                    on_stderr(text)

        stdout_parts.append(out_decoder.flush())
        stderr_parts.append(err_decoder.flush())
        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return exit_code if exit_code is not None else -1, "".join(stdout_parts), "".join(
            stderr_parts
        )

    @staticmethod
    def _threadsafe(
        loop: asyncio.AbstractEventLoop, callback: OutputCallback | None
    ) -> Callable[[str], None] | None:
        if callback is None:
            return None
        return lambda text: loop.call_soon_threadsafe(callback, text)

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
        Execute a shell command in the container.

        Args:
            command: Shell command to execute via ``bash -c``
            env: Extra environment variables
            cwd: Working directory (default: repository directory)
            timeout_ms: Timeout in milliseconds (default from config)
            on_stdout: Streaming stdout callback, invoked on the event loop
            on_stderr: Streaming stderr callback, invoked on the event loop

        Returns:
            Captured stdout
        """
        effective_timeout = timeout_ms or self._config.default_timeout_ms
        workdir = self.resolve_cwd(cwd)
        loop = asyncio.get_event_loop()
        start_time = time.time()
        logger.debug(f"[container] Running command: {command}")

        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: self._exec_blocking(
                        command,
                        env,
                        workdir,
                        self._threadsafe(loop, on_stdout),
                        self._threadsafe(loop, on_stderr),
                    ),
                ),
                timeout=effective_timeout / 1000,
            )
        except asyncio.TimeoutError:
            raise SandboxTimeoutError(
                timeout_ms=effective_timeout, operation=command, sandbox_id=self.sandbox_id
            )

        logger.debug(
            f"[container] Command exited {exit_code} "
            f"(took {int((time.time() - start_time) * 1000)}ms)"
        )
        if exit_code != 0:
            raise SandboxExecutionError.from_streams(
                command, exit_code, stdout, stderr, sandbox_id=self.sandbox_id
            )
        return stdout

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        """Dispatch a command and stream merged output to ``on_output``."""
        loop = asyncio.get_event_loop()
        emit = self._threadsafe(loop, on_output)
        workdir = self.repo_path

        async def _stream() -> None:
            try:
                coro = loop.run_in_executor(
                    None, lambda: self._exec_blocking(command, env, workdir, emit, emit)
                )
                if timeout_ms:
                    await asyncio.wait_for(coro, timeout=timeout_ms / 1000)
                else:
                    await coro
            except asyncio.TimeoutError:
                logger.info(f"[container] Stopped following background command after {timeout_ms}ms")
            except Exception as e:
                logger.warning(f"[container] Background command failed: {e}")

        task = asyncio.ensure_future(_stream())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        # Let the exec be created before returning to the caller
        await asyncio.sleep(0)

    async def _ensure_parent_dir(self, path: str) -> None:
        parent = posixpath.dirname(path)
        if parent and parent != "/":
            await self.run_command(f"mkdir -p {bash_quote(parent)}", cwd="/")

    async def write_file(self, path: str, data: bytes) -> None:
        """Write bytes into the container with ``put_archive``."""
        target = self.resolve_path(path)
        await self._ensure_parent_dir(target)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=posixpath.basename(target))
            info.size = len(data)
            info.mtime = int(time.time())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        archive = buffer.getvalue()

        ok = await asyncio.get_event_loop().run_in_executor(
            None, lambda: self._container.put_archive(posixpath.dirname(target) or "/", archive)
        )
        if not ok:
            raise SandboxExecutionError(f"Failed to write {target}", sandbox_id=self.sandbox_id)

    async def write_text_file(self, path: str, content: str) -> None:
        await self.write_file(path, content.encode("utf-8"))

    async def read_file(self, path: str) -> bytes:
        """Read raw bytes from the container with ``get_archive``."""
        target = self.resolve_path(path)

        def _read() -> bytes:
            stream, _stat = self._container.get_archive(target)
            raw = b"".join(stream)
            with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as tar:
                member = tar.next()
                if member is None:
                    raise FileNotFoundError(target)
                extracted = tar.extractfile(member)
                if extracted is None:
                    raise IsADirectoryError(target)
                return extracted.read()

        return await asyncio.get_event_loop().run_in_executor(None, _read)

    async def read_text_file(self, path: str) -> str:
        return (await self.read_file(path)).decode("utf-8")

    async def hibernate(self) -> None:
        logger.info(f"[container] Pausing container {self._container.short_id}")
        await asyncio.get_event_loop().run_in_executor(None, self._container.pause)

    async def shutdown(self) -> None:
        """Stop and remove the container."""
        loop = asyncio.get_event_loop()
        errors = []
        try:
            await loop.run_in_executor(
                None, lambda: self._container.stop(timeout=self._config.stop_timeout)
            )
        except Exception as e:
            errors.append(f"stop: {e}")
            logger.warning(f"[container] Error stopping container: {e}")
        try:
            await loop.run_in_executor(None, lambda: self._container.remove(force=True))
        except Exception as e:
            errors.append(f"remove: {e}")
            logger.warning(f"[container] Error removing container: {e}")

        if errors:
            raise SandboxCleanupError(
                f"Shutdown completed with errors: {'; '.join(errors)}",
                resources_leaked=[self._container.id],
                partial_cleanup=len(errors) < 2,
                sandbox_id=self.sandbox_id,
            )


class DockerSandboxProvider(SandboxProvider):
    """
    Creates and resumes container sandboxes.

    The docker client is created lazily on first use so importing the
    provider never requires a reachable daemon.
    """

    kind = SandboxProviderKind.CONTAINER

    def __init__(
        self,
        config: DockerConfig | None = None,
        retry: RetryPolicy | None = None,
        client: Any | None = None,
    ):
        """
        Initialize the container provider.

        Args:
            config: Container backend configuration
            retry: Retry policy for create/resume
            client: Pre-built docker client (mainly for tests)
        """
        self._config = config or DockerConfig()
        self._retry = retry or RetryPolicy()
        self._client = client

    def _connect_docker(self) -> Any:
        """
        Connect to the Docker daemon.

        Raises:
            SandboxInitializationError: If docker-py is not installed
            SandboxConnectionError: If the daemon is unreachable
        """
        if self._client is not None:
            return self._client
        try:
            import docker
        except ImportError:
            raise SandboxInitializationError(
                "docker-py package not installed. Install with: pip install docker"
            )
        try:
            if self._config.host:
                self._client = docker.DockerClient(base_url=self._config.host)
                logger.info(f"Connected to remote Docker: {self._config.host}")
            else:
                self._client = docker.from_env()
                logger.debug("Connected to local Docker daemon")
        except Exception as e:
            raise SandboxConnectionError(
                f"Failed to connect to Docker daemon: {e}",
                host=self._config.host or "local",
                connection_type="docker",
            )
        return self._client

    def _session(self, container: Any) -> DockerSession:
        return DockerSession(self._connect_docker(), container, self._config)

    async def _create(self, options: CreateSandboxOptions, labels: dict[str, str]) -> Any:
        client = self._connect_docker()
        name = f"{self._config.name_prefix}-{random_id(8)}"
        all_labels = {
            SANDBOX_LABEL: "true",
            "sandboxcore.repo": options.github_repo_full_name,
            "sandboxcore.size": options.sandbox_size.value,
            **labels,
        }

        async def _run() -> Any:
            logger.info(f"[container] Creating container {name} from {self._config.image}...")
            return await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: client.containers.run(
                    self._config.image,
                    command="sleep infinity",
                    detach=True,
                    name=name,
                    environment=options.env_dict(),
                    labels=all_labels,
                    working_dir="/root",
                    network=self._config.network,
                    user="root",
                    stdin_open=True,
                    tty=False,
                ),
            )

        return await self._retry.run(_run, label=f"create container from {self._config.image}")

    async def _resume(self, sandbox_id: str) -> Any:
        client = self._connect_docker()
        loop = asyncio.get_event_loop()

        async def _run() -> Any:
            logger.info(f"[container] Resuming container {sandbox_id}...")
            container = await loop.run_in_executor(None, lambda: client.containers.get(sandbox_id))
            status = container.status
            if status == "paused":
                await loop.run_in_executor(None, container.unpause)
            elif status in ("exited", "created"):
                await loop.run_in_executor(None, container.start)
            await loop.run_in_executor(None, container.reload)
            logger.info(f"[container] Container {sandbox_id} state: {container.status}")
            return container

        return await self._retry.run(_run, label=f"resume container {sandbox_id}")

    async def get_sandbox_or_none(self, sandbox_id: str) -> SandboxSession | None:
        try:
            container = await self._resume(sandbox_id)
        except Exception as e:
            logger.warning(f"Failed to resume sandbox {sandbox_id}: {e}")
            return None
        return self._session(container)

    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions, labels: dict[str, str] | None = None
    ) -> SandboxSession:
        if sandbox_id:
            session = await self.get_sandbox_or_none(sandbox_id)
            if session is None:
                raise SandboxNotFoundError(sandbox_id=sandbox_id)
            return session

        start_time = time.time()
        container = await self._create(options, labels or {})
        logger.info(
            f"[container] Created container {container.short_id} "
            f"in {int((time.time() - start_time) * 1000)}ms"
        )
        return self._session(container)

    async def hibernate_by_id(self, sandbox_id: str) -> None:
        client = self._connect_docker()
        loop = asyncio.get_event_loop()
        container = await loop.run_in_executor(None, lambda: client.containers.get(sandbox_id))
        if container.status == "running":
            logger.info(f"[container] Pausing container {sandbox_id}")
            await loop.run_in_executor(None, container.pause)

    async def extend_life(self, sandbox_id: str) -> None:
        """Containers have no idle deadline; verify it still exists."""
        client = self._connect_docker()
        loop = asyncio.get_event_loop()
        try:
            container = await loop.run_in_executor(None, lambda: client.containers.get(sandbox_id))
            await loop.run_in_executor(None, container.reload)
        except Exception as e:
            raise SandboxNotFoundError(f"Sandbox not found: {e}", sandbox_id=sandbox_id)

    async def cleanup_test_containers(self) -> int:
        """Remove every container labelled as a test sandbox; returns the count."""
        client = self._connect_docker()
        loop = asyncio.get_event_loop()
        containers = await loop.run_in_executor(
            None,
            lambda: client.containers.list(all=True, filters={"label": f"{TEST_LABEL}=true"}),
        )
        for container in containers:
            try:
                await loop.run_in_executor(None, lambda c=container: c.remove(force=True))
            except Exception as e:
                logger.warning(f"Failed to remove test container {container.short_id}: {e}")
        return len(containers)
