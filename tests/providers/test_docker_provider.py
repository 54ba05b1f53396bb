# tests/providers/test_docker_provider.py
"""
Unit tests for DockerSandboxProvider.

These tests use a MagicMock docker client so no Docker daemon is needed.
The client is either injected directly or reached through a patched
``docker`` entry in sys.modules, since docker-py is imported lazily
inside ``_connect_docker()``.
"""

import io
import sys
import tarfile
import time
from unittest.mock import MagicMock

import pytest

from conftest import requires_docker
from sandboxcore.base import SandboxProviderKind
from sandboxcore.config import DockerConfig
from sandboxcore.exceptions import (
    SandboxCleanupError,
    SandboxConnectionError,
    SandboxExecutionError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from sandboxcore.providers.docker_provider import (
    SANDBOX_LABEL,
    TEST_LABEL,
    DockerSandboxProvider,
    DockerSession,
)
from sandboxcore.retry import RetryPolicy

# =============================================================================
# FIXTURES
# =============================================================================


def _exec_output(chunks, exit_code=0):
    """Configure the low-level exec API to stream ``chunks`` then exit."""

    def configure(client):
        client.api.exec_create.return_value = {"Id": "exec-1"}
        client.api.exec_start.side_effect = lambda *args, **kwargs: iter(list(chunks))
        client.api.exec_inspect.return_value = {"ExitCode": exit_code}

    return configure


@pytest.fixture
def mock_container():
    container = MagicMock()
    container.id = "c0ffee1234567890"
    container.short_id = "c0ffee1234"
    container.status = "running"
    return container


@pytest.fixture
def mock_client(mock_container):
    client = MagicMock()
    client.containers.run.return_value = mock_container
    client.containers.get.return_value = mock_container
    _exec_output([])(client)
    return client


@pytest.fixture
def docker_config():
    return DockerConfig(image="sandbox:test", network="sandbox-net", stop_timeout=3)


@pytest.fixture
def provider(mock_client, docker_config):
    return DockerSandboxProvider(docker_config, RetryPolicy(max_attempts=2, delay_ms=0), client=mock_client)


@pytest.fixture
def session(mock_client, mock_container, docker_config):
    return DockerSession(mock_client, mock_container, docker_config)


@pytest.fixture
def mock_docker_module():
    """
    Patch the docker module in sys.modules.

    Works regardless of where the import happens (lazy or eager).
    """
    mock_docker = MagicMock()
    client = MagicMock()
    mock_docker.from_env.return_value = client
    mock_docker.DockerClient.return_value = client

    original_docker = sys.modules.get("docker")
    sys.modules["docker"] = mock_docker

    yield mock_docker, client

    if original_docker is not None:
        sys.modules["docker"] = original_docker
    else:
        sys.modules.pop("docker", None)


# =============================================================================
# CONNECTION TESTS
# =============================================================================


class TestConnection:
    """Tests for lazy docker client creation."""

    def test_local_daemon(self, mock_docker_module):
        """Test the local daemon is used without a configured host."""
        mock_docker, client = mock_docker_module

        assert DockerSandboxProvider()._connect_docker() is client
        mock_docker.from_env.assert_called_once()

    def test_remote_host(self, mock_docker_module):
        """Test a configured host builds a DockerClient."""
        mock_docker, client = mock_docker_module

        provider = DockerSandboxProvider(DockerConfig(host="tcp://10.0.0.5:2375"))

        assert provider._connect_docker() is client
        mock_docker.DockerClient.assert_called_once_with(base_url="tcp://10.0.0.5:2375")

    def test_client_reused(self, mock_docker_module):
        mock_docker, _ = mock_docker_module
        provider = DockerSandboxProvider()

        provider._connect_docker()
        provider._connect_docker()

        assert mock_docker.from_env.call_count == 1

    def test_unreachable_daemon(self, mock_docker_module):
        """Test a failing connection is wrapped."""
        mock_docker, _ = mock_docker_module
        mock_docker.from_env.side_effect = Exception("socket not found")

        with pytest.raises(SandboxConnectionError) as exc_info:
            DockerSandboxProvider()._connect_docker()

        assert exc_info.value.host == "local"
        assert exc_info.value.connection_type == "docker"


# =============================================================================
# PROVIDER TESTS
# =============================================================================


class TestCreate:
    """Tests for creating containers."""

    @pytest.mark.asyncio
    async def test_run_arguments(self, provider, mock_client, mock_container, create_options):
        """Test the container is started detached with labels and env."""
        session = await provider.get_or_create_sandbox(None, create_options, labels={TEST_LABEL: "true"})

        assert session.sandbox_id == mock_container.id
        assert session.sandbox_provider == SandboxProviderKind.CONTAINER

        args, kwargs = mock_client.containers.run.call_args
        assert args == ("sandbox:test",)
        assert kwargs["command"] == "sleep infinity"
        assert kwargs["detach"] is True
        assert kwargs["name"].startswith("sandboxcore-")
        assert kwargs["network"] == "sandbox-net"
        assert kwargs["working_dir"] == "/root"
        assert kwargs["user"] == "root"
        assert kwargs["labels"] == {
            SANDBOX_LABEL: "true",
            "sandboxcore.repo": "owner/repo",
            "sandboxcore.size": "small",
            TEST_LABEL: "true",
        }
        assert kwargs["environment"] == {}

    @pytest.mark.asyncio
    async def test_create_retried(self, provider, mock_client, mock_container, create_options):
        """Test a transient failure is retried."""
        mock_client.containers.run.side_effect = [Exception("image pull hiccup"), mock_container]

        session = await provider.get_or_create_sandbox(None, create_options)

        assert session.sandbox_id == mock_container.id
        assert mock_client.containers.run.call_count == 2

    @pytest.mark.asyncio
    async def test_create_exhausted(self, provider, mock_client, create_options):
        """Test the last error surfaces once attempts are used up."""
        mock_client.containers.run.side_effect = RuntimeError("no space left")

        with pytest.raises(RuntimeError, match="no space left"):
            await provider.get_or_create_sandbox(None, create_options)
        assert mock_client.containers.run.call_count == 2


class TestResume:
    """Tests for resuming containers."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, unpaused, started",
        [("paused", True, False), ("exited", False, True), ("created", False, True), ("running", False, False)],
    )
    async def test_resume_by_status(self, provider, mock_container, create_options, status, unpaused, started):
        """Test each container state is brought back to running."""
        mock_container.status = status

        session = await provider.get_or_create_sandbox(mock_container.id, create_options)

        assert session.sandbox_id == mock_container.id
        assert mock_container.unpause.called is unpaused
        assert mock_container.start.called is started
        mock_container.reload.assert_called()

    @pytest.mark.asyncio
    async def test_missing_container(self, provider, mock_client, create_options):
        """Test an unknown id raises SandboxNotFoundError."""
        mock_client.containers.get.side_effect = Exception("404 Not Found")

        with pytest.raises(SandboxNotFoundError):
            await provider.get_or_create_sandbox("missing", create_options)
        assert await provider.get_sandbox_or_none("missing") is None


class TestLifecycle:
    """Tests for hibernate, extend and cleanup by id."""

    @pytest.mark.asyncio
    async def test_hibernate_running(self, provider, mock_container):
        await provider.hibernate_by_id(mock_container.id)
        mock_container.pause.assert_called_once()

    @pytest.mark.asyncio
    async def test_hibernate_already_paused(self, provider, mock_container):
        """Test a paused container is not paused again."""
        mock_container.status = "paused"

        await provider.hibernate_by_id(mock_container.id)

        mock_container.pause.assert_not_called()

    @pytest.mark.asyncio
    async def test_extend_life(self, provider, mock_container):
        await provider.extend_life(mock_container.id)
        mock_container.reload.assert_called_once()

    @pytest.mark.asyncio
    async def test_extend_life_missing(self, provider, mock_client):
        mock_client.containers.get.side_effect = Exception("404 Not Found")

        with pytest.raises(SandboxNotFoundError):
            await provider.extend_life("missing")

    @pytest.mark.asyncio
    async def test_cleanup_test_containers(self, provider, mock_client):
        """Test labelled containers are removed and counted."""
        leftovers = [MagicMock(), MagicMock()]
        leftovers[1].remove.side_effect = Exception("already gone")
        mock_client.containers.list.return_value = leftovers

        assert await provider.cleanup_test_containers() == 2

        mock_client.containers.list.assert_called_once_with(
            all=True, filters={"label": f"{TEST_LABEL}=true"}
        )
        for container in leftovers:
            container.remove.assert_called_once_with(force=True)


# =============================================================================
# SESSION TESTS
# =============================================================================


class TestRunCommand:
    """Tests for DockerSession.run_command."""

    @pytest.mark.asyncio
    async def test_exec_arguments(self, session, mock_client, mock_container):
        """Test the exec targets the container with bash, env and workdir."""
        await session.run_command("git status", env={"A": "1"}, cwd="/")

        mock_client.api.exec_create.assert_called_once_with(
            mock_container.id,
            ["bash", "-c", "git status"],
            environment={"A": "1"},
            workdir="/",
            user="root",
        )
        mock_client.api.exec_start.assert_called_once_with({"Id": "exec-1"}, stream=True, demux=True)

    @pytest.mark.asyncio
    async def test_default_workdir_is_repo(self, session, mock_client):
        await session.run_command("ls")
        assert mock_client.api.exec_create.call_args.kwargs["workdir"] == "/root/repo"

    @pytest.mark.asyncio
    async def test_streams_output(self, session, mock_client):
        """Test stdout is returned and both streams reach their callbacks."""
        _exec_output([(b"hello ", None), (None, b"warn\n"), (b"world\n", None)])(mock_client)
        out, err = [], []

        result = await session.run_command("echo", on_stdout=out.append, on_stderr=err.append)

        assert result == "hello world\n"
        assert "".join(out) == "hello world\n"
        assert err == ["warn\n"]

    @pytest.mark.asyncio
    async def test_split_utf8(self, session, mock_client):
        """Test a multi-byte character split across chunks is decoded intact."""
        data = "héllo".encode()
        _exec_output([(data[:2], None), (data[2:], None)])(mock_client)

        assert await session.run_command("echo") == "héllo"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, session, mock_client):
        """Test a failing command raises with its exit code and output."""
        _exec_output([(b"partial\n", b"fatal: bad\n")], exit_code=128)(mock_client)

        with pytest.raises(SandboxExecutionError) as exc_info:
            await session.run_command("git push")

        error = exc_info.value
        assert error.exit_code == 128
        assert error.stdout == "partial\n"
        assert error.stderr == "fatal: bad\n"
        assert error.command == "git push"
        assert "Command failed with exit code 128" in error.message

    @pytest.mark.asyncio
    async def test_timeout(self, session, mock_client):
        """Test a command exceeding its timeout raises SandboxTimeoutError."""

        def _slow(*args, **kwargs):
            time.sleep(0.5)
            return iter([])

        mock_client.api.exec_start.side_effect = _slow

        with pytest.raises(SandboxTimeoutError) as exc_info:
            await session.run_command("sleep 100", timeout_ms=50)
        assert exc_info.value.timeout_ms == 50


class TestFiles:
    """Tests for archive-based file transfer."""

    @pytest.mark.asyncio
    async def test_write_file(self, session, mock_container, mock_client):
        """Test the file is sent as a one-member tar archive."""
        mock_container.put_archive.return_value = True

        await session.write_text_file("notes/todo.txt", "ship it")

        assert mock_client.api.exec_create.call_args.args[1] == [
            "bash",
            "-c",
            "mkdir -p '/root/repo/notes'",
        ]
        directory, archive = mock_container.put_archive.call_args.args
        assert directory == "/root/repo/notes"
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            member = tar.next()
            assert member.name == "todo.txt"
            assert tar.extractfile(member).read() == b"ship it"

    @pytest.mark.asyncio
    async def test_write_file_quotes_parent_dir(self, session, mock_container, mock_client):
        """Test a directory name with a single quote stays one shell word."""
        mock_container.put_archive.return_value = True

        await session.write_file("/tmp/it's here/a.txt", b"x")

        assert mock_client.api.exec_create.call_args.args[1] == [
            "bash",
            "-c",
            "mkdir -p '/tmp/it'\"'\"'s here'",
        ]
        assert mock_container.put_archive.call_args.args[0] == "/tmp/it's here"

    @pytest.mark.asyncio
    async def test_write_rejected(self, session, mock_container):
        mock_container.put_archive.return_value = False

        with pytest.raises(SandboxExecutionError, match="Failed to write /tmp/x"):
            await session.write_file("/tmp/x", b"x")

    @pytest.mark.asyncio
    async def test_read_text_file(self, session, mock_container):
        """Test the archive returned by the daemon is unpacked."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name="README.md")
            info.size = 6
            tar.addfile(info, io.BytesIO(b"# repo"))
        raw = buffer.getvalue()
        mock_container.get_archive.return_value = (iter([raw[:100], raw[100:]]), {})

        assert await session.read_text_file("README.md") == "# repo"
        mock_container.get_archive.assert_called_once_with("/root/repo/README.md")


class TestSessionLifecycle:
    """Tests for session hibernate and shutdown."""

    @pytest.mark.asyncio
    async def test_hibernate_pauses(self, session, mock_container):
        await session.hibernate()
        mock_container.pause.assert_called_once()

    @pytest.mark.asyncio
    async def test_shutdown(self, session, mock_container):
        """Test the container is stopped then removed."""
        await session.shutdown()

        mock_container.stop.assert_called_once_with(timeout=3)
        mock_container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_shutdown_partial_failure(self, session, mock_container):
        """Test a failed stop still removes and reports a partial cleanup."""
        mock_container.stop.side_effect = Exception("timeout")

        with pytest.raises(SandboxCleanupError) as exc_info:
            await session.shutdown()

        mock_container.remove.assert_called_once_with(force=True)
        assert exc_info.value.partial_cleanup is True
        assert exc_info.value.resources_leaked == [mock_container.id]

    @pytest.mark.asyncio
    async def test_background_command(self, session, mock_client):
        """Test background output is forwarded to one callback."""
        _exec_output([(b"started\n", b"warn\n")])(mock_client)
        output = []

        await session.run_background_command("node daemon.mjs", on_output=output.append)
        for task in list(session._background_tasks):
            await task

        assert "".join(output) == "started\nwarn\n"
        assert mock_client.api.exec_create.call_args.kwargs["workdir"] == "/root/repo"


# =============================================================================
# INTEGRATION
# =============================================================================


@requires_docker
class TestDockerIntegration:
    """Round trip against a real Docker daemon."""

    @pytest.mark.asyncio
    async def test_create_run_shutdown(self, create_options):
        provider = DockerSandboxProvider(DockerConfig(image="debian:bookworm-slim"))
        session = await provider.get_or_create_sandbox(None, create_options, labels={TEST_LABEL: "true"})
        try:
            assert (await session.run_command("echo hi", cwd="/")).strip() == "hi"
        finally:
            await provider.cleanup_test_containers()
