# tests/conftest.py
"""
Pytest fixtures and configuration for sandboxcore tests.

This module provides:
    - ScriptedSession: in-memory SandboxSession answering commands from
      regex rules and recording every call
    - LocalShellSession: SandboxSession running commands with local bash,
      used for end-to-end git tests
    - Docker and git availability markers
    - Option and configuration fixtures
"""

import asyncio
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest

from sandboxcore.base import (
    CreateSandboxOptions,
    OutputCallback,
    SandboxProviderKind,
    SandboxSession,
    StatusUpdate,
)
from sandboxcore.config import SandboxSystemConfig
from sandboxcore.exceptions import SandboxExecutionError, SandboxTimeoutError

# ==============================================================================
# Availability markers
# ==============================================================================


def is_docker_available() -> bool:
    """Check if Docker is available for testing."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
        return True
    except Exception:
        return False


requires_docker = pytest.mark.skipif(not is_docker_available(), reason="Docker not available")

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


# ==============================================================================
# Scripted session
# ==============================================================================

Response = str | BaseException | Callable[[str, dict[str, Any]], str]


class ScriptedSession(SandboxSession):
    """
    SandboxSession double driven by regex rules.

    Rules added later take precedence. An unmatched command returns "".
    A rule response may be a string, an exception instance (raised) or a
    callable ``(command, kwargs) -> str``.

    Attributes:
        commands: ``(command, kwargs)`` for every ``run_command`` call
        background_commands: ``(command, kwargs)`` for background calls
        files: In-memory filesystem written by the write methods
    """

    def __init__(self, sandbox_id: str = "scripted-sandbox-0001"):
        self._sandbox_id = sandbox_id
        self._rules: list[tuple[re.Pattern, Response]] = []
        self.commands: list[tuple[str, dict[str, Any]]] = []
        self.background_commands: list[tuple[str, dict[str, Any]]] = []
        self.files: dict[str, str | bytes] = {}
        self.hibernated = False
        self.shut_down = False

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.MOCK

    def on(self, pattern: str, response: Response) -> "ScriptedSession":
        """Add a rule matched with ``re.search`` against the command."""
        self._rules.append((re.compile(pattern), response))
        return self

    @property
    def command_strings(self) -> list[str]:
        return [command for command, _ in self.commands]

    def find(self, fragment: str) -> list[tuple[str, dict[str, Any]]]:
        """All recorded calls whose command contains ``fragment``."""
        return [call for call in self.commands if fragment in call[0]]

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
        kwargs = {
            "env": env,
            "cwd": cwd,
            "timeout_ms": timeout_ms,
            "on_stdout": on_stdout,
            "on_stderr": on_stderr,
        }
        self.commands.append((command, kwargs))
        for pattern, response in reversed(self._rules):
            if pattern.search(command):
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response(command, kwargs)
                return response
        return ""

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.background_commands.append(
            (command, {"env": env, "timeout_ms": timeout_ms, "on_output": on_output})
        )

    async def read_text_file(self, path: str) -> str:
        try:
            content = self.files[path]
        except KeyError:
            raise FileNotFoundError(path)
        return content.decode("utf-8") if isinstance(content, bytes) else content

    async def write_text_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def write_file(self, path: str, data: bytes) -> None:
        self.files[path] = data

    async def hibernate(self) -> None:
        self.hibernated = True

    async def shutdown(self) -> None:
        self.shut_down = True


def command_failure(command: str, stderr: str, exit_code: int = 1) -> SandboxExecutionError:
    """Build the error a provider raises for a non-zero exit."""
    return SandboxExecutionError.from_streams(command, exit_code, "", stderr)


# ==============================================================================
# Local shell session
# ==============================================================================


class LocalShellSession(SandboxSession):
    """
    SandboxSession that executes commands with the local ``bash``.

    The home directory is a temporary directory and the repository is
    ``<home>/repo``. Git identity and global config are isolated through
    environment variables.
    """

    def __init__(self, home: Path, extra_env: Mapping[str, str] | None = None):
        self._home = home
        self._env = {
            **os.environ,
            "HOME": str(home),
            "GIT_CONFIG_NOSYSTEM": "1",
            "GIT_AUTHOR_NAME": "Test User",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test User",
            "GIT_COMMITTER_EMAIL": "test@example.com",
            "GIT_TERMINAL_PROMPT": "0",
            **(extra_env or {}),
        }
        self.commands: list[str] = []

    @property
    def sandbox_id(self) -> str:
        return "local-shell"

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.MOCK

    @property
    def home_path(self) -> str:
        return str(self._home)

    @property
    def repo_path(self) -> str:
        return str(self._home / self.repo_dir)

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
        self.commands.append(command)
        process = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command,
            cwd=self.resolve_cwd(cwd),
            env={**self._env, **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        timeout = (timeout_ms or 60_000) / 1000
        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            raise SandboxTimeoutError(timeout_ms=timeout_ms or 60_000, operation=command)

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        if on_stdout and stdout:
            on_stdout(stdout)
        if on_stderr and stderr:
            on_stderr(stderr)
        if process.returncode != 0:
            raise SandboxExecutionError.from_streams(command, process.returncode, stdout, stderr)
        return stdout

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        raise NotImplementedError("Not implemented: run_background_command")

    async def read_text_file(self, path: str) -> str:
        return Path(self.resolve_path(path)).read_text(encoding="utf-8")

    async def write_text_file(self, path: str, content: str) -> None:
        target = Path(self.resolve_path(path))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def write_file(self, path: str, data: bytes) -> None:
        target = Path(self.resolve_path(path))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def hibernate(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None


def git(cwd: Path, *args: str, env: Mapping[str, str] | None = None) -> str:
    """Run git synchronously for fixture setup."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def git_env(tmp_path: Path) -> dict[str, str]:
    """Environment isolating git from user and system config."""
    home = tmp_path / "home"
    home.mkdir()
    return {
        **os.environ,
        "HOME": str(home),
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_AUTHOR_NAME": "Test User",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test User",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }


@pytest.fixture
def git_remote(tmp_path: Path, git_env: dict[str, str]) -> Path:
    """
    Bare remote repository with one commit on ``main``.

    Returns:
        Path to the bare repository
    """
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(remote), env=git_env)
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main", env=git_env)

    seed = tmp_path / "seed"
    git(tmp_path, "clone", str(remote), str(seed), env=git_env)
    git(seed, "checkout", "-b", "main", env=git_env)
    (seed / "README.md").write_text("# Test repo\n")
    (seed / "shared.txt").write_text("line one\n")
    git(seed, "add", "-A", env=git_env)
    git(seed, "commit", "-m", "Initial commit", env=git_env)
    git(seed, "push", "origin", "main", env=git_env)
    return remote


@pytest.fixture
def local_session(tmp_path: Path, git_remote: Path, git_env: dict[str, str]) -> LocalShellSession:
    """LocalShellSession whose repository is a clone of ``git_remote``."""
    home = Path(git_env["HOME"])
    git(home, "clone", str(git_remote), "repo", env=git_env)
    return LocalShellSession(home)


# ==============================================================================
# Option and configuration fixtures
# ==============================================================================


@pytest.fixture
def scripted_session() -> ScriptedSession:
    """Fresh ScriptedSession with no rules."""
    return ScriptedSession()


@pytest.fixture
def status_updates() -> list[StatusUpdate]:
    """Collector for status callbacks."""
    return []


@pytest.fixture
def create_options(status_updates: list[StatusUpdate]) -> CreateSandboxOptions:
    """Default sandbox request recording status updates."""

    async def _record(update: StatusUpdate) -> None:
        status_updates.append(update)

    return CreateSandboxOptions(
        github_repo_full_name="owner/repo",
        github_access_token="test-token",
        sandbox_provider=SandboxProviderKind.MOCK,
        repo_base_branch_name="main",
        thread_name="test-title",
        user_name="test-user",
        user_email="test@example.com",
        public_url="http://localhost:3000",
        on_status_update=_record,
    )


@pytest.fixture
def test_config() -> SandboxSystemConfig:
    """Configuration for the test environment with fast retries."""
    config = SandboxSystemConfig(environment="test")
    config.retry.delay_ms = 0
    return config
