# src/sandboxcore/daemon.py
"""
Installation and control of the in-sandbox agent daemon.

The daemon is a Node.js script that listens on a local unix socket,
receives prompts as JSON messages and spawns the coding-agent CLI. Its
progress is only observable through its JSON-lines log file.

File layout inside the sandbox:

    /tmp/terragon-daemon.mjs      daemon script
    /tmp/terry-mcp-server.mjs     built-in MCP server script
    /tmp/mcp-server.json          merged MCP configuration
    /tmp/terragon-daemon.log      daemon log (JSON lines)
    /tmp/terragon-daemon.sock     daemon socket

Usage:
    >>> bundle = DaemonBundle.load(config.daemon)
    >>> daemon = DaemonClient(session, bundle, config.daemon)
    >>> await daemon.install(github_access_token=token)
    >>> await daemon.send_message(DaemonMessage(type="claude", prompt="Fix the tests"))
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .base import AgentCredentials, EnvironmentVariable, SandboxSession
from .config import DaemonConfig
from .env import get_env
from .exceptions import SandboxInitializationError
from .mcp_config import McpConfig, build_merged_mcp_config

logger = logging.getLogger(__name__)

DAEMON_FILE_PATH = "/tmp/terragon-daemon.mjs"
MCP_SERVER_FILE_PATH = "/tmp/terry-mcp-server.mjs"
MCP_CONFIG_FILE_PATH = "/tmp/mcp-server.json"
DAEMON_LOG_FILE_PATH = "/tmp/terragon-daemon.log"
DAEMON_SOCKET_PATH = "/tmp/terragon-daemon.sock"

_MESSAGE_HEREDOC = "TERRAGON_DAEMON_MESSAGE"


@dataclass(frozen=True)
class DaemonBundle:
    """The daemon and MCP server script contents to install."""

    daemon_script: str
    mcp_server_script: str

    def content_hash(self) -> str:
        """sha256 hex digest of the daemon script, as ``sha256sum`` prints it."""
        return hashlib.sha256(self.daemon_script.encode("utf-8")).hexdigest()

    @classmethod
    def load(cls, config: DaemonConfig) -> "DaemonBundle":
        """
        Read both scripts from the paths in ``config``.

        Raises:
            SandboxInitializationError: If a path is unset or unreadable
        """
        scripts = {}
        for attr in ("daemon_script_path", "mcp_server_script_path"):
            raw_path = getattr(config, attr)
            if not raw_path:
                raise SandboxInitializationError(f"daemon.{attr} is not configured")
            path = Path(raw_path).expanduser()
            try:
                scripts[attr] = path.read_text(encoding="utf-8")
            except OSError as e:
                raise SandboxInitializationError(
                    f"Cannot read daemon bundle file {path}: {e}", details={"path": str(path)}
                )
        return cls(
            daemon_script=scripts["daemon_script_path"],
            mcp_server_script=scripts["mcp_server_script_path"],
        )


class DaemonMessage(BaseModel):
    """A message written to the daemon socket."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(description="Agent kind the daemon should spawn.")
    agent: str | None = Field(default=None)
    agent_version: int | None = Field(default=None, alias="agentVersion")
    token: str | None = Field(default=None, description="Daemon auth token.")
    prompt: str = Field(default="")
    model: str | None = Field(default=None)
    session_id: str | None = Field(default=None, alias="sessionId")
    thread_id: str | None = Field(default=None, alias="threadId")
    thread_chat_id: str | None = Field(default=None, alias="threadChatId")

    def to_json(self) -> str:
        """Serialize with camelCase keys, omitting unset fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


def build_daemon_env(
    github_access_token: str,
    environment_variables: Iterable[EnvironmentVariable] = (),
    agent_credentials: AgentCredentials | None = None,
    feature_flags: Mapping[str, Any] | None = None,
    bash_max_timeout_ms: int = 60_000,
) -> dict[str, str]:
    """Environment for the daemon process."""
    return {
        "BASH_MAX_TIMEOUT_MS": str(bash_max_timeout_ms),
        **get_env(github_access_token, environment_variables, agent_credentials),
        "TERRAGON_FEATURE_FLAGS": json.dumps(dict(feature_flags or {}), separators=(",", ":")),
    }


class DaemonClient:
    """
    Installs, updates and talks to the daemon in one sandbox.

    Attributes:
        session: Sandbox session
        bundle: Scripts to install
        config: Daemon settings
    """

    def __init__(
        self,
        session: SandboxSession,
        bundle: DaemonBundle,
        config: DaemonConfig | None = None,
    ):
        self.session = session
        self.bundle = bundle
        self.config = config or DaemonConfig()

    def _on_output(self, chunk: str) -> None:
        logger.debug(f"[daemon {self.session.sandbox_id[:8]}] {chunk.rstrip()}")

    async def install(
        self,
        github_access_token: str,
        environment_variables: Iterable[EnvironmentVariable] = (),
        agent_credentials: AgentCredentials | None = None,
        user_mcp_config: McpConfig | Mapping[str, Any] | None = None,
        feature_flags: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Write the daemon files, launch the daemon and wait for its socket.

        Raises:
            SandboxInitializationError: If the socket never appears
        """
        merged = build_merged_mcp_config(
            user_mcp_config,
            include_terry=True,
            terry_command="node",
            terry_args=[MCP_SERVER_FILE_PATH],
        )
        await self.session.write_text_file(DAEMON_FILE_PATH, self.bundle.daemon_script)
        await self.session.write_text_file(MCP_SERVER_FILE_PATH, self.bundle.mcp_server_script)
        await self.session.write_text_file(MCP_CONFIG_FILE_PATH, json.dumps(merged, indent=2))
        await self.session.run_command(f"chmod +x {DAEMON_FILE_PATH}", cwd="/")

        env = build_daemon_env(
            github_access_token,
            environment_variables,
            agent_credentials,
            feature_flags,
            bash_max_timeout_ms=self.config.bash_max_timeout_ms,
        )
        logger.info(f"Starting daemon in sandbox {self.session.sandbox_id}")
        await self.session.run_background_command(
            f"node {DAEMON_FILE_PATH} --mcp-config-path {MCP_CONFIG_FILE_PATH}",
            env=env,
            on_output=self._on_output,
        )
        await self._wait_until_ready()

    async def _wait_until_ready(self) -> None:
        check = (
            f"(test -S {DAEMON_SOCKET_PATH} || test -p {DAEMON_SOCKET_PATH}) "
            f"&& echo ready || echo waiting"
        )
        for attempt in range(self.config.ready_poll_attempts):
            output = await self.session.run_command(check, cwd="/")
            if output.strip() == "ready":
                logger.debug(f"Daemon ready after {attempt + 1} check(s)")
                return
            await asyncio.sleep(self.config.ready_poll_interval_ms / 1000)

        raise SandboxInitializationError(
            f"Daemon did not become ready after {self.config.ready_poll_attempts} checks",
            sandbox_id=self.session.sandbox_id,
            details={"socket": DAEMON_SOCKET_PATH},
        )

    async def installed_hash(self) -> str:
        """sha256 of the daemon script on disk; empty if it is missing."""
        output = await self.session.run_command(
            f"sha256sum {DAEMON_FILE_PATH} 2>/dev/null | cut -d' ' -f1 || true", cwd="/"
        )
        return output.strip()

    async def is_outdated(self) -> bool:
        return await self.installed_hash() != self.bundle.content_hash()

    async def is_running(self) -> bool:
        output = await self.session.run_command(
            f"pgrep -f {DAEMON_FILE_PATH} >/dev/null && echo running || echo stopped", cwd="/"
        )
        return output.strip() == "running"

    async def stop(self) -> None:
        await self.session.run_command(f"pkill -f {DAEMON_FILE_PATH} || true", cwd="/")

    async def update_if_outdated(self, auto_update_daemon: bool, **install_kwargs: Any) -> bool:
        """
        Reinstall the daemon when its on-disk hash differs from the bundle.

        A stale daemon is left running unless ``auto_update_daemon`` is set.

        Returns:
            True if the daemon was reinstalled
        """
        if not auto_update_daemon:
            logger.debug("Daemon auto-update disabled; leaving installed daemon untouched")
            return False
        if not await self.is_outdated():
            return False

        logger.info(f"Daemon in sandbox {self.session.sandbox_id} is outdated, updating")
        await self.stop()
        await self.install(**install_kwargs)
        return True

    async def restart_if_not_running(self, **install_kwargs: Any) -> bool:
        """Reinstall and start the daemon if no daemon process is alive."""
        if await self.is_running():
            return False
        logger.info(f"Daemon not running in sandbox {self.session.sandbox_id}, restarting")
        await self.install(**install_kwargs)
        return True

    async def get_logs(self) -> list[dict[str, Any] | str]:
        """
        Read the daemon log.

        Returns:
            One entry per line: the decoded object for JSON lines
            (``{"message": ..., "data": ...}``), the raw string otherwise
        """
        output = await self.session.run_command(
            f"cat {DAEMON_LOG_FILE_PATH} 2>/dev/null || true", cwd="/"
        )
        entries: list[dict[str, Any] | str] = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                decoded = json.loads(line)
            except json.JSONDecodeError:
                entries.append(line)
                continue
            entries.append(decoded if isinstance(decoded, dict) else line)
        return entries

    async def send_message(self, message: DaemonMessage) -> None:
        """Deliver a message through ``node <daemon> --write`` on stdin."""
        await self.session.run_command(
            f"cat <<'{_MESSAGE_HEREDOC}' | node {DAEMON_FILE_PATH} --write\n"
            f"{message.to_json()}\n"
            f"{_MESSAGE_HEREDOC}",
            cwd="/",
        )
