# tests/test_daemon.py
"""
Unit tests for the in-sandbox daemon client.

Tests:
    - Bundle loading and hashing
    - Message serialization
    - Install: files, launch command, environment, readiness wait
    - Update and restart decisions
    - Log parsing and message delivery
"""

import hashlib
import json

import pytest

from conftest import ScriptedSession
from sandboxcore.base import AgentCredentials, EnvironmentVariable
from sandboxcore.config import DaemonConfig
from sandboxcore.daemon import (
    DAEMON_FILE_PATH,
    MCP_CONFIG_FILE_PATH,
    MCP_SERVER_FILE_PATH,
    DaemonBundle,
    DaemonClient,
    DaemonMessage,
    build_daemon_env,
)
from sandboxcore.exceptions import SandboxInitializationError

BUNDLE = DaemonBundle(daemon_script="console.log('daemon')", mcp_server_script="console.log('mcp')")


@pytest.fixture
def fast_config() -> DaemonConfig:
    return DaemonConfig(ready_poll_attempts=3, ready_poll_interval_ms=0)


@pytest.fixture
def ready_session() -> ScriptedSession:
    return ScriptedSession().on(r"test -S", "ready\n")


class TestDaemonBundle:
    """Tests for DaemonBundle."""

    def test_content_hash(self):
        """Test the hash matches sha256sum of the daemon script."""
        expected = hashlib.sha256(b"console.log('daemon')").hexdigest()
        assert BUNDLE.content_hash() == expected

    def test_load(self, tmp_path):
        """Test loading both scripts from configured paths."""
        (tmp_path / "daemon.mjs").write_text("d")
        (tmp_path / "mcp.mjs").write_text("m")
        config = DaemonConfig(
            daemon_script_path=str(tmp_path / "daemon.mjs"),
            mcp_server_script_path=str(tmp_path / "mcp.mjs"),
        )

        assert DaemonBundle.load(config) == DaemonBundle(daemon_script="d", mcp_server_script="m")

    def test_load_unconfigured(self):
        """Test a missing path setting is reported."""
        with pytest.raises(SandboxInitializationError, match="daemon_script_path"):
            DaemonBundle.load(DaemonConfig())

    def test_load_missing_file(self, tmp_path):
        """Test an unreadable file is reported."""
        config = DaemonConfig(
            daemon_script_path=str(tmp_path / "nope.mjs"),
            mcp_server_script_path=str(tmp_path / "nope2.mjs"),
        )
        with pytest.raises(SandboxInitializationError, match="Cannot read daemon bundle file"):
            DaemonBundle.load(config)


class TestDaemonMessage:
    """Tests for DaemonMessage serialization."""

    def test_camel_case_keys(self):
        """Test aliases are used and unset fields are omitted."""
        message = DaemonMessage(type="claude", prompt="Fix tests", session_id="s1", thread_chat_id="c1")

        assert json.loads(message.to_json()) == {
            "type": "claude",
            "prompt": "Fix tests",
            "sessionId": "s1",
            "threadChatId": "c1",
        }

    def test_populate_by_alias(self):
        """Test construction from camelCase input."""
        message = DaemonMessage.model_validate({"type": "codex", "agentVersion": 2, "threadId": "t"})

        assert message.agent_version == 2
        assert message.thread_id == "t"


class TestBuildDaemonEnv:
    """Tests for build_daemon_env."""

    def test_exact_environment(self):
        """Test the daemon environment composition."""
        env = build_daemon_env(
            "tok",
            [EnvironmentVariable("FOO", "bar")],
            AgentCredentials(type="env-var", contents={"ANTHROPIC_API_KEY": "sk"}),
            {"newUi": True},
        )

        assert env == {
            "BASH_MAX_TIMEOUT_MS": "60000",
            "GH_TOKEN": "tok",
            "FOO": "bar",
            "ANTHROPIC_API_KEY": "sk",
            "TERRAGON": "true",
            "TERRAGON_FEATURE_FLAGS": '{"newUi":true}',
        }

    def test_empty_feature_flags(self):
        """Test feature flags default to an empty object."""
        assert build_daemon_env("tok")["TERRAGON_FEATURE_FLAGS"] == "{}"


class TestDaemonInstall:
    """Tests for DaemonClient.install."""

    @pytest.mark.asyncio
    async def test_install_writes_files_and_starts(self, ready_session, fast_config):
        """Test files, chmod, launch command and environment."""
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        await client.install(
            github_access_token="tok",
            user_mcp_config={
                "mcpServers": {"terry": {"command": "evil"}, "fs": {"command": "npx"}}
            },
        )

        assert ready_session.files[DAEMON_FILE_PATH] == BUNDLE.daemon_script
        assert ready_session.files[MCP_SERVER_FILE_PATH] == BUNDLE.mcp_server_script
        mcp_config = json.loads(ready_session.files[MCP_CONFIG_FILE_PATH])
        assert mcp_config == {
            "mcpServers": {
                "terry": {"command": "node", "args": [MCP_SERVER_FILE_PATH]},
                "fs": {"command": "npx"},
            }
        }

        [(chmod, chmod_kwargs)] = ready_session.find("chmod +x")
        assert chmod == f"chmod +x {DAEMON_FILE_PATH}"
        assert chmod_kwargs["cwd"] == "/"

        [(command, kwargs)] = ready_session.background_commands
        assert command == f"node {DAEMON_FILE_PATH} --mcp-config-path {MCP_CONFIG_FILE_PATH}"
        assert kwargs["env"] == {
            "BASH_MAX_TIMEOUT_MS": "60000",
            "GH_TOKEN": "tok",
            "TERRAGON": "true",
            "TERRAGON_FEATURE_FLAGS": "{}",
        }
        assert callable(kwargs["on_output"])

    @pytest.mark.asyncio
    async def test_waits_for_socket(self, fast_config):
        """Test readiness polling until the socket appears."""
        session = ScriptedSession()
        responses = iter(["waiting\n", "waiting\n", "ready\n"])
        session.on(r"test -S", lambda command, kwargs: next(responses))

        await DaemonClient(session, BUNDLE, fast_config).install(github_access_token="tok")

        assert len(session.find("test -S")) == 3

    @pytest.mark.asyncio
    async def test_never_ready(self, fast_config):
        """Test an exhausted readiness wait raises."""
        session = ScriptedSession().on(r"test -S", "waiting\n")

        with pytest.raises(SandboxInitializationError, match="did not become ready"):
            await DaemonClient(session, BUNDLE, fast_config).install(github_access_token="tok")
        assert len(session.find("test -S")) == 3


class TestDaemonLifecycle:
    """Tests for update and restart decisions."""

    @pytest.mark.asyncio
    async def test_update_disabled(self, ready_session, fast_config):
        """Test an outdated daemon is left alone without auto-update."""
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        assert await client.update_if_outdated(False, github_access_token="tok") is False
        assert ready_session.commands == []

    @pytest.mark.asyncio
    async def test_update_current(self, ready_session, fast_config):
        """Test a daemon with a matching hash is not reinstalled."""
        ready_session.on(r"sha256sum", BUNDLE.content_hash() + "\n")
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        assert await client.update_if_outdated(True, github_access_token="tok") is False
        assert ready_session.background_commands == []

    @pytest.mark.asyncio
    async def test_update_outdated(self, ready_session, fast_config):
        """Test an outdated daemon is stopped and reinstalled."""
        ready_session.on(r"sha256sum", "0" * 64 + "\n")
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        assert await client.update_if_outdated(True, github_access_token="tok") is True
        commands = ready_session.command_strings
        assert commands.index(f"pkill -f {DAEMON_FILE_PATH} || true") < commands.index(
            f"chmod +x {DAEMON_FILE_PATH}"
        )
        assert len(ready_session.background_commands) == 1

    @pytest.mark.asyncio
    async def test_restart_when_stopped(self, ready_session, fast_config):
        """Test a dead daemon is restarted."""
        ready_session.on(r"pgrep", "stopped\n")
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        assert await client.restart_if_not_running(github_access_token="tok") is True
        assert len(ready_session.background_commands) == 1

    @pytest.mark.asyncio
    async def test_no_restart_when_running(self, ready_session, fast_config):
        """Test a live daemon is left running."""
        ready_session.on(r"pgrep", "running\n")
        client = DaemonClient(ready_session, BUNDLE, fast_config)

        assert await client.restart_if_not_running(github_access_token="tok") is False
        assert ready_session.background_commands == []


class TestDaemonMessaging:
    """Tests for logs and message delivery."""

    @pytest.mark.asyncio
    async def test_get_logs(self):
        """Test JSON lines are decoded and other lines kept verbatim."""
        session = ScriptedSession().on(
            r"cat /tmp/terragon-daemon.log",
            '{"message": "started", "data": {"pid": 1}}\n'
            "plain text line\n"
            "\n"
            "42\n",
        )

        logs = await DaemonClient(session, BUNDLE).get_logs()

        assert logs == [{"message": "started", "data": {"pid": 1}}, "plain text line", "42"]

    @pytest.mark.asyncio
    async def test_send_message(self):
        """Test the message is piped to the daemon writer."""
        session = ScriptedSession()
        message = DaemonMessage(type="claude", prompt="it's $HOME")

        await DaemonClient(session, BUNDLE).send_message(message)

        [(command, kwargs)] = session.commands
        lines = command.split("\n")
        assert lines[0] == f"cat <<'TERRAGON_DAEMON_MESSAGE' | node {DAEMON_FILE_PATH} --write"
        assert json.loads(lines[1]) == {"type": "claude", "prompt": "it's $HOME"}
        assert lines[2] == "TERRAGON_DAEMON_MESSAGE"
        assert kwargs["cwd"] == "/"
