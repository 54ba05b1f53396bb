# src/sandboxcore/agent_config.py
"""
Per-agent configuration files written into the sandbox home directory.

    - codex: ``~/.codex/config.toml`` (MCP servers, model proxy) and
      ``~/.codex/AGENTS.md``
    - amp: ``~/.config/AGENTS.md``
    - everything else: ``~/.claude/CLAUDE.md``
"""

import logging
import posixpath
from typing import Any, Mapping

import toml

from .base import AgentKind, CreateSandboxOptions, SandboxSession
from .mcp_config import RESERVED_SERVER_NAME, McpConfig, build_merged_mcp_config

logger = logging.getLogger(__name__)

CODEX_CONFIG_HEADER = "# IMPORTANT: the top-level key is `mcp_servers` rather than `mcpServers`.\n"
CODEX_MCP_STARTUP_TIMEOUT_MS = 20_000
MODEL_PROXY_PATH = "/api/proxy/openai/v1"


def build_codex_toml(
    user_mcp_config: McpConfig | Mapping[str, Any] | None,
    include_terry: bool,
    terry_command: str,
    terry_args: list[str],
    model_provider_base_url: str | None = None,
) -> str:
    """
    Render the codex ``config.toml``.

    Only command-based MCP servers are kept; codex cannot reach HTTP or
    SSE servers.
    """
    merged = build_merged_mcp_config(user_mcp_config, include_terry, terry_command, terry_args)

    mcp_servers: dict[str, Any] = {}
    for name, server in merged["mcpServers"].items():
        if "command" not in server:
            continue
        entry: dict[str, Any] = {"command": server["command"]}
        if server.get("args"):
            entry["args"] = list(server["args"])
        if server.get("env"):
            entry["env"] = dict(server["env"])
        entry["startup_timeout_ms"] = CODEX_MCP_STARTUP_TIMEOUT_MS
        mcp_servers[name] = entry

    document: dict[str, Any] = {}
    if model_provider_base_url:
        document["model_providers"] = {
            RESERVED_SERVER_NAME: {
                "name": RESERVED_SERVER_NAME,
                "base_url": model_provider_base_url,
                "env_http_headers": {"X-Daemon-Token": "DAEMON_TOKEN"},
                "wire_api": "responses",
            }
        }
    document["mcp_servers"] = mcp_servers
    document["shell_environment_policy"] = {"inherit": "all", "ignore_default_excludes": True}
    document["tools"] = {"web_search": True}

    return CODEX_CONFIG_HEADER + toml.dumps(document)


def system_prompt_path(agent: AgentKind | str | None, home: str) -> str:
    """Where the agent reads its custom instructions from."""
    agent = AgentKind(agent) if agent else None
    if agent == AgentKind.CODEX:
        return posixpath.join(home, ".codex", "AGENTS.md")
    if agent == AgentKind.AMP:
        return posixpath.join(home, ".config", "AGENTS.md")
    return posixpath.join(home, ".claude", "CLAUDE.md")


async def write_agent_files(
    session: SandboxSession,
    options: CreateSandboxOptions,
    home: str,
    terry_command: str = "node",
    terry_args: list[str] | None = None,
) -> None:
    """
    Write the custom system prompt and, for codex, its config file.

    Args:
        session: Sandbox session
        options: Sandbox request
        home: Absolute home directory inside the sandbox
        terry_command: Built-in MCP server executable
        terry_args: Built-in MCP server arguments
    """
    if options.custom_system_prompt:
        prompt_path = system_prompt_path(options.agent, home)
        await session.run_command(f"mkdir -p {posixpath.dirname(prompt_path)}", cwd="/")
        await session.write_text_file(prompt_path, options.custom_system_prompt)
        await session.run_command(f"chmod 644 {prompt_path}", cwd="/")
        logger.debug(f"Wrote system prompt to {prompt_path}")

    if options.agent == AgentKind.CODEX:
        codex_dir = posixpath.join(home, ".codex")
        base_url = f"{options.public_url}{MODEL_PROXY_PATH}" if options.public_url else None
        await session.run_command(f"mkdir -p {codex_dir}", cwd="/")
        await session.write_text_file(
            posixpath.join(codex_dir, "config.toml"),
            build_codex_toml(
                options.mcp_config,
                include_terry=True,
                terry_command=terry_command,
                terry_args=terry_args or [],
                model_provider_base_url=base_url,
            ),
        )
