# src/sandboxcore/mcp_config.py
"""
MCP (Model Context Protocol) server configuration models, validation and
merging with the built-in server.

Schema::

    {"mcpServers": {
        "<name>": {"command": str, "args"?: [str], "env"?: {str: str}}
                | {"type": "http" | "sse", "url": str,
                   "headers"?: {str: str}, "env"?: {str: str}}
    }}

The server name ``terry`` is reserved for the built-in server. User input
containing it is rejected by ``validate_mcp_config`` and silently dropped by
``build_merged_mcp_config``.
"""

import logging
from typing import Any, Literal, Mapping, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import McpConfigError

logger = logging.getLogger(__name__)

RESERVED_SERVER_NAME = "terry"


class CommandMcpServer(BaseModel):
    """An MCP server launched as a local process."""

    command: str = Field(description="Executable to launch.")
    args: list[str] | None = Field(default=None, description="Command arguments.")
    env: dict[str, str] | None = Field(default=None, description="Extra environment.")

    @field_validator("command")
    @classmethod
    def _command_required(cls, value: str) -> str:
        if not value:
            raise ValueError("Command is required")
        return value


class _RemoteMcpServer(BaseModel):
    url: str = Field(description="Server endpoint.")
    headers: dict[str, str] | None = Field(default=None, description="HTTP headers.")
    env: dict[str, str] | None = Field(default=None, description="Extra environment.")

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("Must be a valid URL")
        return value


class HttpMcpServer(_RemoteMcpServer):
    """An MCP server reached over streamable HTTP."""

    type: Literal["http"] = "http"


class SseMcpServer(_RemoteMcpServer):
    """An MCP server reached over server-sent events."""

    type: Literal["sse"] = "sse"


McpServer = Union[CommandMcpServer, HttpMcpServer, SseMcpServer]

_REMOTE_MODELS: dict[str, type[BaseModel]] = {"http": HttpMcpServer, "sse": SseMcpServer}


class McpConfig(BaseModel):
    """A validated MCP configuration."""

    mcpServers: dict[str, McpServer] = Field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize without unset optional fields."""
        return {
            "mcpServers": {
                name: server.model_dump(exclude_none=True)
                for name, server in self.mcpServers.items()
            }
        }


def _format_error(prefix: list[Any], exc: ValidationError) -> str:
    """Render the most specific pydantic error as ``path: message``."""
    errors = exc.errors()
    best = max(errors, key=lambda err: len(err["loc"]))
    path = ".".join(str(part) for part in [*prefix, *best["loc"]])
    if best["type"] == "missing":
        message = "Required"
    elif best["type"] == "value_error":
        message = str(best.get("ctx", {}).get("error", best["msg"]))
    else:
        message = best["msg"]
    return f"{path}: {message}" if path else message


def _select_model(name: str, raw: Mapping[str, Any]) -> type[BaseModel]:
    if "type" in raw:
        server_type = raw["type"]
        if server_type not in _REMOTE_MODELS:
            raise McpConfigError(
                f"mcpServers.{name}.type: Input should be 'http' or 'sse'",
                details={"server": name},
            )
        return _REMOTE_MODELS[server_type]
    if "url" in raw:
        raise McpConfigError(
            f'mcpServers.{name}: When using a URL, you must specify type: "http". '
            f'Add type: "http" to use an HTTP-based MCP server.',
            details={"server": name},
        )
    return CommandMcpServer


def validate_mcp_config(raw: Any) -> McpConfig:
    """
    Validate a user-supplied MCP configuration.

    Args:
        raw: Decoded JSON value

    Returns:
        The validated McpConfig

    Raises:
        McpConfigError: With the single most specific problem found
    """
    if not isinstance(raw, Mapping):
        raise McpConfigError("Invalid MCP configuration")
    if "mcpServers" not in raw:
        raise McpConfigError("mcpServers: Required")

    servers_raw = raw["mcpServers"]
    if not isinstance(servers_raw, Mapping):
        raise McpConfigError("mcpServers: Expected object")

    servers: dict[str, McpServer] = {}
    for name, server_raw in servers_raw.items():
        if not isinstance(server_raw, Mapping):
            raise McpConfigError(f"mcpServers.{name}: Expected object")
        model = _select_model(name, server_raw)
        try:
            servers[name] = model.model_validate(dict(server_raw))
        except ValidationError as e:
            raise McpConfigError(_format_error(["mcpServers", name], e)) from e

    if RESERVED_SERVER_NAME in servers:
        raise McpConfigError(
            f"Cannot override the built-in '{RESERVED_SERVER_NAME}' server. "
            f"Please use a different server name."
        )

    return McpConfig(mcpServers=servers)


def _servers_of(user_config: McpConfig | Mapping[str, Any] | None) -> dict[str, Any]:
    if user_config is None:
        return {}
    if isinstance(user_config, McpConfig):
        return user_config.to_json_dict()["mcpServers"]
    return dict(user_config.get("mcpServers") or {})


def build_merged_mcp_config(
    user_config: McpConfig | Mapping[str, Any] | None,
    include_terry: bool,
    terry_command: str,
    terry_args: list[str],
) -> dict[str, Any]:
    """
    Merge a user MCP config with the built-in server.

    Any user-supplied ``terry`` entry is dropped. When ``include_terry`` is
    True the built-in entry is inserted first; otherwise it is absent.

    Args:
        user_config: Validated config, raw mapping, or None
        include_terry: Whether to add the built-in server
        terry_command: Built-in server executable
        terry_args: Built-in server arguments

    Returns:
        ``{"mcpServers": {...}}`` ready to be serialized to JSON
    """
    user_servers = _servers_of(user_config)
    if RESERVED_SERVER_NAME in user_servers:
        logger.warning(f"Dropping user-supplied '{RESERVED_SERVER_NAME}' MCP server entry")

    merged: dict[str, Any] = {}
    if include_terry:
        merged[RESERVED_SERVER_NAME] = {"command": terry_command, "args": list(terry_args)}
    for name, server in user_servers.items():
        if name == RESERVED_SERVER_NAME:
            continue
        merged[name] = server
    return {"mcpServers": merged}
