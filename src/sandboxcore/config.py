# src/sandboxcore/config.py
"""
Configuration management for sandboxcore.

This module handles loading and validation of the orchestration settings
and supports loading from TOML files.

Configuration Hierarchy:
    1. Default values (defined in this module)
    2. Config file (~/.sandboxcore/config.toml, [sandbox] table)
    3. Environment variables (SANDBOXCORE_*)
    4. Runtime overrides (passed to functions)

Example TOML configuration:
    [sandbox]
    environment = "prod"  # prod, dev, test

    [sandbox.retry]
    max_attempts = 3
    delay_ms = 1000

    [sandbox.docker]
    image = "ghcr.io/example/sandbox:latest"

    [sandbox.e2b]
    templates = { small = "sandbox-small", large = "sandbox-large" }

    [sandbox.daytona]
    snapshots = { small = "sandbox-small", large = "sandbox-large" }

    [sandbox.git]
    diff_cutoff = 100000
    integrity_checks = true
    github_app_name = "my-app"

    [sandbox.daemon]
    daemon_script_path = "~/.sandboxcore/bundle/daemon.mjs"
    mcp_server_script_path = "~/.sandboxcore/bundle/mcp-server.mjs"
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .base import Environment

logger = logging.getLogger(__name__)

ENV_PREFIX = "SANDBOXCORE_"

# Default configuration values
DEFAULT_CONFIG: dict[str, Any] = {
    "environment": "prod",
    "retry": {
        "max_attempts": 3,
        "delay_ms": 1000,
    },
    "docker": {
        "image": "ghcr.io/terragon-labs/containers-test:latest",
        "host": None,
        "network": None,
        "name_prefix": "sandboxcore",
        "stop_timeout": 10,
        "default_timeout_ms": 5 * 60 * 1000,
    },
    "e2b": {
        "api_key_env": "E2B_API_KEY",
        "templates": {"small": "terry-small", "large": "terry-large"},
        "sleep_timeout_seconds": 15 * 60,
        "pause_request_timeout_seconds": 2 * 60,
    },
    "daytona": {
        "api_key_env": "DAYTONA_API_KEY",
        "api_url": None,
        "snapshots": {"small": "terry-small", "large": "terry-large"},
        "auto_stop_interval": 15,
        "auto_archive_interval": 5,
        "auto_delete_interval": 60 * 24 * 30,
        "default_timeout_ms": 5 * 60 * 1000,
    },
    "git": {
        "diff_cutoff": 100_000,
        "integrity_checks": True,
        "github_app_name": "",
    },
    "daemon": {
        "daemon_script_path": None,
        "mcp_server_script_path": None,
        "bash_max_timeout_ms": 60_000,
        "ready_poll_attempts": 20,
        "ready_poll_interval_ms": 250,
    },
}


@dataclass
class RetryConfig:
    """Control-plane retry settings."""

    max_attempts: int = 3
    delay_ms: int = 1000


@dataclass
class DockerConfig:
    """Container backend configuration."""

    image: str = DEFAULT_CONFIG["docker"]["image"]
    host: str | None = None
    network: str | None = None
    name_prefix: str = "sandboxcore"
    stop_timeout: int = 10
    default_timeout_ms: int = 5 * 60 * 1000


@dataclass
class E2BConfig:
    """Micro-VM backend configuration."""

    api_key_env: str = "E2B_API_KEY"
    templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CONFIG["e2b"]["templates"])
    )
    sleep_timeout_seconds: int = 15 * 60
    pause_request_timeout_seconds: int = 2 * 60


@dataclass
class DaytonaConfig:
    """Workspace backend configuration."""

    api_key_env: str = "DAYTONA_API_KEY"
    api_url: str | None = None
    snapshots: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CONFIG["daytona"]["snapshots"])
    )
    auto_stop_interval: int = 15
    auto_archive_interval: int = 5
    auto_delete_interval: int = 60 * 24 * 30
    default_timeout_ms: int = 5 * 60 * 1000


@dataclass
class GitConfig:
    """Git operation settings."""

    diff_cutoff: int = 100_000
    integrity_checks: bool = True
    github_app_name: str = ""


@dataclass
class DaemonConfig:
    """In-sandbox daemon settings."""

    daemon_script_path: str | None = None
    mcp_server_script_path: str | None = None
    bash_max_timeout_ms: int = 60_000
    ready_poll_attempts: int = 20
    ready_poll_interval_ms: int = 250


@dataclass
class SandboxSystemConfig:
    """
    Complete sandboxcore configuration.

    Holds the environment used for provider gating plus per-backend,
    retry, git and daemon settings.
    """

    environment: Environment = Environment.PROD
    retry: RetryConfig = field(default_factory=RetryConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    e2b: E2BConfig = field(default_factory=E2BConfig)
    daytona: DaytonaConfig = field(default_factory=DaytonaConfig)
    git: GitConfig = field(default_factory=GitConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)

    def __post_init__(self):
        """Coerce the environment from its string form."""
        if not isinstance(self.environment, Environment):
            self.environment = Environment(str(self.environment).lower())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "environment": self.environment.value,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "delay_ms": self.retry.delay_ms,
            },
            "docker": {
                "image": self.docker.image,
                "host": self.docker.host,
                "network": self.docker.network,
                "name_prefix": self.docker.name_prefix,
                "stop_timeout": self.docker.stop_timeout,
                "default_timeout_ms": self.docker.default_timeout_ms,
            },
            "e2b": {
                "api_key_env": self.e2b.api_key_env,
                "templates": dict(self.e2b.templates),
                "sleep_timeout_seconds": self.e2b.sleep_timeout_seconds,
                "pause_request_timeout_seconds": self.e2b.pause_request_timeout_seconds,
            },
            "daytona": {
                "api_key_env": self.daytona.api_key_env,
                "api_url": self.daytona.api_url,
                "snapshots": dict(self.daytona.snapshots),
                "auto_stop_interval": self.daytona.auto_stop_interval,
                "auto_archive_interval": self.daytona.auto_archive_interval,
                "auto_delete_interval": self.daytona.auto_delete_interval,
                "default_timeout_ms": self.daytona.default_timeout_ms,
            },
            "git": {
                "diff_cutoff": self.git.diff_cutoff,
                "integrity_checks": self.git.integrity_checks,
                "github_app_name": self.git.github_app_name,
            },
            "daemon": {
                "daemon_script_path": self.daemon.daemon_script_path,
                "mcp_server_script_path": self.daemon.mcp_server_script_path,
                "bash_max_timeout_ms": self.daemon.bash_max_timeout_ms,
                "ready_poll_attempts": self.daemon.ready_poll_attempts,
                "ready_poll_interval_ms": self.daemon.ready_poll_interval_ms,
            },
        }


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in override take precedence. Nested dictionaries are merged recursively.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overrides(
    config: dict[str, Any], environ: dict[str, str] | None = None
) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Environment variables follow the pattern:
        SANDBOXCORE_<SECTION>_<KEY>=value

    Examples:
        SANDBOXCORE_ENVIRONMENT=dev
        SANDBOXCORE_DOCKER_IMAGE=my-sandbox:latest
        SANDBOXCORE_GIT_INTEGRITY_CHECKS=false

    Only keys that already exist in the configuration are overridden.
    """
    environ = os.environ if environ is None else environ

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        # SANDBOXCORE_GIT_DIFF_CUTOFF -> ["git", "diff", "cutoff"]
        parts = key[len(ENV_PREFIX) :].lower().split("_")
        whole_key = "_".join(parts)

        if whole_key in config and not isinstance(config[whole_key], dict):
            config[whole_key] = _parse_env_value(value)
            continue

        section = parts[0]
        nested_key = "_".join(parts[1:])
        if section in config and isinstance(config[section], dict):
            if nested_key in config[section]:
                config[section][nested_key] = _parse_env_value(value)
            else:
                logger.debug(f"Ignoring unknown config override {key}")

    return config


def _parse_env_value(value: str) -> Any:
    """
    Parse environment variable value to appropriate type.

    Returns:
        Parsed value (bool, int, float, list, or string)
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # List (comma-separated)
    if "," in value:
        return [v.strip() for v in value.split(",")]

    return value


def default_config_path() -> Path:
    """Return the default TOML config location."""
    return Path.home() / ".sandboxcore" / "config.toml"


def load_toml_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load the ``[sandbox]`` table from a TOML file.

    Args:
        config_path: Path to TOML file (default: ~/.sandboxcore/config.toml)

    Returns:
        Configuration dictionary, empty when the file is missing
    """
    if config_path is None:
        config_path = default_config_path()

    if not config_path.exists():
        logger.debug(f"Config file not found: {config_path}")
        return {}

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(config_path, "rb") as f:
            full_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        return {}

    sandbox_config = full_config.get("sandbox", {})
    logger.debug(f"Loaded sandbox config from {config_path}")
    return sandbox_config


def load_sandbox_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> SandboxSystemConfig:
    """
    Load complete sandboxcore configuration.

    Configuration is loaded and merged in order:
        1. Default values
        2. TOML config file
        3. Environment variables
        4. Runtime overrides

    Args:
        config_path: Optional path to TOML config file
        overrides: Optional runtime overrides
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        SandboxSystemConfig instance
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    toml_config = load_toml_config(config_path)
    if toml_config:
        config = _deep_merge(config, toml_config)

    config = _apply_env_overrides(config, environ)

    if overrides:
        config = _deep_merge(config, overrides)

    retry = config["retry"]
    docker = config["docker"]
    e2b = config["e2b"]
    daytona = config["daytona"]
    git = config["git"]
    daemon = config["daemon"]

    return SandboxSystemConfig(
        environment=Environment(str(config.get("environment", "prod")).lower()),
        retry=RetryConfig(
            max_attempts=retry.get("max_attempts", 3),
            delay_ms=retry.get("delay_ms", 1000),
        ),
        docker=DockerConfig(
            image=docker.get("image", DockerConfig.image),
            host=docker.get("host"),
            network=docker.get("network"),
            name_prefix=docker.get("name_prefix", "sandboxcore"),
            stop_timeout=docker.get("stop_timeout", 10),
            default_timeout_ms=docker.get("default_timeout_ms", 5 * 60 * 1000),
        ),
        e2b=E2BConfig(
            api_key_env=e2b.get("api_key_env", "E2B_API_KEY"),
            templates=dict(e2b.get("templates", {})),
            sleep_timeout_seconds=e2b.get("sleep_timeout_seconds", 15 * 60),
            pause_request_timeout_seconds=e2b.get("pause_request_timeout_seconds", 2 * 60),
        ),
        daytona=DaytonaConfig(
            api_key_env=daytona.get("api_key_env", "DAYTONA_API_KEY"),
            api_url=daytona.get("api_url"),
            snapshots=dict(daytona.get("snapshots", {})),
            auto_stop_interval=daytona.get("auto_stop_interval", 15),
            auto_archive_interval=daytona.get("auto_archive_interval", 5),
            auto_delete_interval=daytona.get("auto_delete_interval", 60 * 24 * 30),
            default_timeout_ms=daytona.get("default_timeout_ms", 5 * 60 * 1000),
        ),
        git=GitConfig(
            diff_cutoff=git.get("diff_cutoff", 100_000),
            integrity_checks=git.get("integrity_checks", True),
            github_app_name=git.get("github_app_name", "") or "",
        ),
        daemon=DaemonConfig(
            daemon_script_path=daemon.get("daemon_script_path"),
            mcp_server_script_path=daemon.get("mcp_server_script_path"),
            bash_max_timeout_ms=daemon.get("bash_max_timeout_ms", 60_000),
            ready_poll_attempts=daemon.get("ready_poll_attempts", 20),
            ready_poll_interval_ms=daemon.get("ready_poll_interval_ms", 250),
        ),
    )


def generate_sample_config() -> str:
    """
    Generate a sample TOML configuration.

    Returns:
        TOML configuration string with comments
    """
    return """# sandboxcore configuration
# Place under ~/.sandboxcore/config.toml

[sandbox]
# prod: only cloud backends (microvm, workspace)
# dev/test: additionally the local container backend and the mock backend
environment = "prod"

[sandbox.retry]
# Applies to create/resume calls against provider control planes only
max_attempts = 3
delay_ms = 1000

[sandbox.docker]
image = "ghcr.io/terragon-labs/containers-test:latest"
# host = "tcp://docker.internal:2376"
name_prefix = "sandboxcore"
stop_timeout = 10

[sandbox.e2b]
api_key_env = "E2B_API_KEY"
templates = { small = "terry-small", large = "terry-large" }
sleep_timeout_seconds = 900

[sandbox.daytona]
api_key_env = "DAYTONA_API_KEY"
snapshots = { small = "terry-small", large = "terry-large" }
auto_stop_interval = 15        # minutes
auto_archive_interval = 5      # minutes
auto_delete_interval = 43200   # minutes (30 days)

[sandbox.git]
# Character cutoff for diffs fed to commit message generation
diff_cutoff = 100000
integrity_checks = true
# Adds a Co-authored-by trailer for <name>[bot]
github_app_name = ""

[sandbox.daemon]
# daemon_script_path = "~/.sandboxcore/bundle/terragon-daemon.mjs"
# mcp_server_script_path = "~/.sandboxcore/bundle/terry-mcp-server.mjs"
bash_max_timeout_ms = 60000
"""


def write_sample_config(path: Path | None = None) -> Path:
    """
    Write the sample configuration to disk.

    Args:
        path: Target path (default: ~/.sandboxcore/config.toml)

    Returns:
        Path the sample was written to
    """
    path = path or default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_sample_config(), encoding="utf-8")
    logger.info(f"Wrote sample configuration to {path}")
    return path
