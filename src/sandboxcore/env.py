# src/sandboxcore/env.py
"""
Environment composition for commands that run on behalf of a user.

Precedence, lowest to highest:
    1. ``GH_TOKEN`` from the GitHub access token
    2. User environment variables (may override ``GH_TOKEN``)
    3. ``env-var`` agent credentials
    4. Explicit overrides
``TERRAGON=true`` is always set last and cannot be overridden.
"""

from typing import Iterable, Mapping

from .base import AgentCredentials, EnvironmentVariable

ENV_VAR_CREDENTIAL_TYPE = "env-var"


def get_env(
    github_access_token: str | None,
    environment_variables: Iterable[EnvironmentVariable] = (),
    agent_credentials: AgentCredentials | None = None,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Build the environment for a user-facing process in the sandbox.

    Args:
        github_access_token: Token exported as ``GH_TOKEN``
        environment_variables: User-supplied variables
        agent_credentials: Agent credentials; only ``env-var`` types apply
        overrides: Highest-precedence values

    Returns:
        Environment mapping
    """
    env: dict[str, str] = {}
    if github_access_token:
        env["GH_TOKEN"] = github_access_token
    for var in environment_variables:
        env[var.key] = var.value
    if agent_credentials is not None and agent_credentials.type == ENV_VAR_CREDENTIAL_TYPE:
        env.update(agent_credentials.contents)
    if overrides:
        env.update(overrides)
    env["TERRAGON"] = "true"
    return env
