# src/sandboxcore/setup_pipeline.py
"""
Sandbox setup steps run by the orchestrator.

One-time setup runs only when a sandbox is created:

    1. clone the repository (blobless, no submodules)
    2. create the working branch
    3. run the environment or repository setup script

Every-time setup runs on both create and resume:

    1. shell profile tweaks
    2. git identity
    3. agent instruction and config files
    4. daemon install (create) or refresh (resume)
"""

import logging
from typing import Any

from .agent_config import write_agent_files
from .base import (
    BootingSubstatus,
    CreateSandboxOptions,
    SandboxSession,
    SandboxStatus,
    StatusUpdate,
)
from .daemon import MCP_SERVER_FILE_PATH, DaemonClient
from .env import get_env
from .exceptions import InvalidBranchNameError, SetupScriptError
from .git_ops import validate_branch_name
from .utils import bash_quote, random_id

logger = logging.getLogger(__name__)

CUSTOM_SETUP_SCRIPT_PATH = "/tmp/terragon-setup-custom.sh"
REPO_SETUP_SCRIPT_NAME = "terragon-setup.sh"
SETUP_SCRIPT_TIMEOUT_MS = 15 * 60 * 1000
BRANCH_PREFIX = "terragon/"

PROFILE_LINES = (
    "ulimit -c 0",
    "[ -f ~/.bashrc ] && . ~/.bashrc",
)


async def _emit(session: SandboxSession, options: CreateSandboxOptions, substatus: BootingSubstatus) -> None:
    await options.on_status_update(
        StatusUpdate(
            sandbox_id=session.sandbox_id,
            sandbox_status=SandboxStatus.BOOTING,
            booting_status=substatus,
        )
    )


async def git_clone_repo(session: SandboxSession, options: CreateSandboxOptions) -> None:
    """Blobless clone of the repository into ``~/repo``."""
    base = options.repo_base_branch_name
    branch_arg = ""
    if base:
        validate_branch_name(base, label="base branch name")
        branch_arg = f"--branch {bash_quote(base)} "
    await session.run_command(
        f"git clone --filter=blob:none --no-recurse-submodules {branch_arg}"
        f"https://github.com/{options.github_repo_full_name}.git {session.repo_dir}",
        cwd=".",
    )


def generate_random_branch_name() -> str:
    """Return ``terragon/xxxxxx-xxxxxx``."""
    return f"{BRANCH_PREFIX}{random_id(6)}-{random_id(6)}"


async def _working_branch_name(options: CreateSandboxOptions) -> str:
    if options.branch_name:
        validate_branch_name(options.branch_name)
        return options.branch_name

    try:
        generated = await options.generate_branch_name(options.thread_name)
    except Exception as e:
        logger.warning(f"Branch name generation failed, using a random name: {e}")
        generated = None

    if generated:
        try:
            validate_branch_name(generated)
            return generated
        except InvalidBranchNameError as e:
            logger.warning(f"Generated branch name rejected, using a random name: {e}")
    return generate_random_branch_name()


async def _run_setup_script(session: SandboxSession, options: CreateSandboxOptions) -> None:
    env = get_env(
        options.github_access_token,
        options.environment_variables,
        options.agent_credentials,
        overrides={"TERM": "xterm", "CI": "true"},
    )
    output: list[str] = []

    if options.setup_script:
        await session.write_text_file(CUSTOM_SETUP_SCRIPT_PATH, options.setup_script)
        await session.run_command(f"chmod +x {CUSTOM_SETUP_SCRIPT_PATH}")
        command = f"bash -x {CUSTOM_SETUP_SCRIPT_PATH}"
    else:
        command = (
            f"if [ -f {REPO_SETUP_SCRIPT_NAME} ]; then chmod +x {REPO_SETUP_SCRIPT_NAME} "
            f"&& bash -x ./{REPO_SETUP_SCRIPT_NAME}; fi"
        )

    try:
        await session.run_command(
            command,
            env=env,
            timeout_ms=SETUP_SCRIPT_TIMEOUT_MS,
            on_stdout=output.append,
            on_stderr=output.append,
        )
    except Exception as e:
        logger.error(f"Setup script failed in sandbox {session.sandbox_id}: {e}")
        raise SetupScriptError(
            f"Setup script failed: {e}",
            sandbox_id=session.sandbox_id,
            details={"output": "".join(output)[-10_000:]},
        ) from e
    finally:
        if output:
            logger.info(f"Setup script output:\n{''.join(output)}")


async def setup_sandbox_one_time(session: SandboxSession, options: CreateSandboxOptions) -> None:
    """
    Clone, branch and run the setup script in a freshly created sandbox.

    Raises:
        SetupScriptError: If the setup script fails
        SandboxExecutionError: If cloning or branch creation fails
    """
    await _emit(session, options, BootingSubstatus.CLONING_REPO)
    await git_clone_repo(session, options)

    if options.create_new_branch:
        branch = await _working_branch_name(options)
        await session.run_command(f"git checkout -b {bash_quote(branch)}")
        logger.info(f"Created branch {branch} in sandbox {session.sandbox_id}")

    if not options.skip_setup_script:
        await _emit(session, options, BootingSubstatus.RUNNING_SETUP_SCRIPT)
        await _run_setup_script(session, options)


async def _configure_profile(session: SandboxSession) -> None:
    commands = [
        f"(grep -qxF {bash_quote(line)} ~/.profile 2>/dev/null || echo {bash_quote(line)} >> ~/.profile)"
        for line in PROFILE_LINES
    ]
    await session.run_command(" && ".join(commands), cwd="/")


async def _configure_git_identity(session: SandboxSession, options: CreateSandboxOptions) -> None:
    if options.user_name:
        await session.run_command(
            f"git config --global user.name {bash_quote(options.user_name)}", cwd="/"
        )
    if options.user_email:
        await session.run_command(
            f"git config --global user.email {bash_quote(options.user_email)}", cwd="/"
        )


async def setup_sandbox_every_time(
    session: SandboxSession,
    options: CreateSandboxOptions,
    is_creating_sandbox: bool,
    daemon: DaemonClient | None = None,
) -> None:
    """
    Refresh per-boot state: profile, git identity, agent files and daemon.

    Args:
        session: Sandbox session
        options: Sandbox request
        is_creating_sandbox: Install the daemon (True) or refresh it (False)
        daemon: Daemon client; daemon steps are skipped when None
    """
    await _configure_profile(session)
    home = (await session.run_command("cd && pwd", cwd="/")).strip() or session.home_path
    await _configure_git_identity(session, options)
    await write_agent_files(
        session, options, home, terry_command="node", terry_args=[MCP_SERVER_FILE_PATH]
    )

    if daemon is None:
        return

    install_kwargs: dict[str, Any] = {
        "github_access_token": options.github_access_token,
        "environment_variables": options.environment_variables,
        "agent_credentials": options.agent_credentials,
        "user_mcp_config": options.mcp_config,
        "feature_flags": options.feature_flags,
    }
    if is_creating_sandbox:
        await _emit(session, options, BootingSubstatus.INSTALLING_SANDBOX_SCRIPTS)
        await daemon.install(**install_kwargs)
    else:
        await daemon.update_if_outdated(options.auto_update_daemon, **install_kwargs)
        await daemon.restart_if_not_running(**install_kwargs)
