# src/sandboxcore/git_ops.py
"""
Git operations executed inside a sandbox.

Every function is stateless and drives git through literal shell command
strings on a SandboxSession. Branch and ref names are interpolated into
those strings, so each one passes ``validate_branch_name`` first; that
denylist is the only injection defense.

Two error disciplines apply:

    - Push outcomes (conflict, rejection, auth, network) are expected and
      returned as a ``PushResult``.
    - Integrity failures and commit failures have no safe recovery and
      are raised.

Usage:
    >>> result = await git_commit_and_push_branch(
    ...     session,
    ...     github_app_name="my-app",
    ...     generate_commit_message=summarize_diff,
    ... )
    >>> result.branch_name or result.error_message
"""

import logging
import re
import time
from typing import Awaitable, Callable

from .base import CommitAndPushResult, GitDiffStats, PushErrorCode, PushResult, SandboxSession
from .exceptions import GitIntegrityError, InvalidBranchNameError, SandboxExecutionError
from .utils import bash_quote

logger = logging.getLogger(__name__)

# Characters that must never reach a shell command through a branch name
DANGEROUS_CHARS_REGEX = re.compile(r"[\x00-\x1f\x7f$`\"'\\;|&<>(){}\[\]!*?~#\s]")

DIFF_CUTOFF = 100_000

SHORTSTAT_REGEX = re.compile(
    r"(\d+) files? changed(?:,\s*(\d+) insertions?\(\+\))?(?:,\s*(\d+) deletions?\(-\))?"
)

FALLBACK_COMMIT_MESSAGE = "Update code"

_NON_FAST_FORWARD_MARKERS = ("non-fast-forward", "fetch first", "Updates were rejected")
_CONFLICT_MARKERS = ("CONFLICT", "could not apply")
_AUTH_MARKERS = ("Authentication failed", "Permission denied", "could not read Username")
_NETWORK_MARKERS = ("Could not resolve host", "Connection refused", "Operation timed out")


def validate_branch_name(branch_name: str, label: str = "branch name") -> None:
    """
    Reject branch/ref names containing shell metacharacters.

    Raises:
        InvalidBranchNameError: If a dangerous character is present
    """
    if DANGEROUS_CHARS_REGEX.search(branch_name):
        raise InvalidBranchNameError(branch_name, label=label)


async def get_git_default_branch(session: SandboxSession, repo_root: str | None = None) -> str:
    """
    Resolve the remote's default branch.

    Tries, in order: the local ``origin/HEAD`` symbolic ref, ``ls-remote
    --symref`` against the remote, ``init.defaultBranch`` and the ``HEAD
    branch`` line of ``git remote show origin``. Each step's failure is
    ignored. Falls back to ``main``.
    """
    logger.debug(f"Resolving default branch (repo_root={repo_root})")

    try:
        origin_head = await session.run_command(
            "git symbolic-ref refs/remotes/origin/HEAD 2>/dev/null || true", cwd=repo_root
        )
        branch = origin_head.strip().replace("refs/remotes/origin/", "")
        if branch:
            return branch
    except Exception as e:
        logger.debug(f"symbolic-ref lookup failed: {e}")

    try:
        remote_symref = await session.run_command(
            "git ls-remote --symref origin HEAD 2>/dev/null | grep '^ref:' | awk '{print $2}' || true",
            cwd=repo_root,
        )
        if remote_symref.strip().startswith("refs/heads/"):
            return remote_symref.strip().replace("refs/heads/", "", 1)
    except Exception as e:
        logger.debug(f"ls-remote lookup failed: {e}")

    try:
        config_default = await session.run_command(
            "git config init.defaultBranch 2>/dev/null || true", cwd=repo_root
        )
        if config_default.strip():
            return config_default.strip()
    except Exception as e:
        logger.debug(f"init.defaultBranch lookup failed: {e}")

    try:
        remote_info = await session.run_command(
            "git remote show origin 2>/dev/null | grep 'HEAD branch' | cut -d' ' -f5 || true",
            cwd=repo_root,
        )
        head_branch = remote_info.strip()
        if head_branch and head_branch != "(unknown)":
            return head_branch
    except Exception as e:
        logger.debug(f"remote show lookup failed: {e}")

    return "main"


async def get_current_branch_name(session: SandboxSession, repo_root: str | None = None) -> str:
    """Return the checked-out branch name."""
    output = await session.run_command("git rev-parse --abbrev-ref HEAD", cwd=repo_root)
    return output.strip()


async def get_effective_base_branch(
    session: SandboxSession, base_branch: str, repo_root: str | None = None
) -> str:
    """
    Pick the ref to diff against, preferring the remote copy of ``base_branch``.

    When the current branch tracks an upstream, the upstream's remote is
    fetched (best effort) and ``<remote>/<base_branch>`` is returned unless
    ``base_branch`` already carries that prefix. Without an upstream the
    base branch is used as given.

    Raises:
        InvalidBranchNameError: If the resulting ref is unsafe
    """
    effective = base_branch

    try:
        upstream = (
            await session.run_command(
                "git rev-parse --abbrev-ref --symbolic-full-name @{upstream} 2>/dev/null || true",
                cwd=repo_root,
            )
        ).strip()

        if upstream:
            validate_branch_name(upstream, label="upstream branch name")
            remote_name = upstream.split("/")[0]
            if not remote_name:
                raise InvalidBranchNameError(upstream, label="upstream branch name")
            validate_branch_name(remote_name, label="remote name")

            if base_branch.startswith(f"{remote_name}/"):
                branch_without_remote = "/".join(base_branch.split("/")[1:])
                logger.info(f"Fetching latest changes for {branch_without_remote} from {remote_name}...")
                try:
                    await session.run_command(
                        f"git fetch {remote_name} {branch_without_remote}", cwd=repo_root
                    )
                except Exception:
                    logger.warning(
                        f"Failed to fetch {remote_name}/{branch_without_remote}, using local version"
                    )
            else:
                logger.info(f"Fetching latest changes from {remote_name}...")
                try:
                    await session.run_command(f"git fetch {remote_name} {base_branch}", cwd=repo_root)
                except Exception:
                    logger.warning(f"Failed to fetch {remote_name}/{base_branch}, using local version")
                effective = f"{remote_name}/{base_branch}"

            logger.info(f"Using base branch: {effective}")
    except Exception as e:
        logger.info(f"No upstream branch found, using: {effective} ({e})")

    validate_branch_name(effective, label="effective base branch name")
    return effective


async def _resolve_base(
    session: SandboxSession, base_branch: str | None, repo_root: str | None
) -> str:
    base = base_branch or await get_git_default_branch(session, repo_root)
    validate_branch_name(base)
    # Untracked files show up in the diff once they are intent-to-add
    await session.run_command("git add -N .", cwd=repo_root)
    return await get_effective_base_branch(session, base, repo_root)


async def git_diff(
    session: SandboxSession,
    base_branch: str | None = None,
    output_file: str = "git-diff.patch",
    repo_root: str | None = None,
    character_cutoff: int | None = None,
) -> str:
    """
    Write the patch of the work tree against the merge base with the base branch.

    The patch is truncated to ``character_cutoff`` characters; the stat
    header comes first so it survives truncation.

    Returns:
        ``Git diff written to: <output_file>``
    """
    cutoff = character_cutoff or DIFF_CUTOFF
    try:
        effective = await _resolve_base(session, base_branch, repo_root)
        full_output_path = (
            f"{repo_root}/{output_file}"
            if repo_root and not output_file.startswith("/")
            else output_file
        )
        await session.run_command(
            f"git diff --patch-with-stat --no-color $(git merge-base HEAD {effective}) "
            f"| head -c {cutoff} > {full_output_path}",
            cwd=repo_root,
        )
    except Exception as e:
        logger.error(f"Error generating git diff: {e}")
        raise

    logger.info(f"Git diff written to: {output_file}")
    return f"Git diff written to: {output_file}"


def parse_git_shortstat(shortstat_output: str) -> GitDiffStats:
    """
    Parse ``git diff --shortstat`` output.

    Examples:
        >>> parse_git_shortstat(" 2 files changed, 10 insertions(+), 3 deletions(-)")
        GitDiffStats(files=2, additions=10, deletions=3)
        >>> parse_git_shortstat(" 1 file changed, 5 insertions(+)")
        GitDiffStats(files=1, additions=5, deletions=0)
        >>> parse_git_shortstat("")
        GitDiffStats(files=0, additions=0, deletions=0)
    """
    if not shortstat_output.strip():
        return GitDiffStats()

    match = SHORTSTAT_REGEX.search(shortstat_output)
    if not match:
        logger.error(f"Failed to parse git diff --shortstat output: {shortstat_output!r}")
        return GitDiffStats()

    files, additions, deletions = (int(group or 0) for group in match.groups())
    return GitDiffStats(files=files, additions=additions, deletions=deletions)


async def git_diff_stats(
    session: SandboxSession, base_branch: str | None = None, repo_root: str | None = None
) -> GitDiffStats:
    """Count files, insertions and deletions against the merge base."""
    try:
        effective = await _resolve_base(session, base_branch, repo_root)
        output = await session.run_command(
            f"git diff --shortstat $(git merge-base HEAD {effective})", cwd=repo_root
        )
    except Exception as e:
        logger.error(f"Error generating git diff stats: {e}")
        raise

    stats = parse_git_shortstat(output)
    logger.info(f"Git diff stats: {stats.files} files, +{stats.additions}, -{stats.deletions}")
    return stats


async def verify_git_integrity(
    session: SandboxSession,
    operation: str,
    repo_root: str | None = None,
    enabled: bool = True,
    reset_on_failure: bool = True,
) -> None:
    """
    Run ``git fsck`` after an operation that may materialize blobs.

    Blobless clones fetch file contents lazily, and a failed fetch can
    leave corrupt objects behind. On failure the index is reset (best
    effort) so corrupt blobs are not committed.

    Raises:
        GitIntegrityError: If fsck reports a problem
    """
    if not enabled:
        return
    try:
        await session.run_command("git fsck --no-dangling --no-progress", cwd=repo_root)
    except Exception as e:
        logger.error(f"Git integrity check failed after {operation}: {e}")
        if reset_on_failure:
            try:
                await session.run_command("git reset", cwd=repo_root)
            except Exception as reset_error:
                logger.warning(f"git reset after failed integrity check also failed: {reset_error}")
        raise GitIntegrityError(operation, details={"error": str(e)}) from e


async def _ref_exists(session: SandboxSession, ref: str, repo_root: str | None) -> bool:
    output = await session.run_command(
        f"git rev-parse --verify --quiet {ref} >/dev/null 2>&1 && echo yes || echo no",
        cwd=repo_root,
    )
    return output.strip() == "yes"


async def is_local_branch_ahead_of_remote(
    session: SandboxSession,
    branch: str,
    base_branch: str | None = None,
    repo_root: str | None = None,
) -> bool:
    """
    Check whether ``branch`` has commits its remote does not.

    Compares with ``origin/<branch>`` when that exists, otherwise with
    ``origin/<base_branch>``. A branch with neither remote ref counts as
    ahead.
    """
    validate_branch_name(branch)
    base = base_branch or await get_git_default_branch(session, repo_root)
    validate_branch_name(base)

    for remote_ref in (f"origin/{branch}", f"origin/{base}"):
        if await _ref_exists(session, remote_ref, repo_root):
            count = await session.run_command(
                f"git rev-list --count {remote_ref}..HEAD", cwd=repo_root
            )
            ahead = int(count.strip() or "0") > 0
            logger.debug(f"Branch {branch} ahead of {remote_ref}: {ahead}")
            return ahead

    logger.debug(f"No remote ref for {branch} or {base}; treating as ahead")
    return True


async def git_push_with_rebase(
    session: SandboxSession,
    branch: str | None = None,
    set_upstream: bool = True,
    repo_root: str | None = None,
) -> PushResult:
    """
    Push a branch, rebasing once onto the remote if the push is rejected.

    Every outcome is returned as a PushResult; nothing is raised. A
    rejected push with a dirty work tree is not rebased. A rebase with
    conflicts is aborted and reported as CONFLICT. The rebase-and-push
    recovery runs at most once.

    Args:
        session: Sandbox session
        branch: Branch to push (default: current branch)
        set_upstream: Pass ``-u`` to ``git push``
        repo_root: Repository directory

    Returns:
        PushResult
    """
    try:
        if not branch:
            branch = await get_current_branch_name(session, repo_root)

        if DANGEROUS_CHARS_REGEX.search(branch):
            return PushResult(
                success=False,
                message=f"Invalid branch name: {branch} (contains dangerous characters)",
                error=PushErrorCode.UNKNOWN,
            )

        default_branch = await get_git_default_branch(session, repo_root)
        if branch == default_branch:
            return PushResult(
                success=False,
                message=f"Cannot push directly to default branch {branch}",
                error=PushErrorCode.REJECTED,
            )

        push_cmd = f"git push -u origin {branch}" if set_upstream else f"git push origin {branch}"

        try:
            await session.run_command(push_cmd, cwd=repo_root)
            return PushResult(
                success=True,
                did_update=False,
                message=f"Successfully pushed branch '{branch}' to origin",
            )
        except Exception as push_error:
            output = str(push_error)

        if "! [rejected]" in output and any(m in output for m in _NON_FAST_FORWARD_MARKERS):
            return await _rebase_and_retry_push(session, branch, push_cmd, repo_root)

        if any(marker in output for marker in _AUTH_MARKERS):
            return PushResult(
                success=False,
                message="Authentication failed. Please check your git credentials.",
                error=PushErrorCode.AUTH,
            )
        if any(marker in output for marker in _NETWORK_MARKERS):
            return PushResult(
                success=False,
                message="Network error: Could not connect to remote repository.",
                error=PushErrorCode.NETWORK,
            )
        if "! [rejected]" in output:
            return PushResult(
                success=False, message=f"Push rejected: {output}", error=PushErrorCode.REJECTED
            )
        return PushResult(success=False, message=f"Push failed: {output}", error=PushErrorCode.UNKNOWN)
    except Exception as e:
        return PushResult(success=False, message=f"Unexpected error: {e}", error=PushErrorCode.UNKNOWN)


async def _rebase_and_retry_push(
    session: SandboxSession, branch: str, push_cmd: str, repo_root: str | None
) -> PushResult:
    # fetch -> dirty check -> rebase -> push; strictly in this order
    try:
        await session.run_command("git fetch origin", cwd=repo_root)
        num_changes = await session.run_command("git status --porcelain | wc -l", cwd=repo_root)
    except Exception as e:
        return PushResult(
            success=False, message=f"Failed to pull changes: {e}", error=PushErrorCode.UNKNOWN
        )

    if num_changes.strip() != "0":
        return PushResult(
            success=False,
            message="Cannot push: there are uncommitted changes.",
            error=PushErrorCode.REJECTED,
        )

    try:
        await session.run_command(f"git rebase origin/{branch}", cwd=repo_root)
        await session.run_command(push_cmd, cwd=repo_root)
        return PushResult(
            success=True,
            did_update=True,
            message=f"Successfully pushed branch '{branch}' after rebasing",
        )
    except Exception as rebase_error:
        rebase_output = str(rebase_error)

    try:
        await session.run_command("git rebase --abort", cwd=repo_root)
    except Exception as abort_error:
        logger.debug(f"git rebase --abort failed: {abort_error}")

    if any(marker in rebase_output for marker in _CONFLICT_MARKERS):
        return PushResult(
            success=False,
            message=(
                f"Cannot push: merge conflicts detected when rebasing onto origin/{branch}. "
                f"Manual intervention required."
            ),
            error=PushErrorCode.CONFLICT,
        )
    return PushResult(
        success=False, message=f"Failed to rebase: {rebase_output}", error=PushErrorCode.UNKNOWN
    )


async def git_pull_upstream(session: SandboxSession, repo_root: str | None = None) -> bool:
    """
    Merge the upstream branch into the current one.

    Returns:
        True when the pull succeeded, False when histories diverged in a
        way git refuses to merge automatically

    Raises:
        SandboxExecutionError: For any other pull failure
    """
    try:
        await session.run_command("git pull --no-rebase --no-edit", cwd=repo_root)
        return True
    except SandboxExecutionError as e:
        message = str(e)
        if "non-fast-forward" in message or "diverg" in message or "CONFLICT" in message:
            logger.warning(f"Could not pull upstream changes: {message}")
            if "CONFLICT" in message:
                try:
                    await session.run_command("git merge --abort", cwd=repo_root)
                except Exception as abort_error:
                    logger.debug(f"git merge --abort failed: {abort_error}")
            return False
        raise


async def _commit_changes_if_needed(
    session: SandboxSession,
    github_app_name: str,
    generate_commit_message: Callable[[str], Awaitable[str]],
    repo_root: str | None,
    enable_integrity_checks: bool,
    character_cutoff: int,
) -> bool:
    num_changes = await session.run_command("git status --porcelain | wc -l", cwd=repo_root)
    if num_changes.strip() == "0":
        return False

    commit_message = FALLBACK_COMMIT_MESSAGE
    temp_patch_file = f"/tmp/patch_{int(time.time() * 1000)}.patch"
    try:
        await session.run_command("git add -N .", cwd=repo_root)
        await verify_git_integrity(
            session, "git add -N", repo_root=repo_root, enabled=enable_integrity_checks
        )
        try:
            # --patch-with-stat keeps the file summary ahead of the cutoff
            await session.run_command(
                f"git diff HEAD --no-color --patch-with-stat "
                f"| head -c {character_cutoff} > {temp_patch_file}",
                cwd=repo_root,
            )
            diff_with_cutoff = await session.read_text_file(temp_patch_file)
        finally:
            await session.run_command(f"rm -f {temp_patch_file}", cwd=repo_root)
        commit_message = await generate_commit_message(diff_with_cutoff)
    except GitIntegrityError:
        raise
    except Exception as e:
        logger.error(f"Failed to generate commit message, using fallback: {e}")

    co_author_trailer = (
        f"\n\nCo-authored-by: {github_app_name}[bot] "
        f"<{github_app_name}[bot]@users.noreply.github.com>"
        if github_app_name
        else ""
    )

    temp_commit_file = f"/tmp/commit_{int(time.time() * 1000)}.txt"
    await session.write_text_file(temp_commit_file, commit_message + co_author_trailer)
    try:
        await session.run_command("git add -A", cwd=repo_root)
        await verify_git_integrity(
            session, "git add -A", repo_root=repo_root, enabled=enable_integrity_checks
        )
        await session.run_command(
            "bash -c "
            + bash_quote(f"set -o pipefail; git commit -F {temp_commit_file} | head -n 50"),
            cwd=repo_root,
        )
    finally:
        await session.run_command(f"rm {temp_commit_file}", cwd=repo_root)
    return True


async def _push_current_branch(
    session: SandboxSession, repo_root: str | None, enable_integrity_checks: bool
) -> CommitAndPushResult:
    current_branch = await get_current_branch_name(session, repo_root)

    if enable_integrity_checks:
        try:
            await session.run_command("git fsck --no-dangling --no-progress", cwd=repo_root)
        except Exception as e:
            logger.error(f"Git integrity check failed before push: {e}")
            return CommitAndPushResult(error_message=f"Repository integrity check failed: {e}")

    push_result = await git_push_with_rebase(session, branch=current_branch, repo_root=repo_root)
    if push_result.success:
        return CommitAndPushResult(branch_name=current_branch)
    return CommitAndPushResult(error_message=push_result.message)


async def git_commit_and_push_branch(
    session: SandboxSession,
    github_app_name: str,
    generate_commit_message: Callable[[str], Awaitable[str]],
    base_branch: str | None = None,
    repo_root: str | None = None,
    enable_integrity_checks: bool = True,
    character_cutoff: int | None = None,
) -> CommitAndPushResult:
    """
    Commit any pending changes and push the current branch.

    With nothing to commit, the branch is still pushed when it is ahead of
    its remote; otherwise no git-mutating command runs.

    Args:
        session: Sandbox session
        github_app_name: Bot identity for the ``Co-authored-by`` trailer (empty: none)
        generate_commit_message: Async ``diff -> message``; failures fall back
            to ``Update code``
        base_branch: Base branch for the ahead check
        repo_root: Repository directory
        enable_integrity_checks: Run ``git fsck`` after staging and before pushing
        character_cutoff: Maximum diff characters handed to the generator
            (default: DIFF_CUTOFF)

    Returns:
        CommitAndPushResult with ``branch_name`` or ``error_message``

    Raises:
        GitIntegrityError: If staging corrupted the repository
        SandboxExecutionError: If the commit itself failed (e.g. a hook)
    """
    current_branch = await get_current_branch_name(session, repo_root)

    has_committed = await _commit_changes_if_needed(
        session,
        github_app_name,
        generate_commit_message,
        repo_root,
        enable_integrity_checks,
        character_cutoff or DIFF_CUTOFF,
    )
    needs_push = has_committed or await is_local_branch_ahead_of_remote(
        session, current_branch, base_branch=base_branch, repo_root=repo_root
    )

    if needs_push:
        return await _push_current_branch(session, repo_root, enable_integrity_checks)

    logger.info(f"Branch {current_branch} is up to date; nothing to push")
    return CommitAndPushResult(branch_name=current_branch)
