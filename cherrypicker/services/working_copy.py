"""
GitPython backed working copies.

One clone per repository is kept under the working copy directory and reused
across events. Access is serialized per repository with ``RepositoryLocks``;
clones of different repositories are used in parallel.
"""

import asyncio
import base64
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from git import GitCommandError, Repo

from cherrypicker.models.events import RepositoryRef
from cherrypicker.services.branch_builder import PatchConflictError, WorkingCopyError
from cherrypicker.utils.logging import get_logger
from cherrypicker.utils.resilience import retry_with_backoff

logger = get_logger(__name__)

FORK_REMOTE = "fork"


class RepositoryLocks:
    """Repository-keyed mutual exclusion for working copies."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, repository: RepositoryRef) -> asyncio.Lock:
        return self._locks.setdefault(repository.full_name, asyncio.Lock())

    @asynccontextmanager
    async def hold(self, repository: RepositoryRef) -> AsyncIterator[None]:
        async with self.get(repository):
            yield


def find_fork(fork_repos: List[str], repository: RepositoryRef) -> Optional[RepositoryRef]:
    """Find the configured fork ("owner/name") of a repository by name."""
    for full_name in fork_repos:
        owner, _, name = full_name.partition("/")
        if name == repository.name:
            return RepositoryRef(owner=owner, name=name)
    return None


def _auth_header(token: str) -> str:
    credentials = base64.b64encode(f":{token}".encode()).decode()
    return f"Authorization: Basic {credentials}"


def _git_error_text(error: GitCommandError) -> str:
    text = (error.stderr or error.stdout or "").strip()
    return text or str(error)


class GitWorkingCopy:
    """A clone checked out for exclusive use by one branch build."""

    def __init__(self, repo: Repo):
        self.repo = repo

    def _reset(self) -> None:
        self.repo.git.reset("--hard")
        self.repo.git.clean("-fdx")

    def checkout_new_branch(self, base: str, name: str) -> None:
        """Create (or recreate) ``name`` at the current tip of ``origin/base``."""
        try:
            self.repo.git.fetch("origin", "--prune")
            self._reset()
            self.repo.git.checkout("-B", name, f"origin/{base}")
        except GitCommandError as e:
            raise WorkingCopyError(f"cannot check out {name} from {base}: {_git_error_text(e)}") from e

    def apply_patch(self, patch: bytes, message: str) -> None:
        """Apply a unified diff to the index and commit it."""
        fd, path = tempfile.mkstemp(suffix=".patch")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(patch)
            try:
                self.repo.git.apply("--index", "--whitespace=nowarn", path)
            except GitCommandError as e:
                self._reset()
                raise PatchConflictError(_git_error_text(e)) from e
        finally:
            os.unlink(path)

        try:
            self.repo.git.commit("-m", message)
        except GitCommandError as e:
            self._reset()
            raise WorkingCopyError(f"cannot commit patch: {_git_error_text(e)}") from e

    @retry_with_backoff(max_retries=3, base_delay=1.0, exceptions=(GitCommandError,))
    def _push(self, branch: str) -> None:
        self.repo.git.push("--force", FORK_REMOTE, f"{branch}:{branch}")

    def push(self, branch: str) -> None:
        """Push ``branch`` to the fork, replacing a leftover from an earlier attempt."""
        try:
            self._push(branch)
        except GitCommandError as e:
            raise WorkingCopyError(f"cannot push {branch}: {_git_error_text(e)}") from e


class GitWorkingCopyProvider:
    """
    Provides locked working copies of repositories.

    Args:
        base_dir: Directory holding one clone per repository
        remote_template: URL template with ``{org}``, ``{owner}`` and ``{name}``
        org: Azure DevOps organization
        fork_repos: Bot forks as "owner/name"
        bot_name: Committer identity
        token: Personal access token sent as a basic auth header, if any
        locks: Shared repository locks
    """

    def __init__(
        self,
        base_dir: str,
        remote_template: str,
        org: str,
        fork_repos: List[str],
        bot_name: str,
        token: Optional[str] = None,
        locks: Optional[RepositoryLocks] = None,
    ):
        self.base_dir = Path(base_dir)
        self.remote_template = remote_template
        self.org = org
        self.fork_repos = fork_repos
        self.bot_name = bot_name
        self.token = token
        self.locks = locks or RepositoryLocks()

    def remote_url(self, repository: RepositoryRef) -> str:
        return self.remote_template.format(org=self.org, owner=repository.owner, name=repository.name)

    def has_fork(self, repository: RepositoryRef) -> bool:
        return find_fork(self.fork_repos, repository) is not None

    @asynccontextmanager
    async def acquire(self, repository: RepositoryRef) -> AsyncIterator[GitWorkingCopy]:
        """Hold the repository lock and yield its working copy."""
        async with self.locks.hold(repository):
            working_copy = await asyncio.to_thread(self._open, repository)
            yield working_copy

    def _clone_env(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {
            "GIT_CONFIG_COUNT": "1",
            "GIT_CONFIG_KEY_0": "http.extraHeader",
            "GIT_CONFIG_VALUE_0": _auth_header(self.token),
        }

    def _open(self, repository: RepositoryRef) -> GitWorkingCopy:
        fork = find_fork(self.fork_repos, repository)
        if fork is None:
            raise WorkingCopyError(f"no fork of {repository.full_name} is configured")

        path = self.base_dir / repository.owner / repository.name
        try:
            if (path / ".git").is_dir():
                repo = Repo(path)
            else:
                logger.info(f"Cloning {repository.full_name} into {path}")
                path.parent.mkdir(parents=True, exist_ok=True)
                repo = Repo.clone_from(self.remote_url(repository), path, env=self._clone_env())
                with repo.config_writer() as config:
                    config.set_value("user", "name", self.bot_name)
                    config.set_value("user", "email", f"{self.bot_name}@users.noreply")
                    if self.token:
                        config.set_value("http", "extraHeader", _auth_header(self.token))

            fork_url = self.remote_url(fork)
            if FORK_REMOTE in [remote.name for remote in repo.remotes]:
                repo.remote(FORK_REMOTE).set_url(fork_url)
            else:
                repo.create_remote(FORK_REMOTE, fork_url)
        except GitCommandError as e:
            raise WorkingCopyError(
                f"cannot prepare working copy of {repository.full_name}: {_git_error_text(e)}"
            ) from e

        return GitWorkingCopy(repo)
