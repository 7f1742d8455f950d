"""Resolution of the current commit of a remote branch."""

from abc import ABC, abstractmethod
import asyncio
import logging

import git

from fleet_gitrepo.exceptions import RemoteResolutionError

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class CommitResolver(ABC):
    """Resolves the commit a remote branch currently points to."""

    @abstractmethod
    async def resolve(self, repo_url: str, branch: str) -> str:
        """Return the commit sha of the branch.

        Raises:
            RemoteResolutionError: If the repository is unreachable or the branch
                does not exist.
        """


class GitCommitResolver(CommitResolver):
    """Resolves commits with `git ls-remote`, without cloning the repository."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def _ls_remote(self, repo_url: str, branch: str) -> str:
        return git.cmd.Git().ls_remote(
            repo_url,
            f"refs/heads/{branch}",
            kill_after_timeout=self._timeout,
        )

    async def resolve(self, repo_url: str, branch: str) -> str:
        """Return the commit sha of the branch."""
        _LOGGER.debug("Resolving %s branch %s", repo_url, branch)
        try:
            output = await asyncio.to_thread(self._ls_remote, repo_url, branch)
        except git.exc.GitCommandError as err:
            stderr = err.stderr.strip() if isinstance(err.stderr, str) else ""
            raise RemoteResolutionError(
                repo_url, branch, stderr or f"git exited with status {err.status}"
            ) from err
        for line in output.splitlines():
            sha, _, ref = line.partition("\t")
            if ref == f"refs/heads/{branch}":
                _LOGGER.debug("Resolved %s branch %s to %s", repo_url, branch, sha)
                return sha
        raise RemoteResolutionError(repo_url, branch, "branch not found")
