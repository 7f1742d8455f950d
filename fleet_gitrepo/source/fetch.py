"""Fetching a pinned commit of a git repository."""

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import git

from fleet_gitrepo.exceptions import FleetException
from fleet_gitrepo.manifest import FetchJobSpec

if TYPE_CHECKING:
    from .cache import GitCache

_LOGGER = logging.getLogger(__name__)


class GitError(FleetException):
    """Exception raised for git operations."""


@dataclass(frozen=True)
class FetchResult:
    """The local checkout of a fetched commit."""

    url: str
    commit: str
    local_path: str
    paths: list[str]


def fetch_commit(spec: FetchJobSpec, cache: "GitCache") -> FetchResult:
    """Clone the repository of the job and check out its commit.

    Raises:
        GitError: If git operations fail or a requested path does not exist.
    """
    repo_path = cache.get_repo_path(spec.repo, spec.commit)
    try:
        if (repo_path / ".git").exists():
            _LOGGER.info("Updating existing repository at %s", repo_path)
            repo = git.Repo(str(repo_path))
            repo.git.fetch("origin")
        else:
            _LOGGER.info("Cloning repository %s to %s", spec.repo, repo_path)
            repo = git.Repo.clone_from(spec.repo, str(repo_path), no_checkout=True)
        _LOGGER.info("Checking out commit %s", spec.commit)
        repo.git.checkout(spec.commit)
    except git.exc.GitCommandError as err:
        raise GitError(f"Git operation failed: {err}") from err

    missing = [p for p in spec.paths if not (Path(repo_path) / p).exists()]
    if missing:
        raise GitError(f"Paths not found in commit {spec.commit}: {', '.join(missing)}")
    return FetchResult(
        url=spec.repo,
        commit=spec.commit,
        local_path=str(repo_path),
        paths=list(spec.paths) or ["."],
    )
