"""Cache management for fetched git repositories."""

import hashlib
import tempfile
import logging
from pathlib import Path
from shutil import rmtree
from urllib.parse import urlparse

from slugify import slugify

from .fetch import GitError

_LOGGER = logging.getLogger(__name__)

CACHE_DIR_NAME = "fleet-gitrepo-cache"


class GitCache:
    """Cache manager for checked out commits.

    Each (repository, commit) pair gets its own directory so that jobs for
    different commits never share a working tree.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / CACHE_DIR_NAME
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._paths: set[Path] = set()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _slugify_url(self, url: str) -> str:
        """Return a readable directory name for a repository URL."""
        parsed = urlparse(url)
        path = parsed.path
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.rstrip("/").split("/")[-1]
        # SSH URLs (git@github.com:user/repo.git)
        if parsed.scheme == "" and "@" in url and ":" in url:
            slug = url.split(":", 1)[1].split("/")[-1].removesuffix(".git")
        if not (name := slugify(slug, max_length=50, lowercase=True, separator="-")):
            raise GitError(f"Invalid repository URL format: {url}")
        return name

    def get_repo_path(self, url: str, commit: str) -> Path:
        """Get the local path for a commit of a repository."""
        cache_key = hashlib.sha256()
        cache_key.update(url.encode("utf-8"))
        cache_key.update(commit.encode("utf-8"))
        slug = self._slugify_url(url)
        # e.g. /fleet-gitrepo-cache/my-repo/ab1234567890abcd
        cache_path = self._cache_dir / slug / cache_key.hexdigest()[:16]
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise GitError(f"Failed to create cache directory: {err}") from err
        self._paths.add(cache_path)
        return cache_path

    def cleanup(self) -> None:
        """Remove all checked out commits created by this cache."""
        for path in self._paths:
            if path.exists():
                _LOGGER.info("Cleaning up cached repository: %s", path)
                rmtree(path, ignore_errors=True)
        self._paths.clear()
