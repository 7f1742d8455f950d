"""The source module.

This module resolves the current commit of a remote branch and fetches pinned
commits into a local cache for the fetch jobs.
"""

from .resolver import CommitResolver, GitCommitResolver
from .fetch import GitError, FetchResult, fetch_commit
from .cache import GitCache

__all__ = [
    "CommitResolver",
    "GitCommitResolver",
    "GitError",
    "FetchResult",
    "fetch_commit",
    "GitCache",
]
