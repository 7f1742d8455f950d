"""Test fixtures for the GitRepo controller."""

import datetime

import pytest

from fleet_gitrepo.gitrepo_controller import ObservedGitRepo
from fleet_gitrepo.job import StoreJobExecutor
from fleet_gitrepo.manifest import (
    WEBHOOK_COMMIT_ANNOTATION,
    GitRepo,
    GitRepoSpec,
    GitRepoStatus,
)
from fleet_gitrepo.store import InMemoryStore, ObjectMeta

from tests.conftest import NOW

REPO_URL = "https://github.com/rancher/fleet-examples"
NAMESPACE = "fleet-default"


def make_repo(
    name: str = "sample",
    webhook_commit: str | None = None,
    polling_interval: datetime.timedelta | None = datetime.timedelta(seconds=15),
    **kwargs: object,
) -> GitRepo:
    """Create a GitRepo watching the main branch."""
    spec_args: dict = {"repo": REPO_URL, "branch": "main"}
    spec_args.update(kwargs)
    annotations = {}
    if webhook_commit:
        annotations[WEBHOOK_COMMIT_ANNOTATION] = webhook_commit
    return GitRepo(
        name=name,
        namespace=NAMESPACE,
        spec=GitRepoSpec(polling_interval=polling_interval, **spec_args),
        annotations=annotations,
    )


def observe(
    repo: GitRepo,
    status: GitRepoStatus | None = None,
    generation: int = 1,
) -> ObservedGitRepo:
    """Snapshot a GitRepo as a reconcile pass would see it."""
    return ObservedGitRepo(
        repo=repo,
        status=status or GitRepoStatus(),
        meta=ObjectMeta(
            generation=generation, resource_version=1, creation_timestamp=NOW
        ),
    )


@pytest.fixture(name="executor")
def executor_fixture(store: InMemoryStore) -> StoreJobExecutor:
    """Create an executor backed by the store."""
    return StoreJobExecutor(store)
