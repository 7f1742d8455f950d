"""Snapshot of a GitRepo as read at the start of a reconcile pass."""

from dataclasses import dataclass

from fleet_gitrepo.exceptions import JobSpecError
from fleet_gitrepo.manifest import GitRepo, GitRepoStatus, NamedResource
from fleet_gitrepo.store import ObjectMeta


@dataclass(frozen=True)
class ObservedGitRepo:
    """A GitRepo, its persisted status and its store metadata.

    Every decision in a pass is derived from this snapshot, nothing is carried
    over from previous passes.
    """

    repo: GitRepo
    status: GitRepoStatus
    meta: ObjectMeta

    @property
    def resource_id(self) -> NamedResource:
        return self.repo.resource_id

    @property
    def generation_changed(self) -> bool:
        """Return True if the spec changed since the status was last written."""
        return self.meta.generation != self.status.observed_generation


def validate_spec(repo: GitRepo) -> None:
    """Check the GitRepo spec for errors only the user can fix.

    Raises:
        JobSpecError: If the spec can't be turned into a job.
    """
    if not repo.spec.repo:
        raise JobSpecError(f"GitRepo {repo.namespace}/{repo.name} has no spec.repo")
    if not repo.spec.revision and not repo.spec.branch:
        raise JobSpecError(
            f"GitRepo {repo.namespace}/{repo.name} has neither branch nor revision"
        )
    if repo.spec.polling_interval is not None and (
        repo.spec.polling_interval.total_seconds() < 0
    ):
        raise JobSpecError(
            f"GitRepo {repo.namespace}/{repo.name} has a negative pollingInterval"
        )
