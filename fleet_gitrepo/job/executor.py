"""Interface to the executor of fetch-and-apply jobs."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import cast

from fleet_gitrepo.exceptions import JobSpecError
from fleet_gitrepo.manifest import (
    FetchJob,
    FetchJobStatus,
    JobState,
    NamedResource,
    FETCH_JOB_KIND,
    REPO_NAME_LABEL,
)
from fleet_gitrepo.store import Store

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class JobHandle:
    """Reference to a job known to the executor."""

    namespace: str
    name: str

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(FETCH_JOB_KIND, self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def validate_job(job: FetchJob) -> None:
    """Check that the job can be handed to an executor.

    Raises:
        JobSpecError: If the job spec is malformed.
    """
    if not job.spec.repo:
        raise JobSpecError(f"Job {job.name} has no repository URL")
    if not job.spec.commit:
        raise JobSpecError(f"Job {job.name} has no commit to fetch")
    if job.spec.sync_interval < 0:
        raise JobSpecError(
            f"Job {job.name} has a negative sync interval {job.spec.sync_interval}"
        )
    if not job.owner:
        raise JobSpecError(f"Job {job.name} is missing the {REPO_NAME_LABEL} label")


class JobExecutor(ABC):
    """Creates, observes and deletes fetch-and-apply jobs.

    The reconciler only describes the work and observes its outcome, the executor
    performs the fetch and apply.
    """

    @abstractmethod
    def create_job(self, job: FetchJob) -> JobHandle:
        """Create a job and return a handle for it."""

    @abstractmethod
    def get_job_status(self, handle: JobHandle) -> FetchJobStatus | None:
        """Return the status of a job, or None if the job does not exist."""

    @abstractmethod
    def delete_job(self, handle: JobHandle) -> None:
        """Delete a job, a missing job is not an error."""

    @abstractmethod
    def list_jobs(self, namespace: str, owner: str) -> list[FetchJob]:
        """List the jobs created for the GitRepo with the specified name."""


class StoreJobExecutor(JobExecutor):
    """Executor that records jobs as objects in the store.

    Whatever runs the jobs watches the store for new GitJob objects and reports
    progress by updating their status.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    def create_job(self, job: FetchJob) -> JobHandle:
        """Create a job and return a handle for it."""
        validate_job(job)
        handle = JobHandle(job.namespace, job.name)
        if self._store.get_object(handle.resource_id, FetchJob) is not None:
            raise JobSpecError(f"Job {handle} already exists")
        _LOGGER.info("Creating job %s for commit %s", handle, job.spec.commit)
        self._store.add_object(job)
        self._store.update_status(
            handle.resource_id, FetchJobStatus(state=JobState.PENDING)
        )
        return handle

    def get_job_status(self, handle: JobHandle) -> FetchJobStatus | None:
        """Return the status of a job, or None if the job does not exist."""
        if self._store.get_object(handle.resource_id, FetchJob) is None:
            return None
        return self._store.get_status(
            handle.resource_id, FetchJobStatus
        ) or FetchJobStatus(state=JobState.PENDING)

    def delete_job(self, handle: JobHandle) -> None:
        """Delete a job, a missing job is not an error."""
        if self._store.delete_object(handle.resource_id):
            _LOGGER.info("Deleted job %s", handle)

    def list_jobs(self, namespace: str, owner: str) -> list[FetchJob]:
        """List the jobs created for the GitRepo with the specified name."""
        return cast(
            list[FetchJob],
            self._store.list_objects(
                FETCH_JOB_KIND, namespace=namespace, labels={REPO_NAME_LABEL: owner}
            ),
        )
