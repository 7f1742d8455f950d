"""Job Lifecycle Manager.

Owns the single fetch job of a GitRepo. The job name is derived from the GitRepo
identity, the target commit, the force sync generation and the spec fields the job
fetches with, which makes the name the idempotency key: a lookup by name before
creating means repeated or late passes for the same commit never create a second
job. Jobs for any other key are superseded and deleted, so at most one job per
GitRepo remains.
"""

from dataclasses import dataclass
import datetime
import hashlib
import logging

from slugify import slugify

from fleet_gitrepo.exceptions import JobSpecError
from fleet_gitrepo.job import JobExecutor, JobHandle
from fleet_gitrepo.manifest import (
    COMMIT_LABEL,
    REPO_NAME_LABEL,
    FetchJob,
    FetchJobSpec,
    JobState,
)

from .resource import ObservedGitRepo

_LOGGER = logging.getLogger(__name__)

# Kubernetes object names are limited to 63 characters
MAX_NAME_LENGTH = 63
HASH_LENGTH = 10


@dataclass(frozen=True)
class JobObservation:
    """What the manager observed about the job for the target commit."""

    job_name: str | None = None
    commit: str | None = None
    state: JobState | None = None
    """None when no job exists or is needed."""

    message: str | None = None
    """Diagnostics reported by the executor."""

    applied: bool = False
    """True if the commit was already recorded as applied by this job."""

    created: bool = False
    completion_time: datetime.datetime | None = None

    @property
    def in_progress(self) -> bool:
        return self.state is not None and self.state.in_progress

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.state == JobState.FAILED


def job_name(observed: ObservedGitRepo, commit: str) -> str:
    """Return the deterministic name of the job for a commit."""
    repo = observed.repo
    key = hashlib.sha256()
    key.update(f"{repo.namespace}/{repo.name}".encode("utf-8"))
    key.update(commit.encode("utf-8"))
    key.update(str(repo.spec.force_sync_generation).encode("utf-8"))
    # The fields the job fetches with are part of its identity
    for value in (
        repo.spec.repo,
        repo.spec.branch,
        repo.spec.target_namespace or "",
        *repo.spec.paths,
    ):
        key.update(b"\0" + value.encode("utf-8"))
    suffix = key.hexdigest()[:HASH_LENGTH]
    prefix = slugify(
        repo.name,
        max_length=MAX_NAME_LENGTH - HASH_LENGTH - 1,
        lowercase=True,
        separator="-",
    )
    return f"{prefix}-{suffix}"


class JobManager:
    """Ensures the right fetch job exists for the target commit of a GitRepo."""

    def __init__(
        self,
        executor: JobExecutor,
        job_polling: bool = False,
        job_retention: datetime.timedelta | None = None,
    ) -> None:
        """Initialize the JobManager.

        Args:
            executor: The collaborator that runs the jobs.
            job_polling: If True, jobs are created in recurring mode and the
                executor polls the repository on its own.
            job_retention: How long a succeeded job is kept once its commit has
                been recorded as applied. None keeps it until superseded.
        """
        self._executor = executor
        self._job_polling = job_polling
        self._job_retention = job_retention

    def build_job(self, observed: ObservedGitRepo, commit: str) -> FetchJob:
        """Describe the job for a commit of the GitRepo."""
        repo = observed.repo
        sync_interval = 0
        if self._job_polling and repo.spec.polling_enabled:
            assert repo.spec.polling_interval is not None
            sync_interval = int(repo.spec.polling_interval.total_seconds())
        return FetchJob(
            name=job_name(observed, commit),
            namespace=repo.namespace,
            spec=FetchJobSpec(
                repo=repo.spec.repo,
                branch=repo.spec.branch,
                commit=commit,
                paths=list(repo.spec.paths),
                target_namespace=repo.spec.target_namespace,
                sync_interval=sync_interval,
                force_sync_generation=repo.spec.force_sync_generation,
            ),
            labels={
                REPO_NAME_LABEL: repo.name,
                COMMIT_LABEL: commit,
            },
        )

    def delete_jobs(self, namespace: str, owner: str, keep: str | None = None) -> int:
        """Delete the jobs of a GitRepo except the one named `keep`."""
        deleted = 0
        for job in self._executor.list_jobs(namespace, owner):
            if job.name == keep:
                continue
            _LOGGER.info(
                "Deleting job %s for commit %s of GitRepo %s/%s",
                job.name,
                job.spec.commit,
                namespace,
                owner,
            )
            self._executor.delete_job(JobHandle(job.namespace, job.name))
            deleted += 1
        return deleted

    def retention_deadline(
        self, observation: JobObservation
    ) -> datetime.datetime | None:
        """Return when the job of an applied commit may be deleted."""
        if (
            self._job_retention is None
            or not observation.succeeded
            or observation.completion_time is None
        ):
            return None
        return observation.completion_time + self._job_retention

    def ensure_job(
        self,
        observed: ObservedGitRepo,
        target_commit: str | None,
        now: datetime.datetime,
    ) -> JobObservation:
        """Ensure exactly one job exists for the target commit.

        Raises:
            JobSpecError: If a job can't be described from the spec.
        """
        if target_commit is None:
            return JobObservation()

        repo = observed.repo
        status = observed.status
        name = job_name(observed, target_commit)
        handle = JobHandle(repo.namespace, name)

        # Supersede jobs for any other commit before looking at ours
        self.delete_jobs(repo.namespace, repo.name, keep=name)

        job_status = self._executor.get_job_status(handle)
        if status.last_applied_job == name and status.last_applied_commit == target_commit:
            observation = JobObservation(
                job_name=name,
                commit=target_commit,
                state=JobState.SUCCEEDED,
                message=job_status.message if job_status else None,
                applied=True,
                completion_time=job_status.completion_time if job_status else None,
            )
            if job_status is not None and (
                deadline := self.retention_deadline(observation)
            ) is not None and now >= deadline:
                _LOGGER.info("Job %s exceeded its retention, deleting", name)
                self._executor.delete_job(handle)
            return observation

        if job_status is not None:
            _LOGGER.debug("Job %s exists in state %s", name, job_status.state)
            return JobObservation(
                job_name=name,
                commit=target_commit,
                state=job_status.state,
                message=job_status.message,
                completion_time=job_status.completion_time,
            )

        job = self.build_job(observed, target_commit)
        if not job.spec.repo:
            raise JobSpecError(f"GitRepo {repo.namespace}/{repo.name} has no spec.repo")
        self._executor.create_job(job)
        _LOGGER.info(
            "Created job %s for commit %s of GitRepo %s",
            name,
            target_commit,
            observed.resource_id.namespaced_name,
        )
        return JobObservation(
            job_name=name,
            commit=target_commit,
            state=JobState.PENDING,
            created=True,
        )
