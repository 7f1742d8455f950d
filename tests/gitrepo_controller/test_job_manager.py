"""Tests for the job lifecycle manager."""

import datetime

import pytest

from fleet_gitrepo.exceptions import JobSpecError
from fleet_gitrepo.gitrepo_controller import JobManager
from fleet_gitrepo.gitrepo_controller.job_manager import job_name
from fleet_gitrepo.job import JobHandle, StoreJobExecutor
from fleet_gitrepo.manifest import (
    COMMIT_LABEL,
    REPO_NAME_LABEL,
    FetchJobStatus,
    GitRepoStatus,
    JobState,
)
from fleet_gitrepo.store import InMemoryStore

from tests.conftest import NOW
from .conftest import NAMESPACE, make_repo, observe


@pytest.fixture(name="manager")
def manager_fixture(executor: StoreJobExecutor) -> JobManager:
    """Create a job manager backed by the store executor."""
    return JobManager(executor)


def job_names(executor: StoreJobExecutor) -> list[str]:
    return [job.name for job in executor.list_jobs(NAMESPACE, "sample")]


def test_job_name() -> None:
    """Test job names are deterministic per commit and force sync generation."""
    observed = observe(make_repo())
    name = job_name(observed, "c1")
    assert name == job_name(observe(make_repo()), "c1")
    assert name.startswith("sample-")
    assert name != job_name(observed, "c2")
    assert name != job_name(observe(make_repo(force_sync_generation=1)), "c1")
    assert name != job_name(observe(make_repo(name="other")), "c1")


@pytest.mark.parametrize(
    "changes",
    [
        {"paths": ["simple"]},
        {"branch": "release"},
        {"repo": "https://github.com/rancher/other"},
        {"target_namespace": "apps"},
    ],
)
def test_job_name_follows_spec(changes: dict) -> None:
    """Test editing a field the job fetches with gives a new job name."""
    name = job_name(observe(make_repo()), "c1")
    assert name != job_name(observe(make_repo(**changes)), "c1")
    assert name == job_name(observe(make_repo(polling_interval=None)), "c1")


def test_job_name_length() -> None:
    """Test long GitRepo names are truncated to a valid object name."""
    name = job_name(observe(make_repo(name="a" * 100)), "c1")
    assert len(name) <= 63
    assert name.startswith("aaaa")


def test_build_job(manager: JobManager) -> None:
    """Test the job describes the commit and is labeled with its owner."""
    job = manager.build_job(
        observe(make_repo(paths=["simple"], target_namespace="apps")), "c1"
    )
    assert job.namespace == NAMESPACE
    assert job.spec.repo == "https://github.com/rancher/fleet-examples"
    assert job.spec.branch == "main"
    assert job.spec.commit == "c1"
    assert job.spec.paths == ["simple"]
    assert job.spec.target_namespace == "apps"
    assert job.spec.sync_interval == 0
    assert job.labels == {REPO_NAME_LABEL: "sample", COMMIT_LABEL: "c1"}


def test_build_recurring_job(executor: StoreJobExecutor) -> None:
    """Test job polling creates jobs that poll at the GitRepo interval."""
    manager = JobManager(executor, job_polling=True)
    job = manager.build_job(observe(make_repo()), "c1")
    assert job.spec.sync_interval == 15

    job = manager.build_job(observe(make_repo(polling_interval=None)), "c1")
    assert job.spec.sync_interval == 0


def test_no_target_commit(manager: JobManager, executor: StoreJobExecutor) -> None:
    """Test no job is created before a commit is known."""
    observation = manager.ensure_job(observe(make_repo()), None, NOW)
    assert observation.state is None
    assert not observation.in_progress
    assert job_names(executor) == []


def test_ensure_job_idempotent(manager: JobManager, executor: StoreJobExecutor) -> None:
    """Test repeated passes for the same commit create a single job."""
    observed = observe(make_repo())
    first = manager.ensure_job(observed, "c1", NOW)
    assert first.created
    assert first.state == JobState.PENDING
    assert first.in_progress

    second = manager.ensure_job(observed, "c1", NOW)
    assert not second.created
    assert second.job_name == first.job_name
    assert second.state == JobState.PENDING
    assert job_names(executor) == [first.job_name]


def test_ensure_job_reports_status(
    store: InMemoryStore, manager: JobManager
) -> None:
    """Test the job status is passed through."""
    observed = observe(make_repo())
    created = manager.ensure_job(observed, "c1", NOW)
    handle = JobHandle(NAMESPACE, created.job_name or "")
    store.update_status(
        handle.resource_id,
        FetchJobStatus(JobState.FAILED, message="clone failed", completion_time=NOW),
    )

    observation = manager.ensure_job(observed, "c1", NOW)
    assert observation.failed
    assert observation.message == "clone failed"
    assert observation.completion_time == NOW


def test_superseded_job_deleted(
    manager: JobManager, executor: StoreJobExecutor
) -> None:
    """Test a new commit replaces the job of the previous one."""
    observed = observe(make_repo())
    first = manager.ensure_job(observed, "c1", NOW)
    second = manager.ensure_job(observed, "c2", NOW)
    assert second.created
    assert job_names(executor) == [second.job_name]
    assert first.job_name not in job_names(executor)


def test_force_sync_reruns_job(
    manager: JobManager, executor: StoreJobExecutor
) -> None:
    """Test bumping the force sync generation creates a new job."""
    first = manager.ensure_job(observe(make_repo()), "c1", NOW)
    second = manager.ensure_job(
        observe(make_repo(force_sync_generation=1)), "c1", NOW
    )
    assert second.created
    assert second.job_name != first.job_name
    assert job_names(executor) == [second.job_name]


def test_applied_commit_not_rerun(
    manager: JobManager, executor: StoreJobExecutor
) -> None:
    """Test a job that was already applied is not created again."""
    repo = make_repo()
    name = job_name(observe(repo), "c1")
    status = GitRepoStatus(last_applied_commit="c1", last_applied_job=name)

    observation = manager.ensure_job(observe(repo, status), "c1", NOW)
    assert observation.applied
    assert observation.succeeded
    assert not observation.created
    assert job_names(executor) == []


def test_job_retention(store: InMemoryStore, executor: StoreJobExecutor) -> None:
    """Test an applied job is deleted once its retention passed."""
    manager = JobManager(executor, job_retention=datetime.timedelta(hours=1))
    repo = make_repo()
    created = manager.ensure_job(observe(repo), "c1", NOW)
    handle = JobHandle(NAMESPACE, created.job_name or "")
    store.update_status(
        handle.resource_id,
        FetchJobStatus(JobState.SUCCEEDED, completion_time=NOW),
    )
    status = GitRepoStatus(last_applied_commit="c1", last_applied_job=created.job_name)

    observation = manager.ensure_job(observe(repo, status), "c1", NOW)
    assert observation.applied
    assert manager.retention_deadline(observation) == NOW + datetime.timedelta(hours=1)
    assert job_names(executor) == [created.job_name]

    later = NOW + datetime.timedelta(hours=2)
    observation = manager.ensure_job(observe(repo, status), "c1", later)
    assert observation.applied
    assert job_names(executor) == []

    # Still applied after the job is gone
    observation = manager.ensure_job(observe(repo, status), "c1", later)
    assert observation.applied
    assert job_names(executor) == []


def test_missing_repo(manager: JobManager, executor: StoreJobExecutor) -> None:
    """Test a GitRepo without URL can't describe a job."""
    with pytest.raises(JobSpecError, match="has no spec.repo"):
        manager.ensure_job(observe(make_repo(repo="")), "c1", NOW)
    assert job_names(executor) == []


def test_delete_jobs(manager: JobManager, executor: StoreJobExecutor) -> None:
    """Test deleting all jobs of a GitRepo."""
    manager.ensure_job(observe(make_repo()), "c1", NOW)
    manager.ensure_job(observe(make_repo(name="other")), "c1", NOW)
    assert manager.delete_jobs(NAMESPACE, "sample") == 1
    assert job_names(executor) == []
    assert len(executor.list_jobs(NAMESPACE, "other")) == 1
