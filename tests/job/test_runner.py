"""Tests for the local job runner."""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import git
import pytest

from fleet_gitrepo.job import JobHandle, LocalJobRunner, StoreJobExecutor
from fleet_gitrepo.manifest import (
    COMMIT_LABEL,
    REPO_NAME_LABEL,
    FetchJob,
    FetchJobSpec,
    JobState,
)
from fleet_gitrepo.source import GitCache
from fleet_gitrepo.store import InMemoryStore

from tests.conftest import NOW


@pytest.fixture(name="runner")
async def runner_fixture(
    store: InMemoryStore, tmp_path: Path
) -> AsyncGenerator[LocalJobRunner, None]:
    """Create a runner watching the store."""
    runner = LocalJobRunner(store, GitCache(tmp_path / "cache"), clock=lambda: NOW)
    yield runner
    await runner.close()


def make_job(repo: str, commit: str, paths: list[str] | None = None) -> FetchJob:
    return FetchJob(
        name=f"sample-{commit[:8]}",
        namespace="fleet-default",
        spec=FetchJobSpec(repo=repo, branch="main", commit=commit, paths=paths or []),
        labels={REPO_NAME_LABEL: "sample", COMMIT_LABEL: commit},
    )


async def test_run_job(
    store: InMemoryStore, runner: LocalJobRunner, git_repo: git.Repo
) -> None:
    """Test a job for an existing commit succeeds."""
    executor = StoreJobExecutor(store)
    sha = git_repo.head.commit.hexsha
    handle = executor.create_job(make_job(git_repo.working_dir, sha, ["app"]))
    await runner.block_till_done()

    status = executor.get_job_status(handle)
    assert status is not None
    assert status.state == JobState.SUCCEEDED
    assert status.message is not None
    assert sha in status.message
    assert status.start_time == NOW
    assert status.completion_time == NOW


async def test_run_job_failure(
    store: InMemoryStore, runner: LocalJobRunner, git_repo: git.Repo
) -> None:
    """Test a job for a missing path fails with a message."""
    executor = StoreJobExecutor(store)
    sha = git_repo.head.commit.hexsha
    handle = executor.create_job(make_job(git_repo.working_dir, sha, ["missing"]))
    await runner.block_till_done()

    status = executor.get_job_status(handle)
    assert status is not None
    assert status.state == JobState.FAILED
    assert status.message is not None
    assert "missing" in status.message


async def test_run_job_unexpected_error(
    store: InMemoryStore, runner: LocalJobRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test an unexpected error while fetching fails the job."""

    def broken_fetch(*args: object) -> None:
        raise OSError("No space left on device")

    monkeypatch.setattr("fleet_gitrepo.job.runner.fetch_commit", broken_fetch)
    executor = StoreJobExecutor(store)
    handle = executor.create_job(make_job("https://example.com/repo.git", "c" * 40))
    await runner.block_till_done()

    status = executor.get_job_status(handle)
    assert status is not None
    assert status.state == JobState.FAILED
    assert status.message == "OSError: No space left on device"
    assert status.completion_time == NOW


async def test_run_existing_jobs(
    store: InMemoryStore, tmp_path: Path, git_repo: git.Repo
) -> None:
    """Test jobs created before the runner started are picked up."""
    executor = StoreJobExecutor(store)
    handle = executor.create_job(
        make_job(git_repo.working_dir, git_repo.head.commit.hexsha)
    )
    runner = LocalJobRunner(store, GitCache(tmp_path / "cache"))
    await runner.block_till_done()
    status = executor.get_job_status(handle)
    assert status is not None
    assert status.state == JobState.SUCCEEDED
    await runner.close()


async def test_deleted_job_is_cancelled(
    store: InMemoryStore, runner: LocalJobRunner, git_repo: git.Repo
) -> None:
    """Test deleting a recurring job stops it."""
    executor = StoreJobExecutor(store)
    job = make_job(git_repo.working_dir, git_repo.head.commit.hexsha)
    job.spec.sync_interval = 3600
    handle = executor.create_job(job)

    async def wait_for_success() -> None:
        while True:
            status = executor.get_job_status(handle)
            if status is not None and status.state == JobState.SUCCEEDED:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait_for_success(), timeout=30)
    executor.delete_job(JobHandle(handle.namespace, handle.name))
    await asyncio.wait_for(runner.block_till_done(), timeout=5)
    assert executor.get_job_status(handle) is None
