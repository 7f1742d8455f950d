"""Local runner for fetch jobs.

The runner watches the store for GitJob objects and performs the fetch on the
local machine, reporting progress through the job status the same way a remote
executor would.
"""

import asyncio
from collections.abc import Callable
import datetime
import logging

from fleet_gitrepo.exceptions import ObjectNotFoundError
from fleet_gitrepo.manifest import (
    BaseManifest,
    FetchJob,
    FetchJobStatus,
    JobState,
    NamedResource,
    FETCH_JOB_KIND,
)
from fleet_gitrepo.source import GitCache, GitError, fetch_commit
from fleet_gitrepo.store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class LocalJobRunner:
    """Runs fetch jobs recorded in the store."""

    def __init__(
        self,
        store: Store,
        cache: GitCache,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        """Initialize the runner and start watching for jobs."""
        self._store = store
        self._cache = cache
        self._clock = clock or _utcnow
        self._tasks: dict[NamedResource, asyncio.Task[None]] = {}

        def on_added(resource_id: NamedResource, obj: BaseManifest) -> None:
            if resource_id.kind != FETCH_JOB_KIND or not isinstance(obj, FetchJob):
                return
            if resource_id in self._tasks:
                return
            task = asyncio.create_task(self.run(obj), name=f"job-{resource_id.name}")
            self._tasks[resource_id] = task
            task.add_done_callback(lambda t: self._task_done(resource_id, t))

        def on_deleted(resource_id: NamedResource, obj: BaseManifest) -> None:
            if (task := self._tasks.get(resource_id)) is not None:
                _LOGGER.debug("Job %s deleted, cancelling", resource_id)
                task.cancel()

        self._remove_listeners = [
            self._store.add_listener(StoreEvent.OBJECT_ADDED, on_added, flush=True),
            self._store.add_listener(StoreEvent.OBJECT_DELETED, on_deleted),
        ]

    def _task_done(self, resource_id: NamedResource, task: asyncio.Task[None]) -> None:
        self._tasks.pop(resource_id, None)
        if not task.cancelled() and (err := task.exception()) is not None:
            _LOGGER.error("Job %s stopped: %s", resource_id, err, exc_info=err)

    async def close(self) -> None:
        """Stop watching for jobs and cancel any running ones."""
        for remove in self._remove_listeners:
            remove()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def block_till_done(self) -> None:
        """Wait for all one-shot jobs that are currently running."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _report(self, job: FetchJob, status: FetchJobStatus) -> bool:
        try:
            self._store.update_status(job.resource_id, status)
        except ObjectNotFoundError:
            _LOGGER.debug("Job %s no longer exists, dropping status", job.name)
            return False
        return True

    def _fail(self, job: FetchJob, started: datetime.datetime, message: str) -> None:
        self._report(
            job,
            FetchJobStatus(
                JobState.FAILED,
                message=message,
                start_time=started,
                completion_time=self._clock(),
            ),
        )

    async def run(self, job: FetchJob) -> None:
        """Run a job until it completes.

        Jobs with a sync interval keep refreshing their checkout until deleted.
        """
        started = self._clock()
        if not self._report(job, FetchJobStatus(JobState.RUNNING, start_time=started)):
            return
        while True:
            try:
                result = await asyncio.to_thread(fetch_commit, job.spec, self._cache)
            except GitError as err:
                _LOGGER.error("Job %s failed: %s", job.name, err)
                self._fail(job, started, str(err))
                return
            except Exception as err:
                _LOGGER.error(
                    "Uncaught exception while running job %s: %s",
                    job.name,
                    err,
                    exc_info=True,
                )
                self._fail(job, started, f"{type(err).__name__}: {err}")
                return
            _LOGGER.info("Job %s fetched %s", job.name, result.commit)
            if not self._report(
                job,
                FetchJobStatus(
                    JobState.SUCCEEDED,
                    message=f"Fetched commit {result.commit} into {result.local_path}",
                    start_time=started,
                    completion_time=self._clock(),
                ),
            ):
                return
            if job.spec.sync_interval <= 0:
                return
            await asyncio.sleep(job.spec.sync_interval)
