"""
GitRepo Controller implementation.

This controller reconciles GitRepo resources: it detects new commits, ensures a
single fetch job exists for the target commit, aggregates the deployment records
of the applied commit and publishes the resulting status.

Key Concepts:
    - Level triggered: every pass re-reads the GitRepo, its status, its jobs and
      its deployment records from the store and derives all actions from them.
    - One pass per GitRepo at a time: the work queue never hands the same key to
      two workers, passes for different GitRepos run in parallel.
    - Optimistic concurrency: the status write is rejected if the GitRepo changed
      since it was read, in which case the pass is run again on fresh state.

Dependencies:
    - fleet_gitrepo.store.Store: For objects, status and change events.
    - fleet_gitrepo.source.CommitResolver: For resolving the remote branch.
    - fleet_gitrepo.job.JobExecutor: For running fetch jobs.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import datetime
import logging
from typing import Any

from fleet_gitrepo.context import get_trace_collector, trace_context
from fleet_gitrepo.exceptions import JobSpecError, PublishConflictError
from fleet_gitrepo.job import JobExecutor
from fleet_gitrepo.manifest import (
    BUNDLE_DEPLOYMENT_KIND,
    BUNDLE_KIND,
    BUNDLE_NAMESPACE_LABEL,
    FETCH_JOB_KIND,
    GIT_REPO_KIND,
    REPO_NAME_LABEL,
    FetchJob,
    GitRepo,
    GitRepoStatus,
    NamedResource,
)
from fleet_gitrepo.source import CommitResolver
from fleet_gitrepo.store import Store, StoreEvent
from fleet_gitrepo.workqueue import WorkQueue

from .aggregator import (
    AggregateResult,
    DeploymentAggregator,
    DeploymentLister,
    StoreDeploymentLister,
)
from .commit_tracker import CommitTracker, TrackerResult
from .job_manager import JobManager, JobObservation
from .resource import ObservedGitRepo, validate_spec
from .status import StatusPublisher

_LOGGER = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_ERROR_REQUEUE_SECONDS = 30.0
DEFAULT_CONFLICT_RETRIES = 3
DEFAULT_AGGREGATION_TIMEOUT = datetime.timedelta(minutes=10)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class GitRepoControllerConfig:
    """Configuration for the GitRepoController."""

    workers: int = DEFAULT_WORKERS
    """Number of GitRepos reconciled in parallel."""

    aggregation_timeout: datetime.timedelta | None = DEFAULT_AGGREGATION_TIMEOUT
    """How long an expected deployment record may be missing before it is an error."""

    job_retention: datetime.timedelta | None = None
    """How long a succeeded job is kept after its commit was applied."""

    job_polling: bool = False
    """Create recurring jobs that poll the repository themselves."""

    error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS
    """Delay before retrying a pass that failed unexpectedly."""

    conflict_retries: int = DEFAULT_CONFLICT_RETRIES
    """How often a pass is re-run on fresh state after a write conflict."""


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a reconcile pass."""

    requeue_after: float | None = None
    """Seconds after which the GitRepo should be reconciled again."""

    status: GitRepoStatus | None = None
    """The status written by the pass, None if no write was needed."""


class GitRepoController:
    """
    Controller for reconciling GitRepo resources.

    The controller listens to store events, maps them to the owning GitRepo and
    queues that GitRepo for a reconcile pass.
    """

    def __init__(
        self,
        store: Store,
        resolver: CommitResolver,
        executor: JobExecutor,
        config: GitRepoControllerConfig | None = None,
        deployments: DeploymentLister | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        """
        Initialize the controller and start its workers.

        Args:
            store: The store holding GitRepos and related objects
            resolver: Resolves the commit of a remote branch
            executor: Runs the fetch jobs
            config: The configuration for the controller
            deployments: Source of deployment records, the store by default
            clock: Returns the current time, for tests
        """
        self._store = store
        self._config = config or GitRepoControllerConfig()
        self._clock = clock or _utcnow
        self._tracker = CommitTracker(resolver)
        self._job_manager = JobManager(
            executor,
            job_polling=self._config.job_polling,
            job_retention=self._config.job_retention,
        )
        self._aggregator = DeploymentAggregator(
            deployments or StoreDeploymentLister(store),
            aggregation_timeout=self._config.aggregation_timeout,
        )
        self._publisher = StatusPublisher(store)
        self._queue: WorkQueue[NamedResource] = WorkQueue()
        self._remove_listeners = [
            store.add_listener(StoreEvent.OBJECT_ADDED, self._on_object, flush=True),
            store.add_listener(StoreEvent.OBJECT_UPDATED, self._on_object),
            store.add_listener(StoreEvent.OBJECT_DELETED, self._on_object),
            store.add_listener(StoreEvent.STATUS_UPDATED, self._on_status),
        ]
        self._tasks: list[asyncio.Task[None]] = [
            asyncio.create_task(self._worker(), name=f"gitrepo-worker-{i}")
            for i in range(max(1, self._config.workers))
        ]

    async def close(self) -> None:
        """Stop the workers and remove the store listeners."""
        _LOGGER.info("Closing GitRepoController, cancelling workers")
        for remove in self._remove_listeners:
            remove()
        self._queue.shut_down()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait until no GitRepo is queued or being reconciled."""
        await self._queue.wait_idle()

    def enqueue(self, resource_id: NamedResource) -> None:
        """Queue a GitRepo for a reconcile pass."""
        self._queue.add(resource_id)

    def _owners(self, resource_id: NamedResource, obj: Any) -> list[NamedResource]:
        """Map an object to the GitRepos it belongs to."""
        if resource_id.kind == GIT_REPO_KIND:
            return [resource_id]
        if resource_id.kind not in (FETCH_JOB_KIND, BUNDLE_KIND, BUNDLE_DEPLOYMENT_KIND):
            return []
        if not (owner := (getattr(obj, "labels", None) or {}).get(REPO_NAME_LABEL)):
            return []
        if resource_id.kind == BUNDLE_DEPLOYMENT_KIND:
            # Records live in cluster namespaces and name the GitRepo namespace
            if not (namespace := obj.labels.get(BUNDLE_NAMESPACE_LABEL)):
                return []
            return [NamedResource(GIT_REPO_KIND, namespace, owner)]
        return [NamedResource(GIT_REPO_KIND, resource_id.namespace, owner)]

    def _on_object(self, resource_id: NamedResource, obj: Any) -> None:
        for owner in self._owners(resource_id, obj):
            self._queue.add(owner)

    def _on_status(self, resource_id: NamedResource, status: Any) -> None:
        # The GitRepo status is only written by this controller
        if resource_id.kind != FETCH_JOB_KIND:
            return
        obj = self._store.get_object(resource_id, FetchJob)
        for owner in self._owners(resource_id, obj):
            self._queue.add(owner)

    async def _worker(self) -> None:
        while True:
            resource_id = await self._queue.get()
            try:
                result = await self.reconcile(resource_id)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                _LOGGER.error(
                    "Uncaught exception while reconciling %s: %s",
                    resource_id,
                    err,
                    exc_info=True,
                )
                self._queue.add_after(resource_id, self._config.error_requeue_seconds)
            else:
                if result.requeue_after is not None:
                    self._queue.add_after(resource_id, result.requeue_after)
            finally:
                self._queue.done(resource_id)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Run a reconcile pass for a GitRepo.

        The pass is re-run on fresh state when the status write conflicts with a
        concurrent change of the GitRepo.
        """
        for attempt in range(self._config.conflict_retries + 1):
            try:
                with get_trace_collector() as collector:
                    result = await self._reconcile_once(resource_id)
                _LOGGER.debug("Reconciled %s (%s)", resource_id, collector.summary())
                return result
            except PublishConflictError as err:
                _LOGGER.debug("Retrying %s after conflict (%d): %s", resource_id, attempt, err)
        _LOGGER.info("Giving up on %s after repeated conflicts, requeueing", resource_id)
        return ReconcileResult(requeue_after=self._config.error_requeue_seconds)

    async def _reconcile_once(self, resource_id: NamedResource) -> ReconcileResult:
        repo = self._store.get_object(resource_id, GitRepo)
        meta = self._store.get_metadata(resource_id)
        if repo is None or meta is None:
            _LOGGER.info("GitRepo %s deleted, removing its jobs", resource_id)
            self._job_manager.delete_jobs(resource_id.namespace or "", resource_id.name)
            self._queue.forget(resource_id)
            return ReconcileResult()

        status = self._store.get_status(resource_id, GitRepoStatus) or GitRepoStatus()
        observed = ObservedGitRepo(repo=repo, status=status, meta=meta)
        now = self._clock()

        with trace_context(str(resource_id)):
            spec_error: str | None = None
            tracker = TrackerResult(
                target_commit=status.last_observed_commit,
                last_polling_time=status.last_polling_time,
                webhook_commit=status.webhook_commit,
            )
            job = JobObservation()
            try:
                validate_spec(repo)
                with trace_context("tracker"):
                    tracker = await self._tracker.evaluate(observed, now)
                with trace_context("job"):
                    job = self._job_manager.ensure_job(
                        observed, tracker.target_commit, now
                    )
            except JobSpecError as err:
                _LOGGER.error("GitRepo %s is misconfigured: %s", resource_id, err)
                spec_error = str(err)

            applied_commit = job.commit if job.succeeded else status.last_applied_commit
            with trace_context("aggregate"):
                agg = self._aggregator.aggregate(observed, applied_commit, now)
            with trace_context("publish"):
                written = self._publisher.publish(
                    observed, tracker, job, agg, now, spec_error=spec_error
                )

        return ReconcileResult(
            requeue_after=self._requeue_after(now, tracker, job, agg),
            status=written,
        )

    def _requeue_after(
        self,
        now: datetime.datetime,
        tracker: TrackerResult,
        job: JobObservation,
        agg: AggregateResult,
    ) -> float | None:
        deadlines = [
            d
            for d in (
                tracker.next_poll_at,
                agg.next_deadline,
                self._job_manager.retention_deadline(job) if job.applied else None,
            )
            if d is not None
        ]
        if not deadlines:
            return None
        return max(0.0, (min(deadlines) - now).total_seconds())
