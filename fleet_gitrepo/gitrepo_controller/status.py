"""Status Publisher.

Merges the outputs of the Commit Tracker, the Job Lifecycle Manager and the
Deployment Aggregator into the status block of a GitRepo. The complete desired
status is computed on every pass and only written when it differs from the
persisted one, so passes without an observed change cause no writes.

The display state is chosen by an ordered list of guard predicates, the first
matching guard wins.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import datetime
import logging

from fleet_gitrepo.exceptions import JobExecutionError
from fleet_gitrepo.manifest import (
    Condition,
    ConditionStatus,
    GitRepoDisplay,
    GitRepoStatus,
    JobState,
)
from fleet_gitrepo.store import Store

from .aggregator import AggregateResult
from .commit_tracker import TrackerResult
from .const import (
    ACCEPTED,
    CONDITION_ORDER,
    GIT_CHANGE_DETECTED,
    GIT_POLLING,
    READY,
    REASON_ACCEPTED,
    REASON_INVALID_SPEC,
    REASON_JOB_FAILED,
    REASON_POLLED,
    REASON_RESOLVE_FAILED,
    REASON_WEBHOOK,
    STALLED,
    STATE_ERROR_AT_DOWNSTREAM,
    STATE_GIT_ERROR,
    STATE_GIT_UPDATING,
    STATE_READY,
    STATE_WAIT_FOR_DEPLOYMENT,
)
from .job_manager import JobObservation
from .resource import ObservedGitRepo

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusFacts:
    """The inputs of the display state machine."""

    target_commit: str | None = None
    applied_commit: str | None = None
    job_state: JobState | None = None
    git_error: str | None = None
    job_error: str | None = None
    spec_error: str | None = None
    ready_count: int = 0
    total_count: int = 0
    downstream_errors: list[str] = field(default_factory=list)

    @property
    def job_in_progress(self) -> bool:
        return self.job_state is not None and self.job_state.in_progress

    @property
    def awaiting_apply(self) -> bool:
        """The target commit is known but not applied, and nothing blocks it."""
        return (
            self.target_commit is not None
            and self.target_commit != self.applied_commit
            and self.job_error is None
            and self.spec_error is None
        )

    @property
    def errors(self) -> list[str]:
        return [
            err
            for err in (self.spec_error, self.job_error, self.git_error)
            if err is not None
        ] + list(self.downstream_errors)


DISPLAY_STATES: list[tuple[str, Callable[[StatusFacts], bool]]] = [
    (STATE_GIT_UPDATING, lambda f: f.job_in_progress or f.awaiting_apply),
    (
        STATE_ERROR_AT_DOWNSTREAM,
        lambda f: f.applied_commit is not None and bool(f.downstream_errors),
    ),
    (
        STATE_WAIT_FOR_DEPLOYMENT,
        lambda f: f.applied_commit is not None
        and (f.total_count == 0 or f.ready_count < f.total_count),
    ),
    (STATE_READY, lambda f: f.total_count > 0 and f.ready_count == f.total_count),
    (
        STATE_GIT_ERROR,
        lambda f: f.applied_commit is None
        and bool(f.git_error or f.job_error or f.spec_error),
    ),
]
DEFAULT_STATE = STATE_GIT_UPDATING


def display_state(facts: StatusFacts) -> str:
    """Return the display state of the first matching guard."""
    for state, guard in DISPLAY_STATES:
        if guard(facts):
            return state
    return DEFAULT_STATE


def set_condition(
    conditions: dict[str, Condition],
    condition: Condition,
    now: datetime.datetime,
) -> None:
    """Replace the condition of the same type.

    The transition time only moves when the condition status changes.
    """
    existing = conditions.get(condition.type)
    if existing is not None and existing.status == condition.status:
        condition.last_transition_time = existing.last_transition_time
    else:
        condition.last_transition_time = now
    conditions[condition.type] = condition


class StatusPublisher:
    """Computes and writes the status block of a GitRepo."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def desired_status(
        self,
        observed: ObservedGitRepo,
        tracker: TrackerResult,
        job: JobObservation,
        agg: AggregateResult,
        now: datetime.datetime,
        spec_error: str | None = None,
    ) -> GitRepoStatus:
        """Compute the complete status the GitRepo should have."""
        current = observed.status
        if job.succeeded:
            applied_commit, applied_job = job.commit, job.job_name
        else:
            applied_commit, applied_job = (
                current.last_applied_commit,
                current.last_applied_job,
            )
        job_error = None
        if job.failed:
            job_error = str(JobExecutionError(job.job_name or "", job.message))

        facts = StatusFacts(
            target_commit=tracker.target_commit,
            applied_commit=applied_commit,
            job_state=job.state,
            git_error=tracker.error,
            job_error=job_error,
            spec_error=spec_error,
            ready_count=agg.ready_count,
            total_count=agg.total_count,
            downstream_errors=agg.per_cluster_errors,
        )
        state = display_state(facts)
        message = "; ".join(facts.errors)

        conditions = {c.type: c for c in current.conditions}
        if spec_error:
            set_condition(
                conditions,
                Condition(
                    ACCEPTED, ConditionStatus.FALSE, REASON_INVALID_SPEC, spec_error
                ),
                now,
            )
        else:
            set_condition(
                conditions,
                Condition(ACCEPTED, ConditionStatus.TRUE, REASON_ACCEPTED),
                now,
            )
        if tracker.error:
            set_condition(
                conditions,
                Condition(
                    GIT_POLLING,
                    ConditionStatus.FALSE,
                    REASON_RESOLVE_FAILED,
                    tracker.error,
                ),
                now,
            )
        elif tracker.polled or tracker.reason == REASON_WEBHOOK:
            set_condition(
                conditions,
                Condition(
                    GIT_POLLING,
                    ConditionStatus.TRUE,
                    REASON_POLLED if tracker.polled else REASON_WEBHOOK,
                ),
                now,
            )
        if tracker.changed:
            set_condition(
                conditions,
                Condition(
                    GIT_CHANGE_DETECTED,
                    ConditionStatus.TRUE,
                    tracker.reason or "",
                    f"New commit {tracker.target_commit}",
                ),
                now,
            )
        if spec_error:
            set_condition(
                conditions,
                Condition(STALLED, ConditionStatus.TRUE, REASON_INVALID_SPEC, spec_error),
                now,
            )
        elif job_error:
            set_condition(
                conditions,
                Condition(STALLED, ConditionStatus.TRUE, REASON_JOB_FAILED, job_error),
                now,
            )
        else:
            conditions.pop(STALLED, None)
        set_condition(
            conditions,
            Condition(
                READY,
                ConditionStatus.TRUE if state == STATE_READY else ConditionStatus.FALSE,
                state,
                message,
            ),
            now,
        )

        return GitRepoStatus(
            observed_generation=observed.meta.generation,
            last_observed_commit=tracker.target_commit,
            last_applied_commit=applied_commit,
            last_applied_job=applied_job,
            webhook_commit=tracker.webhook_commit,
            last_polling_time=tracker.last_polling_time,
            ready_count=agg.ready_count,
            total_count=agg.total_count,
            display=GitRepoDisplay(
                state=state,
                ready_bundle_deployments=agg.ready_bundle_deployments,
                error=bool(facts.errors),
                message=message,
            ),
            conditions=[
                conditions[t] for t in CONDITION_ORDER if t in conditions
            ]
            + [c for t, c in conditions.items() if t not in CONDITION_ORDER],
        )

    def publish(
        self,
        observed: ObservedGitRepo,
        tracker: TrackerResult,
        job: JobObservation,
        agg: AggregateResult,
        now: datetime.datetime,
        spec_error: str | None = None,
    ) -> GitRepoStatus | None:
        """Write the desired status if it differs from the persisted one.

        Returns the written status, or None if nothing changed.

        Raises:
            PublishConflictError: If the GitRepo changed since it was read.
        """
        desired = self.desired_status(observed, tracker, job, agg, now, spec_error)
        if desired == observed.status:
            _LOGGER.debug(
                "Status of %s unchanged, skipping write",
                observed.resource_id.namespaced_name,
            )
            return None
        self._store.update_status(
            observed.resource_id,
            desired,
            resource_version=observed.meta.resource_version,
        )
        _LOGGER.info(
            "Updated status of %s: %s (%s)",
            observed.resource_id.namespaced_name,
            desired.display.state,
            desired.display.ready_bundle_deployments,
        )
        return desired
