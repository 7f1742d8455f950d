"""Commit Tracker.

Decides whether the commit known for a GitRepo is stale. A new candidate commit
comes from one of two triggers:

    - PollTrigger: the polling deadline passed (or no poll ever ran, or the spec
      changed), so the remote branch is resolved again.
    - ExternalSignal: the webhook annotation carries a commit that has not been
      consumed yet. It bypasses the polling deadline.

The deadline is derived from the persisted `last_polling_time`, so the tracker
keeps no state of its own between passes.
"""

from dataclasses import dataclass
import datetime
import logging

from fleet_gitrepo.exceptions import RemoteResolutionError
from fleet_gitrepo.manifest import ConditionStatus
from fleet_gitrepo.source import CommitResolver

from .const import (
    GIT_POLLING,
    REASON_POLLED,
    REASON_REVISION,
    REASON_WEBHOOK,
)
from .resource import ObservedGitRepo

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollTrigger:
    """The remote branch should be resolved."""


@dataclass(frozen=True)
class ExternalSignal:
    """An out of band signal supplied the commit directly."""

    commit: str


Trigger = PollTrigger | ExternalSignal


@dataclass(frozen=True)
class TrackerResult:
    """Outcome of evaluating a GitRepo for new commits."""

    target_commit: str | None
    """The commit that should be deployed, i.e. the last observed commit."""

    reason: str | None = None
    """What produced the candidate commit this pass, None if nothing ran."""

    changed: bool = False
    """True if the target commit differs from the previously observed one."""

    polled: bool = False
    """True if a poll ran this pass."""

    error: str | None = None
    """Unresolved remote error, carried over until a commit is found again."""

    last_polling_time: datetime.datetime | None = None
    webhook_commit: str | None = None
    next_poll_at: datetime.datetime | None = None


class CommitTracker:
    """Detects new commits for a GitRepo."""

    def __init__(self, resolver: CommitResolver) -> None:
        self._resolver = resolver

    def triggers(
        self, observed: ObservedGitRepo, now: datetime.datetime
    ) -> list[Trigger]:
        """Return the triggers that apply to the GitRepo at this time.

        A poll that is due runs after the external signal, so its result wins.
        """
        triggers: list[Trigger] = []
        signal = observed.repo.webhook_commit
        if signal and signal != observed.status.webhook_commit:
            triggers.append(ExternalSignal(signal))
        if self._poll_due(observed, now):
            triggers.append(PollTrigger())
        return triggers

    def _poll_due(self, observed: ObservedGitRepo, now: datetime.datetime) -> bool:
        status = observed.status
        if status.last_polling_time is None or observed.generation_changed:
            return True
        if (next_poll_at := self.next_poll_at(observed, status.last_polling_time)) is None:
            return False
        return now >= next_poll_at

    @staticmethod
    def next_poll_at(
        observed: ObservedGitRepo, last_polling_time: datetime.datetime | None
    ) -> datetime.datetime | None:
        """Return the polling deadline, None when polling is disabled."""
        spec = observed.repo.spec
        if not spec.polling_enabled or last_polling_time is None:
            return None
        assert spec.polling_interval is not None
        return last_polling_time + spec.polling_interval

    def _carried_error(self, observed: ObservedGitRepo) -> str | None:
        condition = observed.status.get_condition(GIT_POLLING)
        if condition is not None and condition.status == ConditionStatus.FALSE:
            return condition.message or "Failed to resolve commit"
        return None

    async def evaluate(
        self, observed: ObservedGitRepo, now: datetime.datetime
    ) -> TrackerResult:
        """Evaluate the GitRepo and return the commit it should converge to."""
        status = observed.status
        last_polling_time = status.last_polling_time
        webhook_commit = status.webhook_commit
        error = self._carried_error(observed)
        candidate: str | None = None
        reason: str | None = None
        polled = False

        for trigger in self.triggers(observed, now):
            match trigger:
                case ExternalSignal(commit=commit):
                    _LOGGER.info(
                        "GitRepo %s received external signal for commit %s",
                        observed.resource_id.namespaced_name,
                        commit,
                    )
                    candidate = commit
                    reason = REASON_WEBHOOK
                    webhook_commit = commit
                    error = None
                case PollTrigger():
                    polled = True
                    last_polling_time = now
                    try:
                        candidate, reason = await self._poll(observed)
                        error = None
                    except RemoteResolutionError as err:
                        _LOGGER.warning(
                            "GitRepo %s: %s", observed.resource_id.namespaced_name, err
                        )
                        error = str(err)

        target = status.last_observed_commit
        changed = False
        if candidate is not None and candidate != target:
            _LOGGER.info(
                "GitRepo %s changed commit %s -> %s",
                observed.resource_id.namespaced_name,
                target,
                candidate,
            )
            target = candidate
            changed = True

        return TrackerResult(
            target_commit=target,
            reason=reason,
            changed=changed,
            polled=polled,
            error=error,
            last_polling_time=last_polling_time,
            webhook_commit=webhook_commit,
            next_poll_at=self.next_poll_at(observed, last_polling_time),
        )

    async def _poll(self, observed: ObservedGitRepo) -> tuple[str, str]:
        spec = observed.repo.spec
        if spec.revision:
            return spec.revision, REASON_REVISION
        commit = await self._resolver.resolve(spec.repo, spec.branch)
        return commit, REASON_POLLED
