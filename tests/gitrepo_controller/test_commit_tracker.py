"""Tests for detecting new commits."""

import datetime

import pytest

from fleet_gitrepo.gitrepo_controller import (
    CommitTracker,
    ExternalSignal,
    PollTrigger,
)
from fleet_gitrepo.manifest import Condition, ConditionStatus, GitRepoStatus

from tests.conftest import NOW, FakeResolver
from .conftest import REPO_URL, make_repo, observe

LATER = NOW + datetime.timedelta(seconds=10)
AFTER_DEADLINE = NOW + datetime.timedelta(seconds=15)


@pytest.fixture(name="tracker")
def tracker_fixture(resolver: FakeResolver) -> CommitTracker:
    """Create a tracker using the fake resolver."""
    resolver.commits[(REPO_URL, "main")] = "c1"
    return CommitTracker(resolver)


def polled_status(commit: str = "c1", **kwargs: object) -> GitRepoStatus:
    """Status after a successful poll at NOW."""
    return GitRepoStatus(
        observed_generation=1,
        last_observed_commit=commit,
        last_polling_time=NOW,
        **kwargs,  # type: ignore[arg-type]
    )


async def test_first_pass_polls(tracker: CommitTracker, resolver: FakeResolver) -> None:
    """Test a GitRepo that was never polled is polled right away."""
    observed = observe(make_repo())
    assert tracker.triggers(observed, NOW) == [PollTrigger()]

    result = await tracker.evaluate(observed, NOW)
    assert result.target_commit == "c1"
    assert result.changed
    assert result.polled
    assert result.reason == "Polled"
    assert result.error is None
    assert result.last_polling_time == NOW
    assert result.next_poll_at == AFTER_DEADLINE
    assert resolver.calls == [(REPO_URL, "main")]


async def test_no_poll_before_deadline(
    tracker: CommitTracker, resolver: FakeResolver
) -> None:
    """Test nothing is resolved before the polling interval elapsed."""
    observed = observe(make_repo(), polled_status())
    assert tracker.triggers(observed, LATER) == []

    result = await tracker.evaluate(observed, LATER)
    assert result.target_commit == "c1"
    assert not result.changed
    assert not result.polled
    assert result.last_polling_time == NOW
    assert result.next_poll_at == AFTER_DEADLINE
    assert resolver.calls == []


async def test_poll_after_deadline(
    tracker: CommitTracker, resolver: FakeResolver
) -> None:
    """Test a new commit is detected once the deadline passed."""
    resolver.commits[(REPO_URL, "main")] = "c2"
    observed = observe(make_repo(), polled_status())

    result = await tracker.evaluate(observed, AFTER_DEADLINE)
    assert result.target_commit == "c2"
    assert result.changed
    assert result.last_polling_time == AFTER_DEADLINE


async def test_poll_unchanged_commit(tracker: CommitTracker) -> None:
    """Test polling the same commit again is not a change."""
    result = await tracker.evaluate(observe(make_repo(), polled_status()), AFTER_DEADLINE)
    assert result.target_commit == "c1"
    assert result.polled
    assert not result.changed


async def test_polling_disabled(tracker: CommitTracker, resolver: FakeResolver) -> None:
    """Test a GitRepo without polling interval is only polled once."""
    repo = make_repo(polling_interval=None)
    first = await tracker.evaluate(observe(repo), NOW)
    assert first.target_commit == "c1"
    assert first.next_poll_at is None

    later = NOW + datetime.timedelta(days=30)
    assert tracker.triggers(observe(repo, polled_status()), later) == []
    assert len(resolver.calls) == 1


async def test_generation_change_polls(tracker: CommitTracker) -> None:
    """Test editing the spec forces a poll before the deadline."""
    observed = observe(make_repo(), polled_status(), generation=2)
    assert tracker.triggers(observed, LATER) == [PollTrigger()]


async def test_webhook_before_deadline(
    tracker: CommitTracker, resolver: FakeResolver
) -> None:
    """Test an external signal is used without waiting for the deadline."""
    observed = observe(make_repo(webhook_commit="c2"), polled_status())
    assert tracker.triggers(observed, LATER) == [ExternalSignal("c2")]

    result = await tracker.evaluate(observed, LATER)
    assert result.target_commit == "c2"
    assert result.changed
    assert result.reason == "Webhook"
    assert result.webhook_commit == "c2"
    assert not result.polled
    assert resolver.calls == []


async def test_webhook_consumed_once(tracker: CommitTracker) -> None:
    """Test a consumed signal does not override later polls."""
    status = polled_status(commit="c3", webhook_commit="c2")
    observed = observe(make_repo(webhook_commit="c2"), status)
    assert tracker.triggers(observed, LATER) == []

    result = await tracker.evaluate(observed, LATER)
    assert result.target_commit == "c3"
    assert not result.changed


async def test_poll_wins_over_webhook(
    tracker: CommitTracker, resolver: FakeResolver
) -> None:
    """Test a due poll runs after the signal and its result is used."""
    resolver.commits[(REPO_URL, "main")] = "c3"
    observed = observe(make_repo(webhook_commit="c2"), polled_status())
    assert tracker.triggers(observed, AFTER_DEADLINE) == [
        ExternalSignal("c2"),
        PollTrigger(),
    ]

    result = await tracker.evaluate(observed, AFTER_DEADLINE)
    assert result.target_commit == "c3"
    assert result.reason == "Polled"
    assert result.webhook_commit == "c2"


async def test_resolution_error(tracker: CommitTracker, resolver: FakeResolver) -> None:
    """Test a failed poll keeps the previous commit and reports the error."""
    resolver.commits.clear()
    result = await tracker.evaluate(observe(make_repo(), polled_status()), AFTER_DEADLINE)
    assert result.target_commit == "c1"
    assert not result.changed
    assert result.polled
    assert result.error is not None
    assert "repository not found" in result.error
    assert result.last_polling_time == AFTER_DEADLINE


async def test_resolution_error_carried(tracker: CommitTracker) -> None:
    """Test the error of the last poll is kept until the next poll."""
    status = polled_status(
        conditions=[
            Condition("GitPolling", ConditionStatus.FALSE, message="unreachable")
        ]
    )
    result = await tracker.evaluate(observe(make_repo(), status), LATER)
    assert result.error == "unreachable"

    # A successful poll clears it
    result = await tracker.evaluate(observe(make_repo(), status), AFTER_DEADLINE)
    assert result.error is None


async def test_webhook_clears_resolution_error(tracker: CommitTracker) -> None:
    """Test a commit from an external signal clears the last poll error."""
    status = polled_status(
        conditions=[
            Condition("GitPolling", ConditionStatus.FALSE, message="unreachable")
        ]
    )
    observed = observe(make_repo(webhook_commit="c9", polling_interval=None), status)
    result = await tracker.evaluate(observed, LATER)
    assert result.target_commit == "c9"
    assert result.error is None
    assert not result.polled


async def test_pinned_revision(tracker: CommitTracker, resolver: FakeResolver) -> None:
    """Test a pinned revision is used without resolving the branch."""
    result = await tracker.evaluate(observe(make_repo(revision="v1.0.0")), NOW)
    assert result.target_commit == "v1.0.0"
    assert result.reason == "Revision"
    assert resolver.calls == []
