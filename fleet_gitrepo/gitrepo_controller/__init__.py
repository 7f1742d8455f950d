"""GitRepo Controller module.

This module provides the GitRepoController which keeps the status of GitRepo
resources in sync with their remote repository, their fetch jobs and the
deployment records reported by the downstream clusters.
"""

from .aggregator import (
    AggregateResult,
    DeploymentAggregator,
    DeploymentLister,
    StoreDeploymentLister,
)
from .commit_tracker import CommitTracker, ExternalSignal, PollTrigger, TrackerResult
from .controller import GitRepoController, GitRepoControllerConfig, ReconcileResult
from .job_manager import JobManager, JobObservation
from .resource import ObservedGitRepo
from .status import StatusPublisher, display_state

__all__ = [
    "GitRepoController",
    "GitRepoControllerConfig",
    "ReconcileResult",
    "CommitTracker",
    "TrackerResult",
    "PollTrigger",
    "ExternalSignal",
    "JobManager",
    "JobObservation",
    "DeploymentAggregator",
    "DeploymentLister",
    "StoreDeploymentLister",
    "AggregateResult",
    "StatusPublisher",
    "ObservedGitRepo",
    "display_state",
]
