"""Deployment Aggregator.

Folds the deployment records reported for the applied commit of a GitRepo into
ready and total counts. The expected (bundle, cluster) pairs come from the Bundles
declared by the scheduler, joined with whatever records were actually reported.
The data is eventually consistent: a missing record is waited for and only
reported as an error once it is overdue.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import datetime
import logging
from typing import cast

from fleet_gitrepo.exceptions import AggregationInconsistency
from fleet_gitrepo.manifest import (
    BUNDLE_DEPLOYMENT_KIND,
    BUNDLE_KIND,
    BUNDLE_NAMESPACE_LABEL,
    COMMIT_LABEL,
    REPO_NAME_LABEL,
    Bundle,
    BundleDeployment,
    NamedResource,
)
from fleet_gitrepo.store import Store

from .resource import ObservedGitRepo

_LOGGER = logging.getLogger(__name__)


class DeploymentLister(ABC):
    """Read-only access to the deployment records of the downstream subsystem."""

    @abstractmethod
    def list_bundles(self, namespace: str, repo_name: str, commit: str) -> list[Bundle]:
        """List the bundles rendered for a commit of a GitRepo."""

    @abstractmethod
    def list_bundle_deployments(
        self, namespace: str, repo_name: str, commit: str
    ) -> list[BundleDeployment]:
        """List the deployment records reported for a commit of a GitRepo."""

    @abstractmethod
    def scheduled_at(self, bundle: Bundle) -> datetime.datetime | None:
        """Return when the bundle was scheduled, if known."""


class StoreDeploymentLister(DeploymentLister):
    """Lists deployment records from the store by label correlation."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def _labels(self, repo_name: str, commit: str) -> dict[str, str]:
        return {REPO_NAME_LABEL: repo_name, COMMIT_LABEL: commit}

    def list_bundles(self, namespace: str, repo_name: str, commit: str) -> list[Bundle]:
        return cast(
            list[Bundle],
            self._store.list_objects(
                BUNDLE_KIND, namespace=namespace, labels=self._labels(repo_name, commit)
            ),
        )

    def list_bundle_deployments(
        self, namespace: str, repo_name: str, commit: str
    ) -> list[BundleDeployment]:
        # Records live in per-cluster namespaces, so they are found by label only
        labels = self._labels(repo_name, commit)
        labels[BUNDLE_NAMESPACE_LABEL] = namespace
        return cast(
            list[BundleDeployment],
            self._store.list_objects(BUNDLE_DEPLOYMENT_KIND, labels=labels),
        )

    def scheduled_at(self, bundle: Bundle) -> datetime.datetime | None:
        if (meta := self._store.get_metadata(bundle_id(bundle))) is None:
            return None
        return meta.creation_timestamp


def bundle_id(bundle: Bundle) -> NamedResource:
    """Return the store identifier of a bundle."""
    return NamedResource(bundle.kind, bundle.namespace, bundle.name)


@dataclass(frozen=True)
class AggregateResult:
    """Summary of the deployments of the applied commit."""

    ready_count: int = 0
    total_count: int = 0
    per_cluster_errors: list[str] = field(default_factory=list)
    """Error messages, at most one per target cluster, ordered by cluster."""

    pending: list[tuple[str, str]] = field(default_factory=list)
    """Expected (bundle, cluster) pairs without a record yet."""

    next_deadline: datetime.datetime | None = None
    """When the earliest pending pair becomes overdue."""

    @property
    def ready_bundle_deployments(self) -> str:
        return f"{self.ready_count}/{self.total_count}"

    @property
    def has_errors(self) -> bool:
        return bool(self.per_cluster_errors)


class DeploymentAggregator:
    """Computes the aggregated deployment state of a GitRepo."""

    def __init__(
        self,
        lister: DeploymentLister,
        aggregation_timeout: datetime.timedelta | None = None,
    ) -> None:
        """Initialize the DeploymentAggregator.

        Args:
            lister: Source of the deployment records.
            aggregation_timeout: How long an expected record may be missing
                before it is reported as an error. None waits forever.
        """
        self._lister = lister
        self._timeout = aggregation_timeout

    def aggregate(
        self,
        observed: ObservedGitRepo,
        applied_commit: str | None,
        now: datetime.datetime,
    ) -> AggregateResult:
        """Aggregate the deployment records of the applied commit."""
        if applied_commit is None:
            return AggregateResult()

        repo = observed.repo
        bundles = self._lister.list_bundles(repo.namespace, repo.name, applied_commit)
        records = self._lister.list_bundle_deployments(
            repo.namespace, repo.name, applied_commit
        )

        # Expected pairs and when each was scheduled
        expected: dict[tuple[str, str], datetime.datetime | None] = {}
        for bundle in bundles:
            scheduled_at = self._lister.scheduled_at(bundle)
            for cluster in bundle.targets:
                expected[(bundle.name, cluster)] = scheduled_at

        reported: dict[tuple[str, str], BundleDeployment] = {}
        for record in records:
            reported[record.key] = record
            expected.setdefault(record.key, None)

        ready_count = 0
        errors: dict[str, str] = {}
        pending: list[tuple[str, str]] = []
        next_deadline: datetime.datetime | None = None
        for key in sorted(expected):
            bundle_name, cluster = key
            if (record := reported.get(key)) is not None:
                if record.message:
                    errors.setdefault(cluster, record.message)
                elif record.ready:
                    ready_count += 1
                continue

            pending.append(key)
            scheduled_at = expected[key]
            if self._timeout is None or scheduled_at is None:
                continue
            deadline = scheduled_at + self._timeout
            if now >= deadline:
                err = AggregationInconsistency(
                    f"cluster {cluster} reported no status for bundle {bundle_name} "
                    f"after {int(self._timeout.total_seconds())}s"
                )
                _LOGGER.warning("GitRepo %s: %s", observed.resource_id.namespaced_name, err)
                errors.setdefault(cluster, str(err))
            elif next_deadline is None or deadline < next_deadline:
                next_deadline = deadline

        result = AggregateResult(
            ready_count=ready_count,
            total_count=len(expected),
            per_cluster_errors=[errors[cluster] for cluster in sorted(errors)],
            pending=pending,
            next_deadline=next_deadline,
        )
        _LOGGER.debug(
            "GitRepo %s deployments %s (%d errors, %d pending)",
            observed.resource_id.namespaced_name,
            result.ready_bundle_deployments,
            len(result.per_cluster_errors),
            len(result.pending),
        )
        return result
