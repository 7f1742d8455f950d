"""Representation of the resources handled by the GitRepo reconciler.

The objects here mirror the Kubernetes custom resources of a fleet controller: the
user authored GitRepo, the FetchJob created for each observed commit, and the Bundle
and BundleDeployment records reported by the downstream deployment subsystem.
"""

from dataclasses import dataclass, field
import datetime
from enum import StrEnum
import logging
from pathlib import Path
import re
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "GitRepo",
    "GitRepoSpec",
    "GitRepoStatus",
    "GitRepoDisplay",
    "Condition",
    "ConditionStatus",
    "FetchJob",
    "FetchJobSpec",
    "FetchJobStatus",
    "JobState",
    "Bundle",
    "BundleDeployment",
    "parse_raw_obj",
    "read_manifests",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
FLEET_DOMAIN = "fleet.cattle.io"
GIT_REPO_KIND = "GitRepo"
FETCH_JOB_KIND = "GitJob"
BUNDLE_KIND = "Bundle"
BUNDLE_DEPLOYMENT_KIND = "BundleDeployment"
DEFAULT_NAMESPACE = "fleet-local"
DEFAULT_BRANCH = "master"

# Labels used to correlate owned and reported objects with a GitRepo
REPO_NAME_LABEL = "fleet.cattle.io/repo-name"
COMMIT_LABEL = "fleet.cattle.io/commit"
# Deployment records live in cluster namespaces and name the GitRepo namespace
BUNDLE_NAMESPACE_LABEL = "fleet.cattle.io/bundle-namespace"

# An out of band edit of this annotation supplies a commit directly, e.g. from a
# webhook receiver, without waiting for the polling deadline.
WEBHOOK_COMMIT_ANNOTATION = "fleet.cattle.io/webhook-commit"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _metadata(cls: type, doc: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    """Return the name, namespace and metadata of a resource document."""
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
    return name, metadata.get("namespace", DEFAULT_NAMESPACE), metadata


def parse_duration(value: str | int | float | None) -> datetime.timedelta | None:
    """Parse a Go style duration string such as `15s`, `1m0s` or `24h`.

    Plain numbers are interpreted as seconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.timedelta(seconds=value)
    text = value.strip()
    if text.replace(".", "", 1).isdigit():
        return datetime.timedelta(seconds=float(text))
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise InputException(f"Invalid duration '{value}'")
    return datetime.timedelta(seconds=total)


def _parse_time(value: Any) -> datetime.datetime | None:
    """Parse a timestamp, which the YAML loader may already have converted."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value
    if not isinstance(value, str):
        raise InputException(f"Invalid timestamp '{value}'")
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError as err:
        raise InputException(f"Invalid timestamp '{value}': {err}") from err


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml.dump(self.to_dict(), sort_keys=False)

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class GitRepoSpec(BaseManifest):
    """The user authored desired state of a GitRepo."""

    repo: str
    """URL of the git repository."""

    branch: str = DEFAULT_BRANCH
    """Branch that is polled for new commits."""

    revision: str | None = None
    """A specific commit or tag to deploy, takes precedence over the branch."""

    polling_interval: datetime.timedelta | None = field(
        metadata=field_options(alias="pollingInterval"), default=None
    )
    """How often the branch is polled. Zero or absent disables polling."""

    target_namespace: str | None = field(
        metadata=field_options(alias="targetNamespace"), default=None
    )
    """Namespace all deployed resources are forced into."""

    paths: list[str] = field(default_factory=list)
    """Paths within the repository to render, all of it if empty."""

    force_sync_generation: int = field(
        metadata=field_options(alias="forceSyncGeneration"), default=0
    )
    """Bumping this value re-runs the fetch job for the current commit."""

    @property
    def polling_enabled(self) -> bool:
        """Return True if the branch is polled periodically."""
        return bool(self.polling_interval and self.polling_interval.total_seconds() > 0)

    @classmethod
    def parse_doc(cls, spec: dict[str, Any]) -> "GitRepoSpec":
        """Parse the spec section of a GitRepo document."""
        repo = spec.get("repo")
        if repo is not None and not isinstance(repo, str):
            raise InputException(f"Invalid GitRepo spec.repo: {spec}")
        paths = spec.get("paths") or []
        if not isinstance(paths, list):
            raise InputException(f"Invalid GitRepo spec.paths must be a list: {spec}")
        return cls(
            repo=repo or "",
            branch=spec.get("branch") or DEFAULT_BRANCH,
            revision=spec.get("revision") or None,
            polling_interval=parse_duration(spec.get("pollingInterval")),
            target_namespace=spec.get("targetNamespace"),
            paths=[str(p) for p in paths],
            force_sync_generation=int(spec.get("forceSyncGeneration") or 0),
        )


@dataclass
class GitRepo(BaseManifest):
    """A watched git repository.

    The spec is user authored, the status is written by the reconciler only and is
    stored separately in the store.
    """

    kind: ClassVar[str] = GIT_REPO_KIND
    """The kind of the object."""

    name: str
    """The name of the GitRepo."""

    namespace: str
    """The namespace that owns the GitRepo."""

    spec: GitRepoSpec
    """The desired state."""

    labels: dict[str, str] = field(default_factory=dict)
    """Labels on the GitRepo."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations on the GitRepo, which are not part of the generation."""

    @property
    def resource_id(self) -> NamedResource:
        """Identifier of the GitRepo in the store."""
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def webhook_commit(self) -> str | None:
        """The commit supplied by an external change signal, if any."""
        return self.annotations.get(WEBHOOK_COMMIT_ANNOTATION) or None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitRepo":
        """Parse a GitRepo from a kubernetes resource object."""
        _check_version(doc, FLEET_DOMAIN)
        name, namespace, metadata = _metadata(cls, doc)
        if (spec := doc.get("spec")) is None:
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        return cls(
            name=name,
            namespace=namespace,
            spec=GitRepoSpec.parse_doc(spec),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
        )


class ConditionStatus(StrEnum):
    """Status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(BaseManifest):
    """A single observation about the state of a resource."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime.datetime | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )

    class Config(BaseManifest.Config):
        serialize_by_alias = True


@dataclass
class GitRepoDisplay(BaseManifest):
    """Human readable summary of a GitRepo."""

    state: str = ""
    ready_bundle_deployments: str = field(
        metadata=field_options(alias="readyBundleDeployments"), default="0/0"
    )
    error: bool = False
    message: str = ""

    class Config(BaseManifest.Config):
        serialize_by_alias = True


@dataclass
class GitRepoStatus(BaseManifest):
    """The observed state of a GitRepo, written by the reconciler."""

    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )
    last_observed_commit: str | None = field(
        metadata=field_options(alias="commit"), default=None
    )
    last_applied_commit: str | None = field(
        metadata=field_options(alias="lastAppliedCommit"), default=None
    )
    last_applied_job: str | None = field(
        metadata=field_options(alias="lastAppliedJob"), default=None
    )
    webhook_commit: str | None = field(
        metadata=field_options(alias="webhookCommit"), default=None
    )
    last_polling_time: datetime.datetime | None = field(
        metadata=field_options(alias="lastPollingTriggered"), default=None
    )
    ready_count: int = field(
        metadata=field_options(alias="readyClusters"), default=0
    )
    total_count: int = field(
        metadata=field_options(alias="desiredReadyClusters"), default=0
    )
    display: GitRepoDisplay = field(default_factory=GitRepoDisplay)
    conditions: list[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the specified type, if present."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    class Config(BaseManifest.Config):
        serialize_by_alias = True


class JobState(StrEnum):
    """Completion state of a fetch job."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def in_progress(self) -> bool:
        return self in (JobState.PENDING, JobState.RUNNING)


@dataclass
class FetchJobSpec(BaseManifest):
    """Description of the fetch-and-apply work handed to the executor."""

    repo: str
    branch: str
    commit: str
    paths: list[str] = field(default_factory=list)
    target_namespace: str | None = field(
        metadata=field_options(alias="targetNamespace"), default=None
    )
    sync_interval: int = field(
        metadata=field_options(alias="syncInterval"), default=0
    )
    """Zero for a one-shot job, otherwise the executor polls on its own."""

    force_sync_generation: int = field(
        metadata=field_options(alias="forceSyncGeneration"), default=0
    )


@dataclass
class FetchJob(BaseManifest):
    """A unit of execution that fetches and applies one commit of a GitRepo."""

    kind: ClassVar[str] = FETCH_JOB_KIND

    name: str
    namespace: str
    spec: FetchJobSpec
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def owner(self) -> str | None:
        """Name of the GitRepo that created this job."""
        return self.labels.get(REPO_NAME_LABEL)


@dataclass
class FetchJobStatus(BaseManifest):
    """Status of a fetch job as reported by the executor."""

    state: JobState = JobState.PENDING
    message: str | None = None
    start_time: datetime.datetime | None = field(
        metadata=field_options(alias="startTime"), default=None
    )
    completion_time: datetime.datetime | None = field(
        metadata=field_options(alias="completionTime"), default=None
    )


@dataclass
class Bundle(BaseManifest):
    """A rendered deployment unit and the clusters it is scheduled onto.

    Bundles are written by the external scheduler and declare the deployments that
    are expected for a commit.
    """

    kind: ClassVar[str] = BUNDLE_KIND

    name: str
    namespace: str
    targets: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Bundle":
        """Parse a Bundle from a kubernetes resource object."""
        _check_version(doc, FLEET_DOMAIN)
        name, namespace, metadata = _metadata(cls, doc)
        spec = doc.get("spec") or {}
        targets: list[str] = []
        for target in spec.get("targets") or []:
            if not isinstance(target, dict):
                targets.append(str(target))
            elif cluster := target.get("clusterName"):
                targets.append(str(cluster))
            else:
                raise InputException(
                    f"Invalid {cls.__name__} target missing clusterName: {doc}"
                )
        return cls(
            name=name,
            namespace=namespace,
            targets=targets,
            labels=dict(metadata.get("labels") or {}),
        )


@dataclass
class BundleDeployment(BaseManifest):
    """The reported state of one bundle on one target cluster."""

    kind: ClassVar[str] = BUNDLE_DEPLOYMENT_KIND

    name: str
    namespace: str
    bundle: str
    cluster: str
    ready: bool = False
    message: str | None = None
    """Error reported by the agent, if any."""

    last_transition_time: datetime.datetime | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        """The (bundle, cluster) pair this record reports on."""
        return (self.bundle, self.cluster)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "BundleDeployment":
        """Parse a BundleDeployment from a kubernetes resource object."""
        _check_version(doc, FLEET_DOMAIN)
        name, namespace, metadata = _metadata(cls, doc)
        spec = doc.get("spec") or {}
        status = doc.get("status") or {}
        if not (bundle := spec.get("bundle")):
            raise InputException(f"Invalid {cls.__name__} missing spec.bundle: {doc}")
        if not (cluster := spec.get("cluster")):
            raise InputException(f"Invalid {cls.__name__} missing spec.cluster: {doc}")
        return cls(
            name=name,
            namespace=namespace,
            bundle=bundle,
            cluster=cluster,
            ready=bool(status.get("ready", False)),
            message=status.get("message") or None,
            last_transition_time=_parse_time(status.get("lastTransitionTime")),
            labels=dict(metadata.get("labels") or {}),
        )


_PARSERS: dict[str, Any] = {
    GIT_REPO_KIND: GitRepo.parse_doc,
    BUNDLE_KIND: Bundle.parse_doc,
    BUNDLE_DEPLOYMENT_KIND: BundleDeployment.parse_doc,
}


def parse_raw_obj(doc: dict[str, Any]) -> BaseManifest:
    """Parse a raw kubernetes object into a manifest object."""
    if not isinstance(doc, dict) or not (kind := doc.get("kind")):
        raise InputException(f"Invalid object missing kind: {doc}")
    if (parser := _PARSERS.get(kind)) is None:
        raise InputException(f"Unsupported object kind '{kind}'")
    return parser(doc)


async def read_manifests(path: Path) -> list[BaseManifest]:
    """Read all supported objects from a multi-document YAML file."""
    _LOGGER.debug("Reading manifests from %s", path)
    async with aiofiles.open(str(path)) as manifest_file:
        content = await manifest_file.read()
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    return [parse_raw_obj(doc) for doc in docs if doc]
