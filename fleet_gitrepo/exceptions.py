"""Exceptions related to fleet-gitrepo."""

__all__ = [
    "FleetException",
    "InputException",
    "RemoteResolutionError",
    "JobExecutionError",
    "JobSpecError",
    "AggregationInconsistency",
    "PublishConflictError",
    "ObjectNotFoundError",
]


class FleetException(Exception):
    """Generic base exception used for this library."""


class InputException(FleetException):
    """Raised when the input documents or values are not formatted as expected."""


class RemoteResolutionError(FleetException):
    """Raised when the commit for a repository branch cannot be resolved.

    This is a transient error, for example the repository is unreachable or the
    branch does not exist. It is retried on the next poll.
    """

    def __init__(self, repo_url: str, branch: str, message: str) -> None:
        super().__init__(
            f"Failed to resolve commit for {repo_url} branch {branch}: {message}"
        )
        self.repo_url = repo_url
        self.branch = branch
        self.message = message


class JobExecutionError(FleetException):
    """Raised when a fetch job finished in a failed state."""

    def __init__(self, job_name: str, message: str | None) -> None:
        super().__init__(f"Job {job_name} failed: {message or 'Unknown error'}")
        self.job_name = job_name
        self.message = message


class JobSpecError(InputException):
    """Raised when a job can't be described from the GitRepo spec.

    This is a permanent error that requires the spec to be edited.
    """


class AggregationInconsistency(FleetException):
    """Raised when expected deployment records never arrived."""


class PublishConflictError(FleetException):
    """Raised when a status write is rejected due to a stale resource version."""

    def __init__(self, resource_name: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Conflict writing {resource_name}: resource version {expected} is stale (now {actual})"
        )
        self.resource_name = resource_name
        self.expected = expected
        self.actual = actual


class ObjectNotFoundError(FleetException):
    """Raised when an object is not found in the store."""
