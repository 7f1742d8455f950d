"""Store module for holding the persisted resource graph."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
import datetime
from enum import Enum
from typing import Any, TypeVar

from fleet_gitrepo.manifest import (
    BaseManifest,
    NamedResource,
    GIT_REPO_KIND,
    FETCH_JOB_KIND,
)

T = TypeVar("T", bound=BaseManifest)
U = TypeVar("U", bound=BaseManifest)


SUPPORTS_STATUS: set[str] = {
    GIT_REPO_KIND,
    FETCH_JOB_KIND,
}


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"
    STATUS_UPDATED = "status_updated"


@dataclass(frozen=True)
class ObjectMeta:
    """Bookkeeping the store maintains for every object."""

    generation: int
    """Incremented when the spec of the object changes."""

    resource_version: int
    """Incremented on every write to the object or its status."""

    creation_timestamp: datetime.datetime
    """When the object was first added."""


class Store(ABC):
    """Abstract base class for the resource store with listener support.

    The store plays the role of the API server: objects and their status are kept
    separately, status writes use optimistic concurrency on the resource version.
    """

    @abstractmethod
    def add_object(self, obj: BaseManifest) -> ObjectMeta:
        """Create or update an object, returning its metadata."""

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an object by resource identity and type."""

    @abstractmethod
    def get_metadata(self, resource_id: NamedResource) -> ObjectMeta | None:
        """Retrieve the store metadata for an object."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> bool:
        """Delete an object and its status, returning True if it existed."""

    @abstractmethod
    def update_status(
        self,
        resource_id: NamedResource,
        status: BaseManifest,
        resource_version: int | None = None,
    ) -> ObjectMeta:
        """Replace the status of an object.

        When resource_version is given the write is rejected with a
        PublishConflictError if the object changed since it was read.
        """

    @abstractmethod
    def get_status(self, resource_id: NamedResource, cls: type[U]) -> U | None:
        """Retrieve the status of an object."""

    @abstractmethod
    def list_objects(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[BaseManifest]:
        """List objects, optionally filtered by kind, namespace and labels."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """
