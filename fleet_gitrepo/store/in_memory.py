"""Module for in memory object store."""

import dataclasses
import datetime
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, DefaultDict, TypeVar

from fleet_gitrepo.manifest import BaseManifest, NamedResource
from fleet_gitrepo.exceptions import ObjectNotFoundError, PublishConflictError

from .store import Store, StoreEvent, ObjectMeta, SUPPORTS_STATUS


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)
U = TypeVar("U", bound=BaseManifest)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _resource_id(obj: BaseManifest) -> NamedResource:
    if (
        not hasattr(obj, "kind")
        or not hasattr(obj, "namespace")
        or not hasattr(obj, "name")
    ):
        raise ValueError("Object must have kind, namespace, and name attributes")
    return NamedResource(obj.kind, obj.namespace, obj.name)


def _generation_content(obj: BaseManifest) -> Any:
    """Return the part of an object that counts towards its generation."""
    if (spec := getattr(obj, "spec", None)) is not None:
        return spec
    return obj


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores objects and their status keyed by NamedResource and keeps generation and
    resource version bookkeeping for each object.
    """

    def __init__(
        self, clock: Callable[[], datetime.datetime] | None = None
    ) -> None:
        """Initialize the InMemoryStore."""
        self._clock = clock or _utcnow
        self._objects: dict[NamedResource, BaseManifest] = {}
        self._metadata: dict[NamedResource, ObjectMeta] = {}
        self._status: dict[NamedResource, BaseManifest] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: BaseManifest) -> ObjectMeta:
        """Create or update an object in the store."""
        resource_id = _resource_id(obj)
        _LOGGER.debug("Adding object %s to store", resource_id)
        if (existing := self._objects.get(resource_id)) is None:
            meta = ObjectMeta(
                generation=1,
                resource_version=1,
                creation_timestamp=self._clock(),
            )
            self._objects[resource_id] = obj
            self._metadata[resource_id] = meta
            self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)
            return meta

        meta = self._metadata[resource_id]
        if dataclasses.asdict(existing) == dataclasses.asdict(obj):
            _LOGGER.debug("Object %s unchanged in store, skipping", resource_id)
            return meta

        generation = meta.generation
        if dataclasses.asdict(_generation_content(existing)) != dataclasses.asdict(
            _generation_content(obj)
        ):
            generation += 1
        meta = dataclasses.replace(
            meta,
            generation=generation,
            resource_version=meta.resource_version + 1,
        )
        _LOGGER.debug(
            "Updating existing object %s in store (generation %d)",
            resource_id,
            generation,
        )
        self._objects[resource_id] = obj
        self._metadata[resource_id] = meta
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, obj)
        return meta

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is not None:
            if isinstance(obj, cls):
                return obj
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return None

    def get_metadata(self, resource_id: NamedResource) -> ObjectMeta | None:
        """Retrieve the store metadata for an object."""
        return self._metadata.get(resource_id)

    def delete_object(self, resource_id: NamedResource) -> bool:
        """Delete an object and its status."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            return False
        _LOGGER.debug("Deleting object %s from store", resource_id)
        self._metadata.pop(resource_id, None)
        self._status.pop(resource_id, None)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
        return True

    def update_status(
        self,
        resource_id: NamedResource,
        status: BaseManifest,
        resource_version: int | None = None,
    ) -> ObjectMeta:
        """Replace the status of an object."""
        if resource_id.kind not in SUPPORTS_STATUS:
            raise ValueError(
                f"Resource kind {resource_id.kind} does not support status updates"
            )
        if (meta := self._metadata.get(resource_id)) is None:
            raise ObjectNotFoundError(
                f"Cannot update status of missing object {resource_id}"
            )
        if resource_version is not None and resource_version != meta.resource_version:
            raise PublishConflictError(
                str(resource_id), resource_version, meta.resource_version
            )
        _LOGGER.debug("Updating status for resource %s", resource_id)
        meta = dataclasses.replace(meta, resource_version=meta.resource_version + 1)
        self._metadata[resource_id] = meta
        self._status[resource_id] = status
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, status)
        return meta

    def get_status(self, resource_id: NamedResource, cls: type[U]) -> U | None:
        """Retrieve the status of an object."""
        status = self._status.get(resource_id)
        if status is not None:
            if not isinstance(status, cls):
                raise ValueError(
                    f"Status {resource_id.namespaced_name} is not of type {cls.__name__} (was {status.__class__.__name__})"
                )
            return status
        return None

    def list_objects(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[BaseManifest]:
        """List objects, optionally filtered by kind, namespace and labels."""
        results = []
        for resource_id, obj in self._objects.items():
            if kind is not None and resource_id.kind != kind:
                continue
            if namespace is not None and resource_id.namespace != namespace:
                continue
            if labels:
                obj_labels = getattr(obj, "labels", None) or {}
                if any(obj_labels.get(k) != v for k, v in labels.items()):
                    continue
            results.append(obj)
        return results

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for rid, obj in list(self._objects.items()):
                if event == StoreEvent.OBJECT_ADDED:
                    callback(rid, obj)
                elif event == StoreEvent.STATUS_UPDATED:
                    if status := self._status.get(rid):
                        callback(rid, status)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
