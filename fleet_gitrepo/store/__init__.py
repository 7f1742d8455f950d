"""
The store module provides the persisted resource graph the reconciler works against.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Keeps status separately from the object, with compare-and-write semantics.
- Notifies listeners of object and status changes, which drive reconciliation.

This abstract interface allows for various implementations (in-memory, kubernetes, etc.).
"""

from .store import Store, StoreEvent, ObjectMeta
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "ObjectMeta",
    "InMemoryStore",
]
