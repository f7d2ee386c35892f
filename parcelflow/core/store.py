"""
In-Memory Store

Persistence boundary for parcelflow entities. Each collection (jobs, runs,
alerts, ...) lives in its own store guarded by its own lock, so the API
threads and the event loop can read while a run mutates.

Usage:
    from parcelflow.core.store import InMemoryStore

    jobs: InMemoryStore[Job] = InMemoryStore("jobs")
    jobs.create(job)
    jobs.update(job.id, status=JobStatus.RUNNING)
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from parcelflow.core.errors import ValidationError

T = TypeVar("T")


class InMemoryStore(Generic[T]):
    """Dict-backed collection of entities keyed by their ``id`` attribute."""

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def create(self, item: T) -> T:
        item_id = getattr(item, "id")
        with self._lock:
            if item_id in self._items:
                raise ValidationError(
                    "PFLW-1001", reason=f"{self.name} entry {item_id} already exists"
                )
            self._items[item_id] = item
        return item

    def get(self, item_id: str) -> Optional[T]:
        with self._lock:
            return self._items.get(item_id)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """Entries in insertion order, optionally filtered."""
        with self._lock:
            items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def update(self, item_id: str, **changes) -> Optional[T]:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return None
            for key, value in changes.items():
                if not hasattr(item, key):
                    raise ValidationError(
                        "PFLW-1001", reason=f"unknown {self.name} field: {key}"
                    )
                setattr(item, key, value)
            return item

    def delete(self, item_id: str) -> bool:
        with self._lock:
            return self._items.pop(item_id, None) is not None

    def count(self, predicate: Optional[Callable[[T], bool]] = None) -> int:
        return len(self.list(predicate))

    def clear(self):
        with self._lock:
            self._items.clear()

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
