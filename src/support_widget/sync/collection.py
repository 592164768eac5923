"""Insertion-ordered, id-keyed record collection with idempotent merge."""

from __future__ import annotations

from typing import Callable, Generic, Iterable, Iterator, Protocol, TypeVar


class _HasId(Protocol):
    id: str
    created_at: str


R = TypeVar("R", bound=_HasId)


class RecordCollection(Generic[R]):
    """Records keyed by id; inserting a known id replaces it in place."""

    def __init__(self) -> None:
        self._items: dict[str, R] = {}

    def upsert(self, record: R) -> bool:
        """Merge *record*; returns True if it was new."""
        is_new = record.id not in self._items
        self._items[record.id] = record
        return is_new

    def merge_all(self, records: Iterable[R]) -> int:
        return sum(1 for r in records if self.upsert(r))

    def replace_where(self, predicate: Callable[[R], bool], records: Iterable[R]) -> None:
        """Drop records matching *predicate*, then merge *records*."""
        for key in [k for k, v in self._items.items() if predicate(v)]:
            del self._items[key]
        self.merge_all(records)

    def get(self, record_id: str) -> R | None:
        return self._items.get(record_id)

    def remove(self, record_id: str) -> None:
        self._items.pop(record_id, None)

    def sorted(self, predicate: Callable[[R], bool] | None = None) -> list[R]:
        """Records ordered by creation time; ties keep insertion order."""
        items = [r for r in self._items.values() if predicate is None or predicate(r)]
        return sorted(items, key=lambda r: r.created_at)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._items

    def __iter__(self) -> Iterator[R]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)
