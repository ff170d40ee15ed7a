"""Snapshots: one published state plus its computed values.

A Snapshot never changes. Its state keys come straight from the frozen state
and its computed values are evaluated lazily, the first time they are read.
Keys can be read as items or, when they are valid identifiers, as attributes:

    snapshot = store.get()
    snapshot["count"], snapshot.count, snapshot.doubled
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from troza._tracking import AccessMap

if TYPE_CHECKING:
    from troza.computed import CacheEntry, ComputedCache


class Snapshot(Mapping):
    """Read-only mapping over a published state and its computed values."""

    __slots__ = ("_state", "_computed", "_cache")

    def __init__(
        self,
        state: Mapping,
        computed: ComputedCache | None = None,
        cache: dict[str, CacheEntry] | None = None,
    ) -> None:
        self._state = state
        self._computed = computed
        self._cache = cache if cache is not None else {}

    @property
    def raw(self) -> Mapping:
        """The frozen state, without computed values."""
        return self._state

    def _is_computed(self, key: object) -> bool:
        return self._computed is not None and key in self._computed

    def __getitem__(self, key):
        if self._is_computed(key):
            return self._computed.read(self, key)
        return self._state[key]

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(
                f"{type(self).__name__} has no state key or computed value {name!r}"
            ) from None

    def __contains__(self, key: object) -> bool:
        return self._is_computed(key) or key in self._state

    def __iter__(self) -> Iterator:
        yield from self._state
        if self._computed is not None:
            yield from self._computed.names()

    def __len__(self) -> int:
        extra = len(self._computed.names()) if self._computed is not None else 0
        return len(self._state) + extra

    def __repr__(self) -> str:
        names = self._computed.names() if self._computed is not None else []
        return f"Snapshot({dict(self._state)!r}, computed={names!r})"


class SnapshotView(Mapping):
    """Tracked view of a Snapshot, handed to computed functions, selectors and watchers.

    State reads go through a tracked view and are recorded into access;
    computed reads replay the computed's own recorded reads, so whoever reads
    a computed value depends on everything that value depends on.
    """

    __slots__ = ("_snapshot", "_access", "_root")

    def __init__(self, snapshot: Snapshot, access: AccessMap) -> None:
        self._snapshot = snapshot
        self._access = access
        self._root = access.view(snapshot.raw)

    def __getitem__(self, key):
        snapshot = self._snapshot
        if snapshot._is_computed(key):
            return snapshot._computed.read(snapshot, key, tracker=self._root)
        return self._root[key]

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"state has no key or computed value {name!r}") from None

    def __contains__(self, key: object) -> bool:
        return self._snapshot._is_computed(key) or key in self._root

    def __iter__(self) -> Iterator:
        yield from self._root
        if self._snapshot._computed is not None:
            yield from self._snapshot._computed.names()

    def __len__(self) -> int:
        return len(self._root) + len(self._snapshot) - len(self._snapshot.raw)

    def __repr__(self) -> str:
        return f"SnapshotView({self._snapshot!r})"
