"""Computed values: derived state cached against the paths it read.

Every computed function is evaluated against a tracked view of one state.
The result is cached together with the AccessMap of that evaluation, and it
is reused for any later state that is_changed() proves identical along the
recorded paths. Nothing is invalidated eagerly; a stale entry is simply
superseded the next time the value is read.

Two levels of cache exist. Each Snapshot holds the entries it has already
resolved, so reading a computed twice from one snapshot costs a dict lookup.
The ComputedCache holds the shared, latest entry per name, which new
snapshots adopt when it is still valid for them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from troza._tracking import AccessMap, current_derivation, is_changed, replay, untrack
from troza.snapshot import Snapshot, SnapshotView

logger = logging.getLogger("troza.computed")


class CircularComputedError(RuntimeError):
    """A computed value depends on itself."""


class Derivation:
    """One computed evaluation in progress, linked to the one that triggered it."""

    __slots__ = ("name", "snapshot", "parent")

    def __init__(self, name: str, snapshot: Snapshot, parent: Derivation | None) -> None:
        self.name = name
        self.snapshot = snapshot
        self.parent = parent

    def chain(self) -> list[str]:
        names = []
        node: Derivation | None = self
        while node is not None:
            names.append(node.name)
            node = node.parent
        return names[::-1]

    def __repr__(self) -> str:
        return f"Derivation({' -> '.join(self.chain())})"


class CacheEntry:
    """A value together with the state it was computed from and what it read."""

    __slots__ = ("state", "access", "value")

    def __init__(self, state: Any, access: AccessMap, value: Any) -> None:
        self.state = state
        self.access = access
        self.value = value

    def is_valid_for(self, state: Any) -> bool:
        return not is_changed(self.state, state, self.access)

    def __repr__(self) -> str:
        return f"CacheEntry(value={self.value!r}, {self.access!r})"


class ComputedCache:
    """Shared computed cache for one store.

    latest is called to get the newest state the store knows about (the
    in-progress draft inside a batch, the published state otherwise); a
    fresh entry only replaces the shared one when it is valid for that state.
    """

    def __init__(self, evaluators: Mapping[str, Callable], latest: Callable[[], Any]) -> None:
        self._evaluators = dict(evaluators)
        self._latest = latest
        self._shared: dict[str, CacheEntry] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._evaluators

    def names(self) -> list[str]:
        return list(self._evaluators)

    def carry_over(self, state: Any) -> dict[str, CacheEntry]:
        """The shared entries still valid for state, to seed a new snapshot."""
        return {
            name: entry for name, entry in self._shared.items() if entry.is_valid_for(state)
        }

    def read(self, snapshot: Snapshot, name: str, tracker: Any = None) -> Any:
        """Value of computed name for snapshot.

        tracker is the tracked view of the evaluation doing the read, if any;
        the entry's accesses are replayed onto it so the reader depends on
        whatever the computed depended on.
        """
        local = snapshot._cache
        entry = local.get(name)
        if entry is None:
            shared = self._shared.get(name)
            if shared is not None and shared.is_valid_for(snapshot.raw):
                entry = shared
            else:
                entry = self._evaluate(snapshot, name)
                if shared is None or entry.is_valid_for(self._latest()):
                    self._shared[name] = entry
            local[name] = entry
        if tracker is not None:
            replay(tracker, entry.state, entry.access)
        return entry.value

    def _evaluate(self, snapshot: Snapshot, name: str) -> CacheEntry:
        parent = current_derivation.get()
        node = parent
        while node is not None:
            if node.name == name and node.snapshot is snapshot:
                cycle = " -> ".join(Derivation(name, snapshot, parent).chain())
                raise CircularComputedError(f"circular computed value: {cycle}")
            node = node.parent

        access = AccessMap()
        view = SnapshotView(snapshot, access)
        token = current_derivation.set(Derivation(name, snapshot, parent))
        try:
            value = untrack(self._evaluators[name](view))
        finally:
            current_derivation.reset(token)

        logger.debug("computed %r evaluated, %d objects read", name, len(access))
        return CacheEntry(snapshot.raw, access, value)
