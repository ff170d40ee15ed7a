"""Auto-tracked selector memoization."""

from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

from troza._tracking import AccessMap, get_original, is_tracked, replay, track, untrack
from troza.computed import CacheEntry
from troza.snapshot import Snapshot, SnapshotView

R = TypeVar("R")


def _resolve(state: Any) -> tuple[Any, Any, Snapshot | None]:
    """Split a selector argument into (raw state, outer tracker, snapshot)."""
    if isinstance(state, Snapshot):
        return state.raw, None, state
    if isinstance(state, SnapshotView):
        return state._snapshot.raw, state._root, state._snapshot
    if is_tracked(state):
        return get_original(state), state, None
    return state, None, None


def memoize_selector(fn: Callable[[Any], R]) -> Callable[[Any], R]:
    """Memoize fn on the parts of its argument it actually reads.

    The argument is a Snapshot (computed values included), a plain state
    container, or a tracked view handed to an enclosing selector. The last
    result is reused for as long as every path fn read is unchanged, so two
    structurally different states give the same result object when fn only
    looks at what they share. Only one result is kept.

    Usage:
        select_done = memoize_selector(lambda s: [t for t in s["todos"] if t["done"]])
        select_done(store.get()) is select_done(store.get())  # True
    """
    entry: CacheEntry | None = None

    @functools.wraps(fn)
    def memoized(state: Any) -> R:
        nonlocal entry
        raw, tracker, snapshot = _resolve(state)
        if entry is not None and entry.is_valid_for(raw):
            replay(tracker, entry.state, entry.access)
            return entry.value

        access = AccessMap()
        if snapshot is not None:
            view = SnapshotView(snapshot, access)
        else:
            view, _ = track(raw, access)
        value = fn(view)
        if isinstance(value, SnapshotView):
            untrack(value._root)
            value = value._snapshot
        value = untrack(value)
        entry = CacheEntry(raw, access, value)
        replay(tracker, raw, access)
        return value

    return memoized
