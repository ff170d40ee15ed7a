"""Access tracking engine, the heart of troza.

A tracked view wraps a state container and records every read made through
it into an AccessMap: which keys were read, which keys were only checked for
existence, whether the key set was enumerated, whether only the size was
looked at, and whether the object escaped whole into a result. Nested
containers come back wrapped too, so deep reads are recorded automatically.

is_changed() then answers "did anything this computation touched change?"
between two state trees by walking only the recorded edges. The cost is
bounded by the number of paths read, not by the size of the tree.

Uses contextvars to name the computed evaluation in progress, which is how
circular computed definitions are detected.
"""

from __future__ import annotations

import contextvars
import operator
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from troza._anchor import IdentityMap, IdentitySet, is_same
from troza.readonly import is_container, is_frozen, remake_tuple

if TYPE_CHECKING:
    from troza.computed import Derivation

# The computed evaluation in progress, linked to the one that triggered it.
current_derivation: contextvars.ContextVar[Derivation | None] = contextvars.ContextVar(
    "current_derivation", default=None
)


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class Used:
    """What a single evaluation did with a single object."""

    __slots__ = ("keys", "has", "all_keys", "size", "whole")

    def __init__(self) -> None:
        self.keys: set = set()  # value reads; recursed into on comparison
        self.has: set = set()  # existence checks
        self.all_keys = False  # full key enumeration (order matters)
        self.size = False  # len() only
        self.whole = False  # object itself ended up in a result

    def __repr__(self) -> str:
        flags = [name for name in ("all_keys", "size", "whole") if getattr(self, name)]
        return f"Used(keys={self.keys!r}, has={self.has!r}, flags={flags})"


class AccessMap:
    """Per-evaluation record of reads, keyed by the identity of the object read.

    Also caches one tracked view per target, so reading the same object twice
    through one evaluation yields the same view.
    """

    __slots__ = ("_used", "_views")

    def __init__(self) -> None:
        self._used: IdentityMap[object, Used] = IdentityMap()
        self._views: IdentityMap[object, _TrackedView] = IdentityMap()

    def used(self, target: object) -> Used | None:
        return self._used.get(target)

    def record(self, target: object) -> Used:
        used = self._used.get(target)
        if used is None:
            used = self._used[target] = Used()
        return used

    def view(self, value: Any) -> Any:
        """Wrap value for tracking if it is a container; return scalars as is."""
        value = get_original(value)
        if not is_container(value):
            return value
        view = self._views.get(value)
        if view is None:
            cls = TrackedDict if isinstance(value, dict) else TrackedList
            view = self._views[value] = cls(value, self)
        return view

    def __len__(self) -> int:
        return len(self._used)

    def __repr__(self) -> str:
        return f"AccessMap({len(self._used)} objects)"


class _TrackedView:
    __slots__ = ("_target", "_access")

    def __init__(self, target, access: AccessMap) -> None:
        self._target = target
        self._access = access

    def _used(self) -> Used:
        return self._access.record(self._target)

    __hash__ = None  # type: ignore[assignment]


class TrackedDict(_TrackedView, Mapping):
    """Read-only mapping view that records reads into an AccessMap."""

    __slots__ = ()

    def __getitem__(self, key):
        self._used().keys.add(key)
        return self._access.view(self._target[key])

    def get(self, key, default=None):
        self._used().keys.add(key)
        value = self._target.get(key, MISSING)
        if value is MISSING:
            return default
        return self._access.view(value)

    def __contains__(self, key) -> bool:
        self._used().has.add(key)
        return key in self._target

    def __iter__(self) -> Iterator:
        self._used().all_keys = True
        return iter(self._target)

    def __len__(self) -> int:
        self._used().size = True
        return len(self._target)

    def __repr__(self) -> str:
        return f"TrackedDict({dict(self._target)!r})"


class TrackedList(_TrackedView, Sequence):
    """Read-only sequence view that records reads into an AccessMap."""

    __slots__ = ()

    def __getitem__(self, index):
        target = self._target
        used = self._used()
        if isinstance(index, slice):
            used.all_keys = True
            positions = range(*index.indices(len(target)))
            used.keys.update(positions)
            return [self._access.view(target[i]) for i in positions]
        index = operator.index(index)
        position = index + len(target) if index < 0 else index
        if index < 0 or not 0 <= position < len(target):
            # The outcome depends on the length.
            used.all_keys = True
        if 0 <= position < len(target):
            used.keys.add(position)
        return self._access.view(target[index])

    def __len__(self) -> int:
        self._used().size = True
        return len(self._target)

    def __iter__(self) -> Iterator:
        target = self._target
        used = self._used()
        used.all_keys = True
        for i in range(len(target)):
            used.keys.add(i)
            yield self._access.view(target[i])

    def __contains__(self, item) -> bool:
        used = self._used()
        used.all_keys = True
        used.keys.update(range(len(self._target)))
        return get_original(item) in self._target

    def __eq__(self, other) -> bool:
        if isinstance(other, (list, TrackedList)):
            return list(self) == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"TrackedList({list(self._target)!r})"


def get_original(value: Any) -> Any:
    """Strip tracking wrappers so identity comparisons see the real object."""
    while isinstance(value, _TrackedView):
        value = value._target
    return value


def is_tracked(value: object) -> bool:
    return isinstance(value, _TrackedView)


def track(state: Any, access: AccessMap | None = None) -> tuple[Any, AccessMap]:
    """Wrap state for tracking. Returns (view, access_map)."""
    if access is None:
        access = AccessMap()
    return access.view(state), access


def _get(container, key):
    if isinstance(container, dict):
        return container.get(key, MISSING)
    if isinstance(key, int) and 0 <= key < len(container):
        return container[key]
    return MISSING


def _has(container, key) -> bool:
    if isinstance(container, dict):
        return key in container
    return isinstance(key, int) and 0 <= key < len(container)


def _same_kind(a, b) -> bool:
    return isinstance(a, dict) == isinstance(b, dict)


def is_changed(prev: Any, nxt: Any, access: AccessMap, _memo: IdentityMap | None = None) -> bool:
    """Did anything recorded in access differ between prev and nxt?

    Values are compared with is_same. A key read whose values differ is only
    followed when the child object has recorded reads of its own; otherwise
    the difference counts as a change.
    """
    prev, nxt = get_original(prev), get_original(nxt)
    if is_same(prev, nxt):
        return False
    if not (is_container(prev) and is_container(nxt)) or not _same_kind(prev, nxt):
        return True
    used = access.used(prev)
    if used is None or used.whole:
        return True

    if _memo is None:
        _memo = IdentityMap()
    hit = _memo.get(prev)
    if hit is not None and hit[0] is nxt:
        return hit[1]
    # Assume unchanged while the walk is in progress; cycles end here.
    _memo[prev] = (nxt, False)

    changed = _compare(prev, nxt, used, access, _memo)
    _memo[prev] = (nxt, changed)
    return changed


def _compare(prev, nxt, used: Used, access: AccessMap, memo: IdentityMap) -> bool:
    for key in used.has:
        if _has(prev, key) != _has(nxt, key):
            return True
    if used.all_keys:
        if isinstance(prev, dict):
            if len(prev) != len(nxt) or list(prev) != list(nxt):
                return True
        elif len(prev) != len(nxt):
            return True
    elif used.size and len(prev) != len(nxt):
        return True
    for key in used.keys:
        if is_changed(_get(prev, key), _get(nxt, key), access, memo):
            return True
    return False


def replay(view: Any, source: Any, access: AccessMap, _seen: IdentitySet | None = None) -> None:
    """Record the accesses access holds for source onto another tracked view.

    Used when a cached result is reused: the caller's own evaluation must
    depend on the same paths the cached one read.
    """
    if not isinstance(view, _TrackedView):
        return
    source = get_original(source)
    used = access.used(source)
    if used is None:
        return
    if _seen is None:
        _seen = IdentitySet()
    elif source in _seen:
        return
    _seen.add(source)

    target_used = view._used()
    target_used.has |= used.has
    target_used.all_keys |= used.all_keys
    target_used.size |= used.size
    target_used.whole |= used.whole
    for key in used.keys:
        target_used.keys.add(key)
        child = _get(view._target, key)
        if is_container(child):
            replay(view._access.view(child), _get(source, key), access, _seen)


def untrack(value: Any, _seen: IdentitySet | None = None) -> Any:
    """Replace tracked views in a result by the objects they wrap.

    An unwrapped object is marked as used whole: the result now holds it, so
    any replacement of it counts as a change.
    """
    if isinstance(value, _TrackedView):
        value._used().whole = True
        return value._target
    if isinstance(value, tuple):
        return remake_tuple(value, [untrack(item, _seen) for item in value])
    if not is_container(value) or is_frozen(value):
        return value
    if _seen is None:
        _seen = IdentitySet()
    elif value in _seen:
        return value
    _seen.add(value)

    pairs = value.items() if isinstance(value, dict) else enumerate(value)
    for key, item in list(pairs):
        plain = untrack(item, _seen)
        if plain is not item:
            value[key] = plain
    return value
