"""Identity anchor: side tables keyed by object identity.

Plain dicts and lists are unhashable and cannot be weak-referenced, so the
engine associates metadata with them through maps keyed by ``id()``. Each
entry keeps a strong reference to its key object, which pins the identity for
as long as the entry lives.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, MutableMapping, MutableSet
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")

# Immutable scalar types compared by value rather than identity.
_VALUE_TYPES = (str, bytes, int, float, complex, bool, type(None))


def is_same(a: object, b: object) -> bool:
    """Identity comparison with value semantics for immutable scalars.

    Two ints or strings that are equal but are distinct objects count as the
    same value, and ``nan`` is the same as ``nan``.
    """
    if a is b:
        return True
    if type(a) is not type(b) or not isinstance(a, _VALUE_TYPES):
        return False
    if isinstance(a, float) and math.isnan(a):
        return math.isnan(b)
    return a == b


class IdentityMap(MutableMapping, Generic[K, V]):
    """Mapping keyed by object identity. Keys may be unhashable."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: dict[int, tuple[K, V]] = {}

    def __getitem__(self, key: K) -> V:
        return self._entries[id(key)][1]

    def __setitem__(self, key: K, value: V) -> None:
        self._entries[id(key)] = (key, value)

    def __delitem__(self, key: K) -> None:
        del self._entries[id(key)]

    def __contains__(self, key: object) -> bool:
        return id(key) in self._entries

    def __iter__(self) -> Iterator[K]:
        return (key for key, _ in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"IdentityMap({len(self._entries)} entries)"


class IdentitySet(MutableSet, Generic[K]):
    """Set of objects compared by identity. Members may be unhashable."""

    __slots__ = ("_members",)

    def __init__(self) -> None:
        self._members: dict[int, K] = {}

    def __contains__(self, item: object) -> bool:
        return id(item) in self._members

    def __iter__(self) -> Iterator[K]:
        return iter(self._members.values())

    def __len__(self) -> int:
        return len(self._members)

    def add(self, item: K) -> None:
        self._members[id(item)] = item

    def discard(self, item: K) -> None:
        self._members.pop(id(item), None)
