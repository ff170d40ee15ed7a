"""Read-only containers for published state.

Published snapshots are built from FrozenDict and FrozenList. They are real
dict and list subclasses, so reading code needs nothing special, but every
mutating method raises ReadonlyError.

freeze() converts plain dicts and lists into their frozen counterparts. It
copies rather than converting in place, so the object handed to the store
stays owned by the caller and later changes to it never reach the store.
"""

from __future__ import annotations

from typing import TypeVar

from troza._anchor import IdentityMap

T = TypeVar("T")


class ReadonlyError(TypeError):
    """Raised on an attempt to mutate a published container."""


def _readonly(self, *args, **kwargs):
    raise ReadonlyError(
        f"{type(self).__name__} is read-only; change state through an action, "
        "update() or transaction()"
    )


class FrozenDict(dict):
    """A dict that cannot be mutated after construction."""

    __slots__ = ()

    __setitem__ = _readonly
    __delitem__ = _readonly
    __ior__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly

    def __copy__(self) -> FrozenDict:
        return self

    def __deepcopy__(self, memo) -> FrozenDict:
        return self

    def __reduce__(self):
        return (type(self), (dict(self),))

    def __repr__(self) -> str:
        return f"FrozenDict({dict.__repr__(self)})"


class FrozenList(list):
    """A list that cannot be mutated after construction."""

    __slots__ = ()

    __setitem__ = _readonly
    __delitem__ = _readonly
    __iadd__ = _readonly
    __imul__ = _readonly
    append = _readonly
    extend = _readonly
    insert = _readonly
    pop = _readonly
    remove = _readonly
    clear = _readonly
    sort = _readonly
    reverse = _readonly

    def __copy__(self) -> FrozenList:
        return self

    def __deepcopy__(self, memo) -> FrozenList:
        return self

    def __reduce__(self):
        return (type(self), (list(self),))

    def __repr__(self) -> str:
        return f"FrozenList({list.__repr__(self)})"


FROZEN_TYPES = (FrozenDict, FrozenList)


def is_frozen(value: object) -> bool:
    return isinstance(value, FROZEN_TYPES)


def is_container(value: object) -> bool:
    """Records and ordered lists are the only containers the engine descends into."""
    return isinstance(value, (dict, list))


def remake_tuple(original: tuple, items: list) -> tuple:
    """Rebuild a tuple (or namedtuple) from items, reusing original when nothing changed."""
    if all(a is b for a, b in zip(items, original)):
        return original
    if hasattr(original, "_fields"):
        return type(original)(*items)
    return type(original)(items)


def freeze(value: T, deep: bool = True, _memo: IdentityMap | None = None) -> T:
    """Return a read-only version of value.

    dicts become FrozenDicts and lists become FrozenLists; anything else is
    returned as is. With deep=True nested containers are frozen too. Shared
    references and cycles in the source are preserved in the result, and
    already-frozen containers are returned unchanged.
    """
    if _memo is None:
        _memo = IdentityMap()
    if isinstance(value, tuple) and deep:
        return remake_tuple(value, [freeze(item, deep, _memo) for item in value])
    if not is_container(value) or is_frozen(value):
        return value
    if value in _memo:
        return _memo[value]

    if isinstance(value, dict):
        frozen = FrozenDict()
        _memo[value] = frozen
        for key, item in value.items():
            dict.__setitem__(frozen, key, freeze(item, deep, _memo) if deep else item)
    else:
        frozen = FrozenList()
        _memo[value] = frozen
        for item in value:
            list.append(frozen, freeze(item, deep, _memo) if deep else item)
    return frozen
