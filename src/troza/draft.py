"""Drafts: copy-on-write scratch views for one batch of writes.

A Draft wraps the current state. Code inside a batch reads and writes
through DraftDict / DraftList views as if they were plain dicts and lists,
but nothing published is touched: dict targets keep a record of pending
operations (key -> value, or key -> deleted) and list targets keep a working
copy. Nested containers are drafted lazily on first read and remember their
parent, so a write deep in the tree marks every ancestor as modified.

Committing materializes exactly one new frozen state. Only modified nodes
are copied; every untouched subtree is reused by reference.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, MutableMapping, MutableSequence
from typing import TypeVar

from troza._anchor import IdentityMap, IdentitySet, is_same
from troza._tracking import MISSING
from troza.readonly import FrozenDict, FrozenList, freeze, is_container, is_frozen, remake_tuple

T = TypeVar("T")

_DELETED = object()


class RevokedDraftError(RuntimeError):
    """Raised when a draft view is used after its batch has ended."""


class _DraftNode:
    __slots__ = ("_draft", "_base", "_parents", "_modified", "_result")

    def __init__(self, draft: Draft, base, parent: _DraftNode | None) -> None:
        self._draft = draft
        self._base = base
        self._parents: list[_DraftNode] = [parent] if parent is not None else []
        self._modified = False
        self._result = None  # cached finalized value, cleared on write

    __hash__ = None  # type: ignore[assignment]

    def _check(self) -> None:
        if self._draft.revoked:
            raise RevokedDraftError(
                f"{type(self).__name__} used after its batch was committed; "
                "keep the value returned by the action instead"
            )

    def _adopt(self, value) -> None:
        """A draft placed under this node must dirty this node when it changes."""
        if isinstance(value, _DraftNode) and value._draft is self._draft:
            value._parents.append(self)

    def _mark_modified(self) -> None:
        # Every path to the root gets dirtied; safe to repeat.
        pending: list[_DraftNode] = [self]
        seen = IdentitySet()
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            node._modified = True
            node._result = None
            pending.extend(node._parents)

    def _finalize(self, memo: IdentityMap):
        raise NotImplementedError


class DraftDict(_DraftNode, MutableMapping):
    """Mutable mapping view of a record inside a batch."""

    __slots__ = ("_ops", "_children")

    def __init__(self, draft: Draft, base: Mapping, parent: _DraftNode | None) -> None:
        super().__init__(draft, base, parent)
        self._ops: dict = {}
        self._children: dict = {}

    def _peek(self, key):
        ops = self._ops
        if key in ops:
            value = ops[key]
            return MISSING if value is _DELETED else value
        child = self._children.get(key)
        if child is not None:
            return child
        return self._base.get(key, MISSING)

    def _keys(self) -> list:
        ops, base = self._ops, self._base
        keys = [key for key in base if ops.get(key) is not _DELETED]
        keys.extend(key for key, value in ops.items() if value is not _DELETED and key not in base)
        return keys

    def __getitem__(self, key):
        self._check()
        ops = self._ops
        if key in ops:
            value = ops[key]
            if value is _DELETED:
                raise KeyError(key)
            if is_container(value):
                value = ops[key] = self._draft.wrap(value, self)
            return value
        child = self._children.get(key)
        if child is not None:
            return child
        value = self._base[key]
        if is_container(value):
            value = self._children[key] = self._draft.wrap(value, self)
        return value

    def __setitem__(self, key, value) -> None:
        self._check()
        if is_same(self._peek(key), value):
            return
        self._adopt(value)
        self._ops[key] = value
        self._children.pop(key, None)
        self._mark_modified()

    def __delitem__(self, key) -> None:
        self._check()
        if self._peek(key) is MISSING:
            raise KeyError(key)
        self._children.pop(key, None)
        if key in self._base:
            self._ops[key] = _DELETED
        else:
            del self._ops[key]
        self._mark_modified()

    def __contains__(self, key) -> bool:
        self._check()
        return self._peek(key) is not MISSING

    def __iter__(self) -> Iterator:
        self._check()
        return iter(self._keys())

    def __len__(self) -> int:
        self._check()
        return len(self._keys())

    def __repr__(self) -> str:
        if self._draft.revoked:
            return "DraftDict(<revoked>)"
        return f"DraftDict({dict(self.items())!r})"

    def _finalize(self, memo: IdentityMap):
        if self._result is not None:
            return self._result
        if self in memo:
            return memo[self]
        if not self._modified:
            self._result = freeze(self._base)
            return self._result

        result = FrozenDict()
        memo[self] = result
        ops = self._ops
        for key in self._keys():
            if key in ops:
                value = _finalize_value(ops[key], memo)
                if not isinstance(ops[key], _DraftNode):
                    # Keep the frozen copy so later materializations reuse it.
                    ops[key] = value
            elif key in self._children:
                value = self._children[key]._finalize(memo)
            else:
                value = _finalize_value(self._base[key], memo)
            dict.__setitem__(result, key, value)
        self._result = result
        return result


class DraftList(_DraftNode, MutableSequence):
    """Mutable sequence view of a list inside a batch."""

    __slots__ = ("_items",)

    def __init__(self, draft: Draft, base: list, parent: _DraftNode | None) -> None:
        super().__init__(draft, base, parent)
        self._items: list | None = None

    def _values(self) -> list:
        return self._items if self._items is not None else self._base

    def _working(self) -> list:
        if self._items is None:
            self._items = list(self._base)
        return self._items

    def __getitem__(self, index):
        self._check()
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self._values())))]
        value = self._values()[index]
        if is_container(value):
            value = self._draft.wrap(value, self)
            self._working()[index] = value
        return value

    def __setitem__(self, index, value) -> None:
        self._check()
        if isinstance(index, slice):
            values = list(value)
            for item in values:
                self._adopt(item)
            self._working()[index] = values
        else:
            if is_same(self._values()[index], value):
                return
            self._adopt(value)
            self._working()[index] = value
        self._mark_modified()

    def __delitem__(self, index) -> None:
        self._check()
        del self._working()[index]
        self._mark_modified()

    def __len__(self) -> int:
        self._check()
        return len(self._values())

    def insert(self, index: int, value) -> None:
        self._check()
        self._adopt(value)
        self._working().insert(index, value)
        self._mark_modified()

    def clear(self) -> None:
        self._check()
        if self._values():
            self._working().clear()
            self._mark_modified()

    def reverse(self) -> None:
        self._check()
        self._working().reverse()
        self._mark_modified()

    def sort(self, *, key=None, reverse: bool = False) -> None:
        self._check()
        # Draft every nested container first so key functions see one kind of view.
        for i in range(len(self._values())):
            self[i]
        self._working().sort(key=key, reverse=reverse)
        self._mark_modified()

    def __eq__(self, other) -> bool:
        if isinstance(other, (list, DraftList)):
            return list(self) == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        if self._draft.revoked:
            return "DraftList(<revoked>)"
        return f"DraftList({list(self)!r})"

    def _finalize(self, memo: IdentityMap):
        if self._result is not None:
            return self._result
        if self in memo:
            return memo[self]
        if not self._modified:
            self._result = freeze(self._base)
            return self._result

        result = FrozenList()
        memo[self] = result
        items = self._working()
        for i, item in enumerate(items):
            value = _finalize_value(item, memo)
            if not isinstance(item, _DraftNode):
                items[i] = value
            list.append(result, value)
        self._result = result
        return result


def _finalize_value(value, memo: IdentityMap):
    """Materialize a value written during a batch: drafts resolved, containers frozen."""
    if isinstance(value, _DraftNode):
        return value._finalize(memo)
    if isinstance(value, tuple):
        return remake_tuple(value, [_finalize_value(item, memo) for item in value])
    if not is_container(value) or is_frozen(value):
        return value
    if value in memo:
        return memo[value]

    if isinstance(value, dict):
        result = FrozenDict()
        memo[value] = result
        for key, item in value.items():
            dict.__setitem__(result, key, _finalize_value(item, memo))
    else:
        result = FrozenList()
        memo[value] = result
        for item in value:
            list.append(result, _finalize_value(item, memo))
    return result


class Draft:
    """Scratch structure for one batch of writes against a base state.

    draft.root is the DraftDict for the whole state. Keys listed in readonly
    cannot be written at the root: set() and delete() report False and leave
    every other pending operation alone.
    """

    def __init__(self, base: Mapping, readonly=()) -> None:
        if not isinstance(base, Mapping):
            raise TypeError(f"state must be a mapping, got {type(base).__name__}")
        self.base = base
        self.readonly = frozenset(readonly)
        self.revoked = False
        self.root = DraftDict(self, base, None)
        self._nodes: IdentityMap = IdentityMap()
        self._nodes[base] = self.root

    def wrap(self, value, parent: _DraftNode):
        """Draft a nested container read through parent.

        One node per container: reaching the same object again, through a
        shared subtree or a cycle, returns its node with parent added.
        """
        node = self._nodes.get(value)
        if node is None:
            if isinstance(value, dict):
                node = DraftDict(self, value, parent)
            else:
                node = DraftList(self, value, parent)
            self._nodes[value] = node
        elif not any(p is parent for p in node._parents):
            node._parents.append(parent)
        return node

    def get(self, target: DraftDict | DraftList, key, default=None):
        try:
            return target[key]
        except (KeyError, IndexError):
            return default

    def set(self, target: DraftDict | DraftList, key, value) -> bool:
        if target is self.root and key in self.readonly:
            return False
        target[key] = value
        return True

    def delete(self, target: DraftDict | DraftList, key) -> bool:
        if target is self.root and key in self.readonly:
            return False
        try:
            del target[key]
        except (KeyError, IndexError):
            return False
        return True

    def replace(self, state: Mapping) -> None:
        """Make the root hold exactly the items of state."""
        root = self.root
        for key in list(root):
            if key not in state:
                self.delete(root, key)
        for key, value in state.items():
            self.set(root, key, value)

    def current(self) -> FrozenDict:
        """Materialize the state as it stands, without ending the batch."""
        return self.root._finalize(IdentityMap())

    def commit(self) -> FrozenDict:
        state = self.current()
        self.revoked = True
        return state

    def discard(self) -> None:
        self.revoked = True

    def __repr__(self) -> str:
        state = "revoked" if self.revoked else "open"
        return f"Draft({state}, modified={self.root._modified})"


def is_draft(value: object) -> bool:
    return isinstance(value, _DraftNode)


def current(value: T) -> T:
    """The materialized, frozen form of a draft view; other values pass through."""
    if isinstance(value, _DraftNode):
        return value._finalize(IdentityMap())
    return value


def undraft(value: T, _seen: IdentitySet | None = None) -> T:
    """Replace every draft reachable from value by its materialized form.

    Plain dicts and lists are updated in place and tuples are rebuilt; the
    visited set makes this terminate on cyclic graphs and keeps the cycles.
    """
    if isinstance(value, _DraftNode):
        return current(value)
    if isinstance(value, tuple):
        return remake_tuple(value, [undraft(item, _seen) for item in value])
    if not is_container(value) or is_frozen(value):
        return value
    if _seen is None:
        _seen = IdentitySet()
    elif value in _seen:
        return value
    _seen.add(value)

    pairs = value.items() if isinstance(value, dict) else enumerate(value)
    for key, item in list(pairs):
        plain = undraft(item, _seen)
        if plain is not item:
            value[key] = plain
    return value
