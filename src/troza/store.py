"""Store: one immutable state tree, its computed values and its actions.

A Store publishes a new Snapshot every time a batch of writes changes the
state. Writes happen in batches: an action call, update(), a transaction()
block, set() or patch(). Inside a batch every write lands on a Draft, and
when the outermost batch ends the draft is committed into one new frozen
state, sharing every untouched subtree with the previous one.

Thread safety: call set_scheduler() once from the main thread. After that,
set(), patch() and update() called from a background thread are marshalled
through the scheduler. Main-thread writes remain synchronous.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from troza._anchor import is_same
from troza.action import ActionContext, start_coroutine, step_coroutine
from troza.computed import ComputedCache
from troza.draft import Draft, DraftDict, undraft
from troza.readonly import freeze
from troza.selector import memoize_selector
from troza.snapshot import Snapshot

logger = logging.getLogger("troza.store")

# Store methods an action reaches through `self`.
HELPERS = ("get", "get_initial_state", "set", "patch", "update", "transaction", "subscribe", "watch")
_RESERVED = frozenset(HELPERS) | {"name"}

_scheduler = None
_scheduler_thread = None


def set_scheduler(scheduler) -> None:
    """Set the global thread scheduler for cross-thread store writes.

    Call once from the main/UI thread:
        troza.set_scheduler(app.call_from_thread)

    After this, set(), patch() and update() from a background thread are
    automatically marshalled. Main-thread writes remain synchronous.
    """
    global _scheduler, _scheduler_thread
    _scheduler = scheduler
    _scheduler_thread = threading.current_thread()


def _marshalled(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if _scheduler is not None and threading.current_thread() != _scheduler_thread:
            _scheduler(lambda: method(self, *args, **kwargs))
            return None
        return method(self, *args, **kwargs)

    return wrapper


def _check_callables(kind: str, functions: Any) -> dict[str, Callable]:
    if functions is None:
        return {}
    if not isinstance(functions, Mapping):
        raise TypeError(f"{kind} must be a mapping of names to functions")
    for name, fn in functions.items():
        if not isinstance(name, str):
            raise TypeError(f"{kind} names must be strings, got {name!r}")
        if not callable(fn):
            raise TypeError(f"{kind} {name!r} must be callable, got {type(fn).__name__}")
    return dict(functions)


class Store:
    """Reactive container for one state tree.

    Usage:
        store = Store(
            {"count": 0},
            computed={"doubled": lambda self: self.count * 2},
            actions={"increment": lambda self: setattr(self, "count", self.count + 1)},
        )
        store.increment()
        store.get().doubled  # 2
    """

    def __init__(
        self,
        state: Mapping,
        computed: Mapping[str, Callable] | None = None,
        actions: Mapping[str, Callable] | None = None,
        *,
        name: str = "store",
    ) -> None:
        if not isinstance(state, Mapping):
            raise TypeError(f"state must be a mapping, got {type(state).__name__}")
        computed = _check_callables("computed", computed)
        actions = _check_callables("action", actions)
        for key in computed:
            if key in state:
                raise ValueError(f"computed value {key!r} shadows a state key")
        for key in actions:
            if key in _RESERVED or key.startswith("_"):
                raise ValueError(f"action name {key!r} is reserved")
            if key in state or key in computed:
                raise ValueError(f"action {key!r} shadows a state key or computed value")

        self.name = name
        self._computed_names = frozenset(computed)
        self._action_names = frozenset(actions)
        self._readonly = (
            self._computed_names | self._action_names | frozenset(HELPERS).difference(state)
        )
        self._draft: Draft | None = None
        self._listeners: dict[object, Callable] = {}
        self._tasks: set[asyncio.Task] = set()
        self._cache = ComputedCache(computed, self._latest_state)

        self._state = freeze(state if isinstance(state, dict) else dict(state))
        self._snapshot = Snapshot(self._state, self._cache)
        self._initial = self._snapshot
        self._scratch: Snapshot | None = None

        self._context = ActionContext(self)
        for key, handler in actions.items():
            setattr(self, key, self._bind(key, handler))

    def __repr__(self) -> str:
        return f"Store({self.name!r}, {self._snapshot!r})"

    # -- reading -----------------------------------------------------------

    def get(self) -> Snapshot:
        """The current snapshot. Same object until the next publish."""
        return self._snapshot

    def get_initial_state(self) -> Snapshot:
        return self._initial

    def _latest_state(self) -> Mapping:
        if self._draft is not None:
            return self._draft.current()
        return self._state

    # -- writing -----------------------------------------------------------

    @_marshalled
    def set(self, state: Mapping | Callable[[Mapping], Mapping]) -> None:
        """Replace the whole state. Keys naming computed values are dropped.

        state may be a function of the previous state returning the new one.
        Values identical to the current ones keep their place, so replacing
        the state with an equal copy of itself publishes nothing new below
        the keys that actually differ.
        """
        with self._batch(atomic=True) as draft:
            new = state(draft.current()) if callable(state) else state
            draft.replace(self._writable("set", new))

    @_marshalled
    def patch(self, partial: Mapping | Callable[[Mapping], Mapping]) -> None:
        """Merge partial into the top level of the state."""
        with self._batch(atomic=True) as draft:
            new = partial(draft.current()) if callable(partial) else partial
            for key, value in self._writable("patch", new).items():
                draft.set(draft.root, key, value)

    @_marshalled
    def update(self, mutator: Callable[[DraftDict], Any]) -> None:
        """Run mutator against a draft of the state and publish the result.

        Atomic: if mutator raises, nothing it wrote is published.
        """
        if not callable(mutator):
            raise TypeError("The mutator passed to update() must be callable")
        with self._batch(atomic=True) as draft:
            mutator(draft.root)

    @contextmanager
    def transaction(self) -> Iterator[DraftDict]:
        """Context manager yielding the draft root; publishes once on exit.

        Atomic: an exception inside the block discards every write.

        Usage:
            with store.transaction() as state:
                state["a"] = 1
                state["b"]["c"].append(2)
        """
        with self._batch(atomic=True) as draft:
            yield draft.root

    def _writable(self, method: str, state: Any) -> dict:
        if not isinstance(state, Mapping):
            raise TypeError(f"{method}() needs a mapping, got {type(state).__name__}")
        dropped = [key for key in state if key in self._computed_names]
        if dropped:
            logger.debug("%s: %s() ignored computed keys %r", self.name, method, dropped)
        return {key: value for key, value in state.items() if key not in self._computed_names}

    @contextmanager
    def _batch(self, *, atomic: bool) -> Iterator[Draft]:
        """Open a batch, or join the one already open.

        The outermost batch commits and publishes on exit. When the body
        raises, an atomic batch discards its draft; a non-atomic one still
        publishes what was written before the failure. Either way the
        exception propagates.
        """
        if self._draft is not None:
            yield self._draft
            return

        draft = self._draft = Draft(self._state, readonly=self._readonly)
        try:
            yield draft
        except BaseException:
            self._draft = None
            if atomic:
                draft.discard()
                logger.debug("%s: batch discarded after error", self.name)
            else:
                try:
                    self._publish(draft.commit())
                except Exception:
                    logger.debug("%s: publish after a failed action raised", self.name, exc_info=True)
            raise
        self._draft = None
        self._publish(draft.commit())

    def _publish(self, state: Mapping) -> None:
        if state is self._state:
            return
        prev = self._snapshot
        self._state = state
        snapshot = self._snapshot = Snapshot(state, self._cache, self._cache.carry_over(state))
        logger.debug("%s: published, %d listeners", self.name, len(self._listeners))

        errors: list[Exception] = []
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot, prev)
            except Exception as exc:
                logger.exception("%s: subscriber %r failed", self.name, listener)
                errors.append(exc)
        if errors:
            raise errors[0]

    # -- subscribing -------------------------------------------------------

    def subscribe(self, selector_or_callback: Callable, callback: Callable | None = None):
        """Call back after every publish, or when a selected value changes.

        subscribe(callback) calls callback(snapshot, prev_snapshot) on every
        publish. subscribe(selector, callback) calls callback(value, prev_value)
        only when the selected value is not the same object as before; the
        selector is memoized on the paths it reads. Returns an unsubscribe
        function.
        """
        if callback is None:
            if not callable(selector_or_callback):
                raise TypeError("The callback passed to subscribe() must be callable")
            return self._add_listener(selector_or_callback)

        if not callable(selector_or_callback):
            raise TypeError("The selector passed to subscribe() must be callable")
        if not callable(callback):
            raise TypeError("The callback passed to subscribe() must be callable")
        select = memoize_selector(selector_or_callback)

        def listener(snapshot: Snapshot, prev: Snapshot) -> None:
            prev_value = select(prev)
            value = select(snapshot)
            if not is_same(value, prev_value):
                callback(value, prev_value)

        return self._add_listener(listener)

    def watch(self, watcher: Callable):
        """Re-run watcher(state, prev_state) whenever something it read changes.

        The first publish always runs it. An async watcher runs its first
        step right away, with its reads tracked, and the rest as a task on
        the running event loop. Returns an unwatch function.
        """
        if not callable(watcher):
            raise TypeError("The watcher passed to watch() must be callable")
        prev: Snapshot | None = None

        def run(state):
            result = watcher(state, prev)
            if inspect.iscoroutine(result):
                rest = step_coroutine(result)
                if rest is not None:
                    self._spawn(rest)
            return None

        run = memoize_selector(run)

        def listener(snapshot: Snapshot, prev_snapshot: Snapshot) -> None:
            nonlocal prev
            prev = prev_snapshot
            run(snapshot)

        return self._add_listener(listener)

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise RuntimeError("an async watcher that awaits needs a running event loop") from None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.exception("%s: watcher task failed", self.name, exc_info=exc)

    def _add_listener(self, listener: Callable):
        token = object()
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    # -- actions -----------------------------------------------------------

    def _bind(self, name: str, handler: Callable) -> Callable:
        context = self._context

        @functools.wraps(handler)
        def action(*args, **kwargs):
            if self._draft is not None:
                result = handler(context, *args, **kwargs)
                if inspect.iscoroutine(result):
                    return start_coroutine(result)
                return result
            with self._batch(atomic=False):
                result = handler(context, *args, **kwargs)
                if inspect.iscoroutine(result):
                    return start_coroutine(result)
                return undraft(result)

        action.__name__ = name
        action.__qualname__ = f"{self.name}.{name}"
        return action

    def _context_get(self, name: Any, *, members: bool) -> Any:
        if members and (name in HELPERS or name in self._action_names):
            return getattr(self, name)
        if name in self._computed_names:
            return self._cache.read(self._current_snapshot(), name)
        if self._draft is not None:
            return self._draft.root[name]
        return self._state[name]

    def _current_snapshot(self) -> Snapshot:
        state = self._latest_state()
        if state is self._state:
            return self._snapshot
        if self._scratch is None or self._scratch.raw is not state:
            self._scratch = Snapshot(state, self._cache, self._cache.carry_over(state))
        return self._scratch

    def _context_set(self, name: Any, value: Any) -> None:
        with self._batch(atomic=True) as draft:
            if not draft.set(draft.root, name, value):
                logger.debug("%s: ignored write to read-only name %r", self.name, name)

    def _context_delete(self, name: Any) -> None:
        if name in self._readonly:
            logger.debug("%s: ignored delete of read-only name %r", self.name, name)
            return
        with self._batch(atomic=True) as draft:
            if not draft.delete(draft.root, name):
                raise KeyError(name)


def create_slice(slice: Mapping) -> Mapping:
    """Check that slice can be handed to create_store() or with_slices(), and return it."""
    if not isinstance(slice, Mapping):
        raise TypeError(f"a slice must be a mapping, got {type(slice).__name__}")
    _check_callables("computed", slice.get("computed"))
    _check_callables("action", slice.get("actions"))
    return slice


def with_slices(*slices: Mapping) -> dict:
    """Merge slices left to right into one slice.

    State keys, computed values and actions from later slices win.
    """
    state: dict = {}
    computed: dict = {}
    actions: dict = {}
    for slice in slices:
        create_slice(slice)
        for key, value in slice.items():
            if key == "computed":
                computed.update(value or {})
            elif key == "actions":
                actions.update(value or {})
            else:
                state[key] = value
    return {**state, "computed": computed, "actions": actions}


def create_store(slice: Mapping, *, name: str | None = None) -> Store:
    """Create a Store from one slice: state keys plus optional "computed" and "actions".

    Usage:
        store = create_store({
            "count": 0,
            "computed": {"doubled": lambda self: self.count * 2},
            "actions": {"increment": lambda self: setattr(self, "count", self.count + 1)},
        })
    """
    create_slice(slice)
    state = dict(slice)
    computed = state.pop("computed", None)
    actions = state.pop("actions", None)
    return Store(state, computed, actions, name=name or "store")
