"""Actions: the `self` an action sees, and the stepping of async actions.

Inside an action, `self` is an ActionContext. Reading an attribute or item
resolves, in order, the store's helpers and actions (attributes only), the
computed values, then the state; assignment and deletion write state.
While a batch is open those reads and writes go through the batch's draft,
so the action can mutate nested containers in place:

    def add_todo(self, title):
        self.todos.append({"title": title, "done": False})
        return len(self.todos)

An `async def` action runs up to its first `await` inside the batch. The
remaining steps run outside it, where every write through `self` commits on
its own.
"""

from __future__ import annotations

from collections.abc import Awaitable, Coroutine, Generator
from typing import TYPE_CHECKING, Any

from troza.draft import undraft

if TYPE_CHECKING:
    from troza.store import Store


class ActionContext:
    """The `self` of an action: a live window onto one store."""

    __slots__ = ("_store",)

    def __init__(self, store: Store) -> None:
        object.__setattr__(self, "_store", store)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__"):
            raise AttributeError(name)
        try:
            return self._store._context_get(name, members=True)
        except KeyError:
            raise AttributeError(
                f"store {self._store.name!r} has no state key, computed value or action {name!r}"
            ) from None

    def __setattr__(self, name: str, value: Any) -> None:
        self._store._context_set(name, value)

    def __delattr__(self, name: str) -> None:
        try:
            self._store._context_delete(name)
        except KeyError:
            raise AttributeError(name) from None

    def __getitem__(self, key):
        return self._store._context_get(key, members=False)

    def __setitem__(self, key, value) -> None:
        self._store._context_set(key, value)

    def __delitem__(self, key) -> None:
        self._store._context_delete(key)

    def __contains__(self, key: object) -> bool:
        try:
            self._store._context_get(key, members=False)
        except KeyError:
            return False
        return True

    def __repr__(self) -> str:
        return f"ActionContext({self._store.name!r})"


class _Resumed:
    """Awaitable that drives a coroutine whose first step already ran."""

    __slots__ = ("_coro", "_pending")

    def __init__(self, coro: Coroutine, pending: Any) -> None:
        self._coro = coro
        self._pending = pending

    def __await__(self) -> Generator[Any, Any, Any]:
        coro, pending = self._coro, self._pending
        while True:
            try:
                sent = yield pending
            except GeneratorExit:
                coro.close()
                raise
            except BaseException as exc:  # forwarded into the coroutine
                try:
                    pending = coro.throw(exc)
                except StopIteration as stop:
                    return stop.value
                continue
            try:
                pending = coro.send(sent)
            except StopIteration as stop:
                return stop.value


async def _finished(value: Any) -> Any:
    return value


async def _failed(exc: BaseException) -> Any:
    raise exc


async def _resume(resumed: _Resumed) -> Any:
    return undraft(await resumed)


async def _rest(resumed: _Resumed) -> Any:
    return await resumed


def start_coroutine(coro: Coroutine) -> Awaitable:
    """Run coro up to its first suspension point, right now.

    Returns an awaitable for the rest. If the coroutine finished or failed
    during that first step, awaiting the result returns its value or raises
    its exception.
    """
    try:
        pending = coro.send(None)
    except StopIteration as stop:
        return _finished(undraft(stop.value))
    except Exception as exc:
        return _failed(exc)
    return _resume(_Resumed(coro, pending))


def step_coroutine(coro: Coroutine) -> Coroutine | None:
    """Run coro up to its first suspension point, right now.

    Returns None if it finished there, otherwise a coroutine driving the
    rest. An exception raised by the first step propagates.
    """
    try:
        pending = coro.send(None)
    except StopIteration:
        return None
    return _rest(_Resumed(coro, pending))
