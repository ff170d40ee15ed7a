"""Textual integration for troza. Opt-in, requires textual.

Guard, NoMatches and thread marshalling are enforced here rather than at the
call sites. Textual coupling stays in this module so the core store has no
idea a UI exists. _paused_apps is owned by this module and only changed
through pause(); an app's id is present exactly while it is inside a pause()
block.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

from textual.css.query import NoMatches

logger = logging.getLogger("troza.textual")

# Module-owned pause state, keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend guarded effects during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def _guard(app, fn):
    """Wrap fn so it only touches widgets when that is safe, from the main thread."""
    main = threading.get_ident()

    def safe(*args):
        try:
            fn(*args)
        except NoMatches:
            logger.debug("skipped %r: widget not mounted", fn)

    def guarded(*args):
        if not is_safe(app):
            return
        if threading.get_ident() != main:
            app.call_from_thread(safe, *args)
        else:
            safe(*args)

    return guarded


def bind(app, store, selector, effect, *, fire_immediately=False):
    """Run effect(value, prev) on app whenever selector's result changes.

    Guards against firing during pause/not-running, catches NoMatches from
    widget queries, and marshals cross-thread calls via call_from_thread.
    With fire_immediately, effect(value, None) runs once right away.
    Returns the unsubscribe function.
    """
    guarded = _guard(app, effect)
    unsubscribe = store.subscribe(selector, guarded)
    if fire_immediately:
        guarded(selector(store.get()), None)
    return unsubscribe


def watch(app, store, watcher):
    """store.watch() for a watcher that updates widgets on app.

    Guarded the same way as bind(). A skipped run reads nothing, so the
    watcher runs again on the next publish.
    """
    return store.watch(_guard(app, watcher))
