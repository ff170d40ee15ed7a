"""troza: immutable state store with auto-tracked computed values and draft-based actions."""

from importlib.metadata import version as _version

__version__ = _version("troza")

from troza._anchor import is_same
from troza._tracking import is_changed, track, untrack
from troza.readonly import FrozenDict, FrozenList, ReadonlyError, freeze
from troza.draft import Draft, RevokedDraftError, current, is_draft, undraft
from troza.snapshot import Snapshot
from troza.computed import CircularComputedError
from troza.selector import memoize_selector
from troza.action import ActionContext
from troza.store import Store, create_slice, create_store, set_scheduler, with_slices
# textual NOT auto-imported, opt-in only

__all__ = [
    "Store",
    "create_store",
    "create_slice",
    "with_slices",
    "set_scheduler",
    "Snapshot",
    "ActionContext",
    "memoize_selector",
    "Draft",
    "current",
    "is_draft",
    "undraft",
    "freeze",
    "FrozenDict",
    "FrozenList",
    "is_same",
    "track",
    "untrack",
    "is_changed",
    "ReadonlyError",
    "RevokedDraftError",
    "CircularComputedError",
]
