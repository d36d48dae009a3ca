"""
registry.py — Shared view registry

Views are deduplicated by ``canonical_key()``, never by object identity:
two descriptors built independently but describing the same query get
the same ``QueryView`` and therefore the same fetch.

Reference counting:
  - ``acquire`` creates or returns the view and increments its count
  - ``release`` decrements; at zero the view is disposed and its dispose
    hooks run, unless pending operations still change what it shows, in
    which case it is parked as an orphan until ``sweep`` finds it settled
  - acquiring an orphan revives it
"""

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .view import QueryView

logger = logging.getLogger(__name__)

ViewFactory = Callable[[Any], QueryView]
DisposeHook = Callable[[QueryView], None]


class ViewRegistry:
    def __init__(self, factory: ViewFactory):
        self._factory = factory
        self._views: Dict[str, QueryView] = {}
        self._refcounts: Dict[str, int] = {}
        self._orphans: Dict[str, QueryView] = {}
        self._dispose_hooks: List[DisposeHook] = []

    def __len__(self) -> int:
        return len(self._views)

    def __contains__(self, key: str) -> bool:
        return key in self._views

    def get(self, key: str) -> Optional[QueryView]:
        return self._views.get(key)

    def views(self, collection: Optional[str] = None) -> List[QueryView]:
        return [
            view for view in self._views.values()
            if collection is None or view.collection == collection
        ]

    def refcount(self, view: QueryView) -> int:
        return self._refcounts.get(view.key, 0)

    def is_live(self, key: str) -> bool:
        """True when at least one consumer holds the view."""
        return self._refcounts.get(key, 0) > 0

    def on_dispose(self, hook: DisposeHook) -> None:
        self._dispose_hooks.append(hook)

    def acquire(self, descriptor: Any) -> Tuple[QueryView, bool]:
        """Return ``(view, created)`` for ``descriptor``."""
        key = descriptor.canonical_key()
        view = self._views.get(key)
        created = view is None
        if view is None:
            view = self._factory(descriptor)
            self._views[key] = view
            logger.debug("Registered view %s", key)
        self._orphans.pop(key, None)
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        return view, created

    def release(self, view: QueryView) -> bool:
        """Drop one reference. Returns True when the view was disposed."""
        key = view.key
        if self._views.get(key) is not view:
            logger.warning("Release of unknown or already disposed view %s", key)
            return False
        count = self._refcounts.get(key, 0) - 1
        if count > 0:
            self._refcounts[key] = count
            return False
        self._refcounts.pop(key, None)
        if view.depends_on_pending:
            self._orphans[key] = view
            logger.debug("View %s orphaned until its pending operations settle", key)
            return False
        self._dispose(view)
        return True

    def sweep(self) -> List[QueryView]:
        """Dispose orphans whose pending operations have all settled."""
        disposed = []
        for key, view in list(self._orphans.items()):
            if not view.depends_on_pending:
                del self._orphans[key]
                self._dispose(view)
                disposed.append(view)
        return disposed

    def dispose_all(self) -> None:
        for view in list(self._views.values()):
            self._dispose(view)
        self._refcounts.clear()
        self._orphans.clear()

    def _dispose(self, view: QueryView) -> None:
        self._views.pop(view.key, None)
        self._orphans.pop(view.key, None)
        for hook in self._dispose_hooks:
            try:
                hook(view)
            except Exception:
                logger.error("Dispose hook failed for %s", view.key, exc_info=True)
        view.dispose()
        logger.debug("Disposed view %s", view.key)
