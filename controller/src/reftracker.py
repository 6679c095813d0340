from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

SECRET_KIND = "secret"
CONFIG_MAP_KIND = "configmap"


@dataclass(frozen=True, order=True)
class AppKey:
    """Identity of an App resource, usable as a dict key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class RefKey:
    """Identity of a secondary resource (Secret or ConfigMap) referenced by Apps."""

    kind: str
    namespace: str
    name: str

    @classmethod
    def secret(cls, name: str, namespace: str) -> RefKey:
        return cls(kind=SECRET_KIND, namespace=namespace, name=name)

    @classmethod
    def config_map(cls, name: str, namespace: str) -> RefKey:
        return cls(kind=CONFIG_MAP_KIND, namespace=namespace, name=name)

    def __str__(self) -> str:
        return f"{self.kind}:{self.namespace}/{self.name}"


@dataclass(frozen=True)
class RefDiff:
    """Refs linked and unlinked by a single :meth:`RefIndex.replace` call."""

    added: frozenset[RefKey] = field(default_factory=frozenset)
    removed: frozenset[RefKey] = field(default_factory=frozenset)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class RefIndex:
    """Bidirectional ``RefKey <-> AppKey`` index guarded by a single lock.

    ``_refs_by_app`` and ``_apps_by_ref`` always describe the same set of
    (ref, app) pairs.  Every mutation touches both directions inside one
    critical section, so readers never see a half-applied change.  Empty
    sets are never stored: an entry is deleted as soon as its last member
    goes away, keeping the footprint proportional to live relationships.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refs_by_app: dict[AppKey, set[RefKey]] = {}
        self._apps_by_ref: dict[RefKey, set[AppKey]] = {}

    def replace(self, app_key: AppKey, refs: Iterable[RefKey]) -> RefDiff:
        """Make ``refs`` the complete reference set of ``app_key``.

        Only the difference against the previous set is applied; an empty
        ``refs`` drops the App entirely.
        """
        new_refs = frozenset(refs)
        with self._lock:
            old_refs = frozenset(self._refs_by_app.get(app_key, ()))
            to_add = new_refs - old_refs
            to_remove = old_refs - new_refs

            for ref_key in to_add:
                self._refs_by_app.setdefault(app_key, set()).add(ref_key)
                self._apps_by_ref.setdefault(ref_key, set()).add(app_key)

            for ref_key in to_remove:
                self._unlink(ref_key, app_key)

        return RefDiff(added=to_add, removed=to_remove)

    def _unlink(self, ref_key: RefKey, app_key: AppKey) -> None:
        # Caller holds self._lock.
        app_refs = self._refs_by_app.get(app_key)
        if app_refs is not None:
            app_refs.discard(ref_key)
            if not app_refs:
                del self._refs_by_app[app_key]

        ref_apps = self._apps_by_ref.get(ref_key)
        if ref_apps is not None:
            ref_apps.discard(app_key)
            if not ref_apps:
                del self._apps_by_ref[ref_key]

    def owners_of(self, ref_key: RefKey) -> frozenset[AppKey]:
        with self._lock:
            return frozenset(self._apps_by_ref.get(ref_key, ()))

    def refs_of(self, app_key: AppKey) -> frozenset[RefKey]:
        with self._lock:
            return frozenset(self._refs_by_app.get(app_key, ()))

    def snapshot(self) -> tuple[dict[AppKey, set[RefKey]], dict[RefKey, set[AppKey]]]:
        """Return copies of both directions taken atomically."""
        with self._lock:
            return (
                {app: set(refs) for app, refs in self._refs_by_app.items()},
                {ref: set(apps) for ref, apps in self._apps_by_ref.items()},
            )

    @property
    def app_count(self) -> int:
        with self._lock:
            return len(self._refs_by_app)

    @property
    def ref_count(self) -> int:
        with self._lock:
            return len(self._apps_by_ref)


class AppRefTracker:
    """Tracks which Apps reference which Secrets and ConfigMaps.

    The reconcile path feeds each App's current reference set through
    :meth:`reconcile_refs`; Secret/ConfigMap event handlers ask
    :meth:`apps_for_ref` which Apps need a forced refresh.  The tracker is a
    transient in-memory index and is rebuilt naturally as Apps reconcile
    after a restart.
    """

    def __init__(self, index: RefIndex | None = None) -> None:
        self._index = index or RefIndex()

    def reconcile_refs(self, ref_keys: Iterable[RefKey], app_key: AppKey) -> None:
        """Replace the tracked reference set for ``app_key`` with ``ref_keys``."""
        diff = self._index.replace(app_key, ref_keys)
        if diff.changed:
            LOGGER.debug(
                "Updated refs for app %s (added: %s, removed: %s)",
                app_key,
                ", ".join(sorted(map(str, diff.added))) or "-",
                ", ".join(sorted(map(str, diff.removed))) or "-",
            )
        self._record_size()

    def remove_app_from_all_refs(self, app_key: AppKey) -> None:
        """Forget every reference held by ``app_key``, e.g. when it is deleted."""
        diff = self._index.replace(app_key, ())
        if diff.removed:
            LOGGER.debug("Removed app %s from %d ref(s)", app_key, len(diff.removed))
        self._record_size()

    def apps_for_ref(self, ref_key: RefKey) -> set[AppKey]:
        return set(self._index.owners_of(ref_key))

    def refs_for_app(self, app_key: AppKey) -> set[RefKey]:
        return set(self._index.refs_of(app_key))

    @property
    def index(self) -> RefIndex:
        return self._index

    def _record_size(self) -> None:
        METRICS.tracked_refs.set(self._index.ref_count)
        METRICS.tracked_apps.set(self._index.app_count)


@dataclass
class _Latch:
    # ``generation`` increases on every mark so a consume can tell whether a
    # new mark arrived after it looked at the latch.
    generation: int = 0
    observed: int | None = None


class AppUpdateStatus:
    """Per-App "force update" latch set by event handlers and consumed by reconciles.

    Only pending latches are stored; an absent key means no update is
    needed.  Repeated :meth:`mark_updated` calls coalesce into one pending
    signal.  Clearing is conditional: a mark that lands between the read
    and the clear keeps the latch pending, so the next reconcile still
    forces a refresh.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latches: dict[AppKey, _Latch] = {}

    def mark_updated(self, app_key: AppKey) -> None:
        with self._lock:
            latch = self._latches.get(app_key)
            if latch is None:
                latch = self._latches[app_key] = _Latch()
            latch.generation += 1
            METRICS.pending_updates.set(len(self._latches))

    def is_update_needed(self, app_key: AppKey) -> bool:
        """Report whether ``app_key`` has a pending update without clearing it.

        The observation is remembered so a following :meth:`mark_consumed`
        only clears what was actually seen.  There is one observation per
        App: while one is outstanding, later reads keep the earlier
        generation, so overlapping readers can delay a clear but never
        clear a mark that one of them did not see.
        """
        with self._lock:
            latch = self._latches.get(app_key)
            if latch is None:
                return False
            if latch.observed is None:
                latch.observed = latch.generation
            return True

    def mark_consumed(self, app_key: AppKey) -> None:
        with self._lock:
            latch = self._latches.get(app_key)
            if latch is None or latch.observed is None:
                return
            if latch.observed == latch.generation:
                del self._latches[app_key]
            else:
                latch.observed = None
            METRICS.pending_updates.set(len(self._latches))

    def consume_update(self, app_key: AppKey) -> bool:
        """Atomically check and clear the latch; return whether it was pending."""
        with self._lock:
            latch = self._latches.pop(app_key, None)
            METRICS.pending_updates.set(len(self._latches))
            return latch is not None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._latches)
