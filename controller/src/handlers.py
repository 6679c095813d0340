from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from controller.src.kube import object_field
from controller.src.metrics import METRICS
from controller.src.reftracker import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    AppKey,
    AppRefTracker,
    AppUpdateStatus,
    RefKey,
)

HANDLED_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class RefEventHandler:
    """Turns Secret/ConfigMap watch events into forced App reconciles.

    For every App referencing the changed resource, the App's update latch
    is set *before* the App is enqueued, so the reconcile that picks it up
    is guaranteed to see the forced-update signal.
    """

    kind: str = ""

    def __init__(
        self,
        ref_tracker: AppRefTracker,
        update_status: AppUpdateStatus,
        enqueue: Callable[[AppKey], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self.ref_tracker = ref_tracker
        self.update_status = update_status
        self.enqueue = enqueue
        self.logger = logger or logging.getLogger(__name__)

    def ref_key(self, name: str, namespace: str) -> RefKey:
        return RefKey(kind=self.kind, namespace=namespace, name=name)

    def handle_event(self, event_type: str, obj: Any) -> set[AppKey]:
        """Process one watch event; return the App keys that were enqueued."""
        if event_type not in HANDLED_EVENT_TYPES:
            return set()

        name = object_field(obj, "metadata", "name")
        namespace = object_field(obj, "metadata", "namespace") or ""
        if not name:
            self.logger.warning("Skipping %s event with empty name", self.kind)
            return set()

        METRICS.ref_events_total.labels(kind=self.kind).inc()
        return self.enqueue_apps_for_ref(self.ref_key(name, namespace))

    def enqueue_apps_for_ref(self, ref_key: RefKey) -> set[AppKey]:
        app_keys = self.ref_tracker.apps_for_ref(ref_key)
        for app_key in sorted(app_keys):
            self.logger.info(
                "Enqueueing app %s for update after change to %s",
                app_key,
                ref_key,
                extra={"app": app_key, "ref": ref_key, "kind": self.kind},
            )
            self.update_status.mark_updated(app_key)
            self.enqueue(app_key)
        if app_keys:
            METRICS.ref_enqueued_apps_total.labels(kind=self.kind).inc(len(app_keys))
        return app_keys


class SecretHandler(RefEventHandler):
    kind = SECRET_KIND


class ConfigMapHandler(RefEventHandler):
    kind = CONFIG_MAP_KIND
