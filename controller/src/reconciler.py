from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from controller.src.kube import get_app, patch_app_status
from controller.src.metrics import METRICS
from controller.src.reftracker import AppKey, AppRefTracker, AppUpdateStatus, RefKey
from controller.src.refs import app_resource_refs, sync_period_seconds

AppWork = Callable[[dict[str, Any], bool], None]


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one App reconciliation.

    ``requeue_after`` is ``None`` when the App should not be requeued
    (it is gone or being deleted).
    """

    app_key: AppKey
    found: bool = True
    forced: bool = False
    requeue_after: float | None = None


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class AppsReconciler:
    """Reconciles a single App and keeps the reference tracker current.

    Each pass fetches a fresh copy of the App, refreshes the App's tracked
    Secret/ConfigMap references, consumes the forced-update latch and hands
    the App to ``app_work`` together with the ``force`` flag.  The App
    specific work is injected; the default only records progress on the
    App status subresource.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        ref_tracker: AppRefTracker,
        update_status: AppUpdateStatus,
        app_work: AppWork | None = None,
        default_sync_period_seconds: float = 30,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.ref_tracker = ref_tracker
        self.update_status = update_status
        self.app_work = app_work or self.write_status
        self.default_sync_period_seconds = default_sync_period_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def reconcile(self, app_key: AppKey) -> ReconcileResult:
        """Reconcile the App identified by ``app_key``.

        A missing App is not an error: its refs are dropped and it is not
        requeued.  Any other ``ApiException`` propagates so the caller can
        requeue with backoff.
        """
        started = time.monotonic()
        try:
            return self._reconcile(app_key)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

    def _reconcile(self, app_key: AppKey) -> ReconcileResult:
        try:
            app = get_app(self.custom_api, namespace=app_key.namespace, name=app_key.name)
        except ApiException as exc:
            if exc.status == 404:
                self.logger.info("Could not find App %s", app_key)
                self.ref_tracker.remove_app_from_all_refs(app_key)
                self.update_status.consume_update(app_key)
                return ReconcileResult(app_key=app_key, found=False)
            self.logger.error("Could not fetch App %s (status=%s)", app_key, exc.status)
            raise

        deleting = self.update_app_refs(app_resource_refs(app), app)
        if deleting:
            self.logger.info("App %s is being deleted; dropped its refs", app_key)
            self.update_status.consume_update(app_key)
            return ReconcileResult(app_key=app_key)

        # Cleared only once the work succeeds, so a failed attempt retries forced.
        force = self.update_status.is_update_needed(app_key)
        if force:
            METRICS.forced_reconciles_total.inc()
            self.logger.info(
                "Forcing refresh of App %s after a referenced resource changed",
                app_key,
                extra={"app": app_key},
            )

        self.app_work(app, force)
        if force:
            self.update_status.mark_consumed(app_key)
        return ReconcileResult(
            app_key=app_key,
            forced=force,
            requeue_after=sync_period_seconds(app, self.default_sync_period_seconds),
        )

    def update_app_refs(self, ref_keys: set[RefKey], app: dict[str, Any]) -> bool:
        """Sync the tracker with ``app``'s refs; return True when the App is being deleted.

        Deletion is detected from ``metadata.deletionTimestamp`` rather than
        by diffing, and removes the App from every ref it held.
        """
        metadata = app.get("metadata") or {}
        app_key = AppKey(namespace=metadata.get("namespace") or "", name=metadata.get("name") or "")
        if metadata.get("deletionTimestamp"):
            self.ref_tracker.remove_app_from_all_refs(app_key)
            return True

        self.ref_tracker.reconcile_refs(ref_keys, app_key)
        return False

    def write_status(self, app: dict[str, Any], force: bool) -> None:
        """Default App work: record the reconciled generation on the App status."""
        metadata = app.get("metadata") or {}
        status: dict[str, Any] = {
            "observedGeneration": metadata.get("generation"),
            "friendlyDescription": "Reconcile succeeded",
        }
        if force:
            status["lastForcedRefreshAt"] = self.now_fn()
        patch_app_status(
            self.custom_api,
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            status=status,
        )
