from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from controller.src.handlers import ConfigMapHandler, SecretHandler
from controller.src.kube import (
    ListSource,
    app_list_source,
    config_map_list_source,
    object_field,
    secret_list_source,
)
from controller.src.metrics import METRICS
from controller.src.reconciler import AppsReconciler
from controller.src.reftracker import AppKey, AppRefTracker, AppUpdateStatus
from controller.src.workqueue import WorkQueue

EventCallback = Callable[[str, Any], Any]

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


class ResourceWatcher:
    """List-then-watch loop for one resource kind, dispatching events to a callback.

    1. Lists the resource (retrying with exponential backoff and jitter),
       dispatches every listed object as ``ADDED`` and marks itself synced.
    2. Streams watch events from the list's ``resourceVersion``.
    3. On ``410 Gone`` (etcd compaction) re-lists, dispatches the fresh
       snapshot as ``ADDED`` and resumes from the new ``resourceVersion``.
    4. On transient errors backs off with jitter (1 s doubling, 30 s cap).

    ``401`` / ``403`` responses are treated as RBAC misconfiguration and end
    the loop immediately with ``fatal`` set, rather than retrying forever.
    """

    def __init__(
        self,
        kind: str,
        source: ListSource,
        on_event: EventCallback,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.source = source
        self.on_event = on_event
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.fatal = False
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event_type: str, obj: Any) -> None:
        try:
            self.on_event(event_type, obj)
        except Exception:
            self.logger.exception(
                "Failed to handle %s %s event for %s/%s",
                self.kind,
                event_type,
                object_field(obj, "metadata", "namespace"),
                object_field(obj, "metadata", "name"),
            )

    def _list_and_dispatch(self) -> str | None:
        """List all objects, dispatch them as ``ADDED`` and return the list resourceVersion."""
        result = self.source.list()
        for obj in object_field(result, "items") or []:
            self._dispatch("ADDED", obj)
        return object_field(result, "metadata", "resourceVersion")

    def _deny(self, exc: ApiException, phase: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind,
            phase,
            exc.status,
        )
        self.fatal = True
        self.synced.clear()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_dispatch()
                self.synced.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._deny(exc, "initial list")
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        if self._should_stop(stop):
            self.synced.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.source.func,
                    *self.source.args,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    event_resource_version = object_field(obj, "metadata", "resourceVersion")
                    if event_resource_version:
                        resource_version = event_resource_version

                    self._dispatch(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._list_and_dispatch()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._deny(relist_exc, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._deny(exc, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()


class AppsController:
    """Wires the App, Secret and ConfigMap watches to the reconcile workers.

    App events enqueue the App directly.  Secret and ConfigMap events go
    through :class:`SecretHandler` / :class:`ConfigMapHandler`, which set
    the forced-update latch of every referencing App before enqueueing it.
    Workers pull App keys from a shared :class:`WorkQueue`; the queue
    guarantees a key is never reconciled by two workers at once, which
    keeps per-App ``reconcile_refs`` calls ordered.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        reconciler: AppsReconciler,
        ref_tracker: AppRefTracker,
        update_status: AppUpdateStatus,
        namespace: str | None = None,
        worker_count: int = 4,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.reconciler = reconciler
        self.worker_count = worker_count
        self.queue = queue or WorkQueue()
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        self.secret_handler = SecretHandler(
            ref_tracker, update_status, self.queue.add, logger=self.logger
        )
        self.config_map_handler = ConfigMapHandler(
            ref_tracker, update_status, self.queue.add, logger=self.logger
        )
        self.watchers = [
            ResourceWatcher(
                "app", app_list_source(custom_api, namespace), self.handle_app_event, self.logger
            ),
            ResourceWatcher(
                "secret",
                secret_list_source(core_api, namespace),
                self.secret_handler.handle_event,
                self.logger,
            ),
            ResourceWatcher(
                "configmap",
                config_map_list_source(core_api, namespace),
                self.config_map_handler.handle_event,
                self.logger,
            ),
        ]
        self._stop = threading.Event()

    def handle_app_event(self, event_type: str, app: Any) -> AppKey | None:
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        name = object_field(app, "metadata", "name")
        if not name:
            return None
        app_key = AppKey(namespace=object_field(app, "metadata", "namespace") or "", name=name)
        self.queue.add(app_key)
        return app_key

    def watch_status(self) -> dict[str, bool]:
        """Per-kind initial-sync state, reported on ``/readyz``."""
        return {w.kind: w.synced.is_set() for w in self.watchers}

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key from the queue; return False when nothing was processed."""
        app_key = self.queue.get(timeout=timeout)
        if app_key is None:
            return False
        try:
            result = self.reconciler.reconcile(app_key)
        except Exception:
            METRICS.reconciles_total.labels(result="error").inc()
            delay = self.queue.add_rate_limited(app_key)
            self.logger.exception(
                "Reconcile of App %s failed; retrying in %.1fs", app_key, delay
            )
        else:
            self.queue.forget(app_key)
            METRICS.reconciles_total.labels(
                result="success" if result.found else "not_found"
            ).inc()
            if result.requeue_after is not None:
                self.queue.add_after(app_key, result.requeue_after)
        finally:
            self.queue.done(app_key)
        return True

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            if not self.process_next(timeout=1.0) and self.queue.shutting_down:
                return

    def request_stop(self) -> None:
        """Stop all watch streams and wake idle workers."""
        self._stop.set()
        for watcher in self.watchers:
            watcher.request_stop()
        self.queue.shut_down()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watches and workers until ``shutdown_event`` is set.

        ``ready`` is set once every watcher finished its initial list.  A
        watcher ending on its own (RBAC denial) stops the whole controller,
        since a missing watch would silently drop forced updates.
        """
        stop = shutdown_event or threading.Event()
        self._stop.clear()

        watcher_threads = [
            threading.Thread(
                target=w.run_forever,
                kwargs={"shutdown_event": self._stop},
                name=f"watch-{w.kind}",
                daemon=True,
            )
            for w in self.watchers
        ]
        worker_threads = [
            threading.Thread(target=self._run_worker, name=f"worker-{i}", daemon=True)
            for i in range(self.worker_count)
        ]
        for thread in watcher_threads + worker_threads:
            thread.start()
        self.logger.info(
            "Started %d watch(es) and %d worker(s)", len(watcher_threads), len(worker_threads)
        )

        while not stop.is_set():
            if any(not t.is_alive() for t in watcher_threads):
                self.logger.error("A watch loop exited without a stop signal; stopping controller")
                break
            if all(w.synced.is_set() for w in self.watchers):
                if not self.ready.is_set():
                    self.logger.info("All watches synced; controller ready")
                self.ready.set()
            else:
                self.ready.clear()
            stop.wait(timeout=0.5)

        self.ready.clear()
        self.request_stop()
        for thread in watcher_threads + worker_threads:
            thread.join(timeout=WATCH_TIMEOUT_SECONDS + 5)
        self.logger.info("Controller stopped")


def build_controller(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    namespace: str | None,
    worker_count: int,
    default_sync_period_seconds: float,
) -> AppsController:
    """Construct an :class:`AppsController` with its own tracker and update latches.

    The tracker and latch store are created here, once per controller, and
    shared by the reconciler and both event handlers.
    """
    ref_tracker = AppRefTracker()
    update_status = AppUpdateStatus()
    reconciler = AppsReconciler(
        custom_api=custom_api,
        ref_tracker=ref_tracker,
        update_status=update_status,
        default_sync_period_seconds=default_sync_period_seconds,
    )
    return AppsController(
        core_api=core_api,
        custom_api=custom_api,
        reconciler=reconciler,
        ref_tracker=ref_tracker,
        update_status=update_status,
        namespace=namespace,
        worker_count=worker_count,
    )
