from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from controller.src.reconciler import AppsReconciler, ReconcileResult
from controller.src.reftracker import AppKey, AppRefTracker, AppUpdateStatus, RefKey

APP_KEY = AppKey(namespace="apps", name="simple-app")


def make_app(
    secret_names: list[str] | None = None,
    deleting: bool = False,
    sync_period: str | None = None,
    generation: int = 3,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": APP_KEY.name,
        "namespace": APP_KEY.namespace,
        "generation": generation,
    }
    if deleting:
        metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    spec: dict[str, Any] = {
        "fetch": [{"git": {"secretRef": {"name": name}}} for name in secret_names or []],
        "deploy": [{"kapp": {}}],
    }
    if sync_period is not None:
        spec["syncPeriod"] = sync_period
    return {"metadata": metadata, "spec": spec}


class FakeCustomObjectsApi:
    def __init__(self, app: dict[str, Any] | None = None, error: ApiException | None = None) -> None:
        self.app = app
        self.error = error
        self.status_patches: list[tuple[str, str, dict[str, Any]]] = []

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> dict[str, Any]:
        assert (group, version, plural) == ("kappctrl.k14s.io", "v1alpha1", "apps")
        if self.error is not None:
            raise self.error
        if self.app is None:
            raise ApiException(status=404, reason="Not Found")
        return self.app

    def patch_namespaced_custom_object_status(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
    ) -> None:
        self.status_patches.append((namespace, name, body))


def fixed_now() -> str:
    return "2026-01-01T00:00:00Z"


class TestAppsReconciler:
    def setup_method(self) -> None:
        self.tracker = AppRefTracker()
        self.status = AppUpdateStatus()
        self.work = MagicMock()

    def _make(self, api: FakeCustomObjectsApi, use_default_work: bool = False) -> AppsReconciler:
        return AppsReconciler(
            custom_api=api,  # type: ignore[arg-type]
            ref_tracker=self.tracker,
            update_status=self.status,
            app_work=None if use_default_work else self.work,
            default_sync_period_seconds=30,
            now_fn=fixed_now,
        )

    def test_reconcile_tracks_app_refs(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app(["git-auth", "values"])))

        reconciler.reconcile(APP_KEY)

        assert self.tracker.refs_for_app(APP_KEY) == {
            RefKey.secret("git-auth", "apps"),
            RefKey.secret("values", "apps"),
        }

    def test_reconcile_replaces_previous_refs(self) -> None:
        api = FakeCustomObjectsApi(make_app(["old"]))
        reconciler = self._make(api)
        reconciler.reconcile(APP_KEY)

        api.app = make_app(["new"])
        reconciler.reconcile(APP_KEY)

        assert self.tracker.apps_for_ref(RefKey.secret("old", "apps")) == set()
        assert self.tracker.apps_for_ref(RefKey.secret("new", "apps")) == {APP_KEY}

    def test_routine_reconcile_is_not_forced(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app()))

        result = reconciler.reconcile(APP_KEY)

        assert result == ReconcileResult(app_key=APP_KEY, forced=False, requeue_after=30)
        self.work.assert_called_once()
        assert self.work.call_args.args[1] is False

    def test_pending_latch_forces_reconcile_once(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app()))
        self.status.mark_updated(APP_KEY)

        first = reconciler.reconcile(APP_KEY)
        second = reconciler.reconcile(APP_KEY)

        assert first.forced
        assert not second.forced
        assert [c.args[1] for c in self.work.call_args_list] == [True, False]

    def test_mark_during_app_work_forces_next_reconcile(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app()))
        self.status.mark_updated(APP_KEY)
        self.work.side_effect = lambda app, force: self.status.mark_updated(APP_KEY)

        assert reconciler.reconcile(APP_KEY).forced
        assert reconciler.reconcile(APP_KEY).forced

    def test_failed_work_keeps_forced_update_for_retry(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app()))
        self.status.mark_updated(APP_KEY)
        self.work.side_effect = [ApiException(status=500, reason="boom"), None]

        with pytest.raises(ApiException):
            reconciler.reconcile(APP_KEY)
        retry = reconciler.reconcile(APP_KEY)

        assert retry.forced
        assert [c.args[1] for c in self.work.call_args_list] == [True, True]
        assert self.status.pending_count == 0

    def test_failed_status_patch_keeps_forced_update_for_retry(self) -> None:
        api = FakeCustomObjectsApi(make_app())
        reconciler = self._make(api, use_default_work=True)
        self.status.mark_updated(APP_KEY)

        with patch(
            "controller.src.reconciler.patch_app_status",
            side_effect=ApiException(status=500, reason="boom"),
        ):
            with pytest.raises(ApiException):
                reconciler.reconcile(APP_KEY)
        reconciler.reconcile(APP_KEY)

        assert api.status_patches[0][2]["status"]["lastForcedRefreshAt"] == fixed_now()
        assert not self.status.is_update_needed(APP_KEY)

    def test_deleting_app_drops_refs_and_skips_work(self) -> None:
        api = FakeCustomObjectsApi(make_app(["git-auth"]))
        reconciler = self._make(api)
        reconciler.reconcile(APP_KEY)
        self.status.mark_updated(APP_KEY)

        api.app = make_app(["git-auth"], deleting=True)
        result = reconciler.reconcile(APP_KEY)

        assert result.requeue_after is None
        assert self.tracker.apps_for_ref(RefKey.secret("git-auth", "apps")) == set()
        assert self.status.pending_count == 0
        assert self.work.call_count == 1

    def test_missing_app_is_not_requeued_and_forgotten(self) -> None:
        api = FakeCustomObjectsApi(make_app(["git-auth"]))
        reconciler = self._make(api)
        reconciler.reconcile(APP_KEY)

        api.app = None
        result = reconciler.reconcile(APP_KEY)

        assert result == ReconcileResult(app_key=APP_KEY, found=False)
        assert self.tracker.refs_for_app(APP_KEY) == set()

    def test_fetch_errors_propagate(self) -> None:
        reconciler = self._make(
            FakeCustomObjectsApi(error=ApiException(status=500, reason="boom"))
        )

        with pytest.raises(ApiException):
            reconciler.reconcile(APP_KEY)
        self.work.assert_not_called()

    def test_requeue_follows_sync_period(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi(make_app(sync_period="5m")))

        assert reconciler.reconcile(APP_KEY).requeue_after == 300

    def test_default_work_writes_status(self) -> None:
        api = FakeCustomObjectsApi(make_app(generation=7))
        reconciler = self._make(api, use_default_work=True)

        reconciler.reconcile(APP_KEY)
        self.status.mark_updated(APP_KEY)
        reconciler.reconcile(APP_KEY)

        assert api.status_patches[0] == (
            "apps",
            "simple-app",
            {"status": {"observedGeneration": 7, "friendlyDescription": "Reconcile succeeded"}},
        )
        assert api.status_patches[1][2]["status"]["lastForcedRefreshAt"] == fixed_now()

    def test_update_app_refs_reports_deletion(self) -> None:
        reconciler = self._make(FakeCustomObjectsApi())
        refs = {RefKey.config_map("values", "apps")}

        assert reconciler.update_app_refs(refs, make_app()) is False
        assert self.tracker.apps_for_ref(RefKey.config_map("values", "apps")) == {APP_KEY}
        assert reconciler.update_app_refs(refs, make_app(deleting=True)) is True
        assert self.tracker.apps_for_ref(RefKey.config_map("values", "apps")) == set()
