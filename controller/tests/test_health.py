from __future__ import annotations

import threading
import time
import urllib.error
import urllib.request

import pytest

from controller.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServerWithWatchStatus:
    """Readiness reports the initial-sync state of every watch."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.watches = {"app": False, "secret": False, "configmap": False}
        self.server = start_health_server(
            ready=self.ready, port=0, watch_status=lambda: dict(self.watches)
        )
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_with_pending_watches(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false app=pending configmap=pending secret=pending"

    def test_readyz_returns_200_when_ready(self) -> None:
        self.watches = {"app": True, "secret": True, "configmap": True}
        self.ready.set()

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 200
        assert body == "ready=true app=synced configmap=synced secret=synced"

    def test_readyz_reports_single_stuck_watch(self) -> None:
        self.watches = {"app": True, "secret": False, "configmap": True}

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 503
        assert "secret=pending" in body
        assert "app=synced" in body

    def test_metrics_exposes_controller_metrics(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "app_reconciler_tracked_refs" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404

    def test_healthz_stays_responsive_during_slow_metrics_scrape(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from controller.src import health

        original_generate_latest = health.generate_latest
        metrics_started = threading.Event()

        def slow_generate_latest() -> bytes:
            metrics_started.set()
            time.sleep(1.2)
            return original_generate_latest()

        monkeypatch.setattr(health, "generate_latest", slow_generate_latest)

        metrics_result: dict[str, object] = {}

        def _scrape_metrics() -> None:
            try:
                status, _ = _get(f"{self.base_url}/metrics", timeout=3)
                metrics_result["status"] = status
            except Exception as exc:
                metrics_result["error"] = exc

        metrics_thread = threading.Thread(target=_scrape_metrics)
        metrics_thread.start()

        assert metrics_started.wait(timeout=1)
        status, body = _get(f"{self.base_url}/healthz", timeout=1)

        metrics_thread.join(timeout=4)
        assert not metrics_thread.is_alive()
        assert "error" not in metrics_result
        assert metrics_result.get("status") == 200
        assert status == 200
        assert body == "ok"


class TestHealthServerWithoutWatchStatus:
    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_depends_only_on_ready_event(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"
