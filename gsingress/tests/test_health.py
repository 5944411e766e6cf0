from __future__ import annotations

import threading
import time
import urllib.error
import urllib.request

import pytest

from gsingress.src.health import start_health_server, start_metrics_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Readiness follows the watcher's initial list."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, host="127.0.0.1")
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_when_not_ready(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

    def test_readyz_returns_200_once_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_readyz_returns_503_after_readiness_lost(self) -> None:
        self.ready.set()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exposes_controller_counters(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "octops_events_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404

    def test_healthz_stays_responsive_during_slow_metrics_scrape(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        import prometheus_client

        original_generate_latest = prometheus_client.generate_latest
        metrics_started = threading.Event()

        def slow_generate_latest() -> bytes:
            metrics_started.set()
            time.sleep(1.2)
            return original_generate_latest()

        monkeypatch.setattr(prometheus_client, "generate_latest", slow_generate_latest)

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


class TestMetricsServer:
    """A dedicated metrics listener serves no probes."""

    def setup_method(self) -> None:
        self.server = start_metrics_server(port=0, host="127.0.0.1")
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_metrics_returns_200(self) -> None:
        status, _ = _get(f"{self.base_url}/metrics")
        assert status == 200

    @pytest.mark.parametrize("path", ["/healthz", "/readyz"])
    def test_probes_are_not_served(self, path: str) -> None:
        status, _ = _get(f"{self.base_url}{path}")
        assert status == 404
