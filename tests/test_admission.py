"""
tests/test_admission.py -- Unit tests for admission.controller and admission.client.

Covers:
  - the (N+1)th request in a window is denied with a positive Retry-After
  - budgets are independent per client key and per endpoint class
  - the escalating delay starts after `slowdown_after` and is capped, and
    the AUTH route guard actually waits it out
  - 50 simultaneous requests against a budget of 10 admit exactly 10
  - client key resolution honours forwarding headers only from trusted proxies
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from admission.client import TrustedProxies, resolve_client_key
from admission.controller import AdmissionController, Budget, EndpointClass
from api.main import create_app
from conftest import OPERATOR_EMAIL, make_settings


def _controller(**auth_overrides) -> AdmissionController:
    auth = {"limit": "10 per 15 minutes"}
    auth.update(auth_overrides)
    return AdmissionController(
        {
            EndpointClass.GENERAL: Budget("100 per 15 minutes"),
            EndpointClass.AUTH: Budget(**auth),
            EndpointClass.OPERATOR: Budget("200 per 15 minutes"),
        }
    )


class TestBudgets:
    def test_eleventh_auth_attempt_denied(self) -> None:
        controller = _controller()
        decisions = [controller.admit("203.0.113.7", EndpointClass.AUTH) for _ in range(11)]
        assert all(d.allowed for d in decisions[:10])
        denied = decisions[10]
        assert denied.allowed is False
        assert 0 < denied.retry_after <= 15 * 60
        assert denied.remaining == 0

    def test_remaining_counts_down(self) -> None:
        controller = _controller()
        first = controller.admit("203.0.113.7", EndpointClass.AUTH)
        second = controller.admit("203.0.113.7", EndpointClass.AUTH)
        assert first.limit == 10
        assert first.remaining == 9
        assert second.remaining == 8

    def test_clients_are_independent(self) -> None:
        controller = _controller()
        for _ in range(10):
            controller.admit("203.0.113.7", EndpointClass.AUTH)
        assert controller.admit("203.0.113.7", EndpointClass.AUTH).allowed is False
        assert controller.admit("198.51.100.2", EndpointClass.AUTH).allowed is True

    def test_classes_are_independent(self) -> None:
        controller = _controller()
        for _ in range(11):
            controller.admit("203.0.113.7", EndpointClass.AUTH)
        assert controller.admit("203.0.113.7", EndpointClass.OPERATOR).allowed is True

    def test_reset_forgets_counters(self) -> None:
        controller = _controller()
        for _ in range(11):
            controller.admit("203.0.113.7", EndpointClass.AUTH)
        controller.reset()
        assert controller.admit("203.0.113.7", EndpointClass.AUTH).allowed is True

    def test_concurrent_hits_never_exceed_budget(self) -> None:
        controller = _controller()
        workers = 50
        barrier = threading.Barrier(workers)

        def attempt() -> bool:
            barrier.wait()
            return controller.admit("203.0.113.7", EndpointClass.AUTH).allowed

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(workers)))

        assert outcomes.count(True) == 10
        assert outcomes.count(False) == workers - 10


class TestSlowdown:
    def test_delay_escalates_then_caps(self) -> None:
        controller = _controller(slowdown_after=3, slowdown_step=0.5, slowdown_max=1.0)
        delays = [controller.admit("203.0.113.7", EndpointClass.AUTH).delay for _ in range(6)]
        assert delays == [0.0, 0.0, 0.0, 0.5, 1.0, 1.0]

    def test_no_slowdown_without_threshold(self) -> None:
        controller = _controller()
        assert all(controller.admit("203.0.113.7", EndpointClass.AUTH).delay == 0.0 for _ in range(10))

    def test_login_route_waits_out_the_delay(self, tmp_path) -> None:
        settings = make_settings(
            tmp_path / "slow.db",
            auth_slowdown_after=1,
            auth_slowdown_step_ms=150,
            auth_slowdown_max_ms=1000,
        )
        body = {"email": OPERATOR_EMAIL, "secret": "Wr0ng!Horse"}
        with TestClient(create_app(settings)) as client:
            elapsed = []
            for _ in range(3):
                start = time.perf_counter()
                assert client.post("/api/v1/auth/login", json=body).status_code == 401
                elapsed.append(time.perf_counter() - start)
        # Third attempt: (3 - 1) * 150ms.
        assert elapsed[2] >= 0.28


class TestClientKey:
    trusted = TrustedProxies(["127.0.0.1", "10.0.0.0/8"])

    def test_untrusted_peer_headers_ignored(self) -> None:
        headers = {"x-forwarded-for": "1.2.3.4"}
        assert resolve_client_key("203.0.113.7", headers, self.trusted) == "203.0.113.7"

    def test_trusted_peer_uses_forwarded_for(self) -> None:
        headers = {"x-forwarded-for": "198.51.100.2"}
        assert resolve_client_key("127.0.0.1", headers, self.trusted) == "198.51.100.2"

    def test_rightmost_untrusted_hop_wins(self) -> None:
        """Left-most entries are client supplied and may be forged."""
        headers = {"x-forwarded-for": "6.6.6.6, 198.51.100.2, 10.1.2.3"}
        assert resolve_client_key("127.0.0.1", headers, self.trusted) == "198.51.100.2"

    def test_garbage_hop_falls_back_to_peer(self) -> None:
        headers = {"x-forwarded-for": "not-an-ip"}
        assert resolve_client_key("127.0.0.1", headers, self.trusted) == "127.0.0.1"

    def test_real_ip_when_no_forwarded_for(self) -> None:
        headers = {"x-real-ip": "198.51.100.9"}
        assert resolve_client_key("10.0.0.5", headers, self.trusted) == "198.51.100.9"

    @pytest.mark.parametrize("peer", [None, ""])
    def test_missing_peer(self, peer) -> None:
        assert resolve_client_key(peer, {}, self.trusted) == "unknown"

    def test_trusted_proxies_membership(self) -> None:
        assert "10.20.30.40" in self.trusted
        assert "11.0.0.1" not in self.trusted
        assert "testclient" not in self.trusted
