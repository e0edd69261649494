"""Shared fixtures for the portal client tests."""

import json
import time
import threading
from dataclasses import dataclass, field
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
import requests

from donation_core.reconciliation import PaymentReconciliationLayer
from donation_core.session import SessionManager
from donation_core.storage import SessionStore
from donation_core.transport import ApiClient


CONFIG = {
    "serverUrl": "http://api.test",
    "apiPrefix": "/api/v1",
    "healthPath": "/health",
}
API_ROOT = CONFIG["serverUrl"] + CONFIG["apiPrefix"]


def make_response(status, body=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = b"" if body is None else json.dumps(body).encode()
    resp.headers["Content-Type"] = "application/json"
    return resp


def donation_payload(donation_id, status="PENDING", order_id=None, **extra):
    data = {
        "id": donation_id,
        "donor_name": "Ana Ruiz",
        "donor_email": "ana@example.org",
        "amount": "25.00",
        "currency": "COP",
        "status": status,
        "payu_order_id": order_id,
        "reference_code": f"DON-{donation_id}",
        "created_at": "2026-10-01T12:00:00Z",
        "paid_at": None,
    }
    data.update(extra)
    return data


@dataclass
class Call:
    method: str
    path: str
    json: Any = None
    params: Any = None
    token: Optional[str] = None


@dataclass
class FakeHttp:
    """
    Stand-in for requests.Session. Routes map (METHOD, path) to:
      (status, body)       same answer every time
      [answer, ...]        consumed in order, last one repeats
      callable(call)       returns an answer or raises
    """
    routes: dict = field(default_factory=dict)
    calls: list = field(default_factory=list)
    healthy: bool = True
    offline: bool = False
    health_checks: int = 0
    closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, url, timeout=None):
        self.health_checks += 1
        if self.offline:
            raise requests.ConnectionError("offline")
        return make_response(200 if self.healthy else 503, {"status": "ok"})

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        if self.offline:
            raise requests.ConnectionError("offline")
        path = url[len(API_ROOT):]
        auth = (headers or {}).get("Authorization", "")
        call = Call(method, path, json, params, auth[len("Bearer "):] if auth else None)
        with self._lock:
            self.calls.append(call)
            answer = self.routes.get((method, path))
            if answer is None:
                return make_response(404, {"detail": f"No route for {method} {path}"})
            if isinstance(answer, list):
                answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if callable(answer):
            answer = answer(call)
        status, body = answer
        return make_response(status, body)

    def close(self):
        self.closed = True

    def calls_to(self, method, path):
        return [c for c in self.calls if c.method == method and c.path == path]


def slow(answer, delay=0.05):
    """Route handler that answers after ``delay`` seconds (runs in a worker thread)."""
    def handler(call):
        time.sleep(delay)
        return answer(call) if callable(answer) else answer
    return handler


def offline(call):
    raise requests.ConnectionError("connection refused")


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def client(http):
    return ApiClient(CONFIG, http=http)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "session.json")


@pytest.fixture
def manager(client, store):
    return SessionManager(client, store)


@pytest.fixture
def auth_routes(http):
    """A backend that accepts ana@example.org and hands out a1/r1."""
    http.routes[("POST", "/auth/login")] = (200, {"access_token": "a1", "refresh_token": "r1"})
    http.routes[("GET", "/auth/me")] = (200, {
        "id": 11, "email": "ana@example.org", "first_name": "Ana", "last_name": "Ruiz",
        "roles": ["DONOR"],
    })
    return http


@pytest.fixture
def navigate():
    return MagicMock()


@pytest.fixture
def layer(client, navigate):
    return PaymentReconciliationLayer(client, navigate=navigate)
