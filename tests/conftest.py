import pathlib
import sys
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qsl

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from commhub.app_logging import init_logging
from commhub.contacts.models import VIP_CUSTOMER_TYPES, Contact, PriorityTier
from commhub.core.config import Settings, reset_settings_cache
from commhub.platform import build_platform
from commhub.scheduling.timers import DeadlineTimer
from commhub.webhooks.signature import SIGNATURE_HEADER, compute_signature

AUTH_TOKEN = "test-auth-token"
BASE_URL = "https://hooks.example.com"
LINE = "+15559990000"


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeCrm:
    """In-process stand-in for the customer-record REST system."""

    def __init__(self):
        self.customers: dict[str, dict[str, Any]] = {}
        self.lookups: list[str] = []
        self.logged: list[dict[str, Any]] = []
        self.lookup_error: Exception | None = None
        self.log_failures = 0

    def add_customer(self, phone: str, external_id: str, customer_type: str = "standard"):
        self.customers[phone] = {"id": external_id, "name": external_id, "type": customer_type}

    def find_by_phone(self, phone: str) -> Contact | None:
        self.lookups.append(phone)
        if self.lookup_error is not None:
            raise self.lookup_error
        record = self.customers.get(phone)
        if record is None:
            return None
        tier = (
            PriorityTier.VIP
            if record["type"].lower() in VIP_CUSTOMER_TYPES
            else PriorityTier.STANDARD
        )
        return Contact(
            external_id=record["id"],
            display_name=record["name"],
            addresses=[phone],
            priority_tier=tier,
        )

    def log_communication(self, communication: dict[str, Any]) -> None:
        if self.log_failures:
            self.log_failures -= 1
            raise ConnectionError("customer-record system unavailable")
        self.logged.append(communication)


def sign(path: str, params: dict[str, str], token: str = AUTH_TOKEN) -> dict[str, str]:
    """Headers a correctly signed provider request to ``path`` would carry."""

    return {SIGNATURE_HEADER: compute_signature(token, BASE_URL + path, params.items())}


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        webhook_auth_token=AUTH_TOKEN,
        webhook_base_url=BASE_URL,
        webhook_max_body_bytes=4096,
        reservation_timeout_seconds=30,
        task_max_wait_seconds=600,
        task_max_rejections=2,
        activity_log_max_attempts=3,
        activity_log_backoff_seconds=2.0,
        activity_log_max_backoff_seconds=60.0,
        activity_log_settle_seconds=5.0,
        routing_timezone="UTC",
        topic_skills={"billing": ("billing",), "spanish": ("es",)},
        background_workers=2,
    )


@pytest.fixture
def platform(settings, clock, crm):
    platform = build_platform(settings, clock=clock, crm=crm, timer=DeadlineTimer(clock=clock))
    yield platform
    platform.runner.shutdown()


@pytest.fixture
def client(platform, monkeypatch, tmp_path):
    from fastapi.testclient import TestClient

    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    from commhub.core.ratelimit import limiter
    from commhub.main import app
    from commhub.platform import get_platform

    reset_settings_cache()
    limiter.reset()
    app.dependency_overrides[get_platform] = lambda: platform
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_settings_cache()


@pytest.fixture
def post_webhook(client):
    """POST a correctly signed form to ``/api/webhooks/<endpoint>``."""

    def _post(endpoint: str, params: dict, headers: dict | None = None, token: str = AUTH_TOKEN):
        path = f"/api/webhooks/{endpoint}"
        all_headers = sign(path, params, token)
        all_headers.update(headers or {})
        return client.post(path, data=params, headers=all_headers)

    return _post


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            if request.headers.get("content-type", "").startswith("application/json"):
                return await request.json()
            return dict(parse_qsl((await request.body()).decode("utf-8")))

        init_logging(app)
        return app

    return _create_app
