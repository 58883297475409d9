import json
import logging
import tempfile
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler

import pytest
from starlette.testclient import TestClient

from commhub.app_logging import init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


def _flush(*names: str) -> None:
    for name in names:
        for handler in logging.getLogger(name).handlers:
            handler.flush()


def _last_access_entry(log_dir: Path) -> dict:
    access_line = (log_dir / "access.log").read_text().splitlines()[-1]
    return json.loads(access_line.split(": ", 1)[1])


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)
    _clear_handlers("commhub")
    _clear_handlers("uvicorn.access")


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    package_logger = _clear_handlers("commhub")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    package_handler = next(
        h for h in package_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert package_handler.when == "MIDNIGHT"
    assert package_handler.backupCount == 5

    access_handler = next(
        h for h in access_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert access_handler.when == "MIDNIGHT"
    assert access_handler.backupCount == 5


def test_repeated_init_keeps_one_package_handler(log_dir):
    package_logger = _clear_handlers("commhub")
    _clear_handlers("uvicorn.access")

    init_logging()
    init_logging()

    assert len(package_logger.handlers) == 1
    assert len(logging.getLogger("uvicorn.access").handlers) == 1


def test_log_files_and_redaction(log_dir, app_factory):
    _clear_handlers("commhub")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    logging.getLogger("commhub").info("hello commhub")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"token": "secret", "value": 1},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"]

    _flush("commhub", "uvicorn.access")

    package_log = log_dir / "commhub.log"
    assert "hello commhub" in package_log.read_text()

    data = _last_access_entry(log_dir)
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["token"] == "***"
    assert data["body"]["value"] == 1
    assert data["status"] == 200


def test_webhook_forms_are_scrubbed(log_dir, app_factory):
    _clear_handlers("commhub")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            data={"MessageSid": "SM1", "Body": "my card number is 4111"},
            headers={"X-Twilio-Signature": "c2lnbmF0dXJl", "X-Request-Id": "req-1"},
        )
        assert resp.status_code == 200
        assert resp.json()["Body"] == "my card number is 4111"

    _flush("uvicorn.access")

    data = _last_access_entry(log_dir)
    assert data["request_id"] == "req-1"
    assert data["headers"]["x-twilio-signature"] == "***"
    assert data["body"] == {"MessageSid": "SM1", "Body": "***"}
    assert "4111" not in (log_dir / "access.log").read_text()


def test_request_bodies_are_not_logged_by_default(log_dir, app_factory):
    _clear_handlers("commhub")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir)

    with TestClient(app) as client:
        client.post("/echo", json={"value": 1})

    _flush("uvicorn.access")

    assert "body" not in _last_access_entry(log_dir)
