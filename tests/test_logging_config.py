from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from churchhub import main as app_main
from churchhub.infra import audit, db, events
from churchhub.infra.context import set_request_context
from churchhub.infra.logging_config import RequestContextFilter

SHARING_LOGGER = "churchhub.services.data_sharing_service"


class _RecordingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []
        self.addFilter(RequestContextFilter())

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture()
def logging_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'logging_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def test_request_context_filter_stamps_records() -> None:
    record = logging.LogRecord("churchhub.test", logging.INFO, __file__, 1, "hello", None, None)

    set_request_context("org-1", "user-1")
    assert RequestContextFilter().filter(record) is True
    assert record.organization_id == "org-1"
    assert record.user_id == "user-1"

    set_request_context(None, None)
    RequestContextFilter().filter(record)
    assert record.organization_id == "-"
    assert record.user_id == "-"


def test_service_logs_carry_the_caller_context(
    logging_client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    org_id = logging_client.post("/api/identity/organizations", json={"name": "org-logging"}).json()["id"]
    logging_client.post(
        "/api/identity/bootstrap-admin",
        json={"organization_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    token = logging_client.post(
        "/api/identity/dev-login",
        json={"organization_id": org_id, "username": "admin", "password": "admin-pass"},
    ).json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    admin_id = logging_client.get("/api/identity/me", headers=headers).json()["id"]

    handler = _RecordingHandler()
    sharing_logger = logging.getLogger(SHARING_LOGGER)
    caplog.set_level(logging.INFO, logger=SHARING_LOGGER)
    sharing_logger.addHandler(handler)
    try:
        created = logging_client.post(
            "/api/security/data-sharing/policies",
            json={
                "name": "north to south",
                "source_type": "branch",
                "source_id": "north",
                "target_type": "branch",
                "target_id": "south",
                "resource_type": "member_data",
                "permissions": ["read"],
            },
            headers=headers,
        )
    finally:
        sharing_logger.removeHandler(handler)

    assert created.status_code == 201
    stamped = [(record.organization_id, record.user_id) for record in handler.records]
    assert stamped == [(org_id, admin_id)]
