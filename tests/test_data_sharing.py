from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from churchhub import main as app_main
from churchhub.domain.models import (
    DataSharingEvaluateRequest,
    DataSharingPolicy,
    EventRecord,
    SharingEntityType,
    SharingPermission,
    SharingResourceType,
)
from churchhub.infra import audit, db, events
from churchhub.services.data_sharing_service import policy_matches


@pytest.fixture()
def sharing_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "data_sharing_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
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


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, organization_id: str, username: str, password: str) -> dict:
    response = client.post(
        "/api/identity/dev-login",
        json={"organization_id": organization_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()


def _setup_admin(client: TestClient, name: str) -> tuple[str, str, str]:
    org_resp = client.post("/api/identity/organizations", json={"name": name})
    assert org_resp.status_code == 201
    org_id = org_resp.json()["id"]
    bootstrap_resp = client.post(
        "/api/identity/bootstrap-admin",
        json={"organization_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    assert bootstrap_resp.status_code == 201
    login = _login(client, org_id, "admin", "admin-pass")
    return org_id, login["access_token"], login["home_branch_id"]


def _policy_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": "north shares members with south",
        "description": "pastoral follow-up",
        "source_type": "branch",
        "source_id": "north",
        "target_type": "branch",
        "target_id": "south",
        "resource_type": "member_data",
        "permissions": ["read"],
    }
    payload.update(overrides)
    return payload


def _policy(**overrides: object) -> DataSharingPolicy:
    values: dict[str, object] = {
        "organization_id": "org",
        "name": "policy",
        "source_type": SharingEntityType.BRANCH,
        "source_id": "north",
        "target_type": SharingEntityType.BRANCH,
        "target_id": "south",
        "resource_type": SharingResourceType.MEMBER_DATA,
        "permissions": ["read"],
        "active": True,
    }
    values.update(overrides)
    return DataSharingPolicy(**values)


def _request(**overrides: object) -> DataSharingEvaluateRequest:
    values: dict[str, object] = {
        "source_type": "branch",
        "source_id": "north",
        "target_type": "branch",
        "target_id": "south",
        "resource_type": "member_data",
        "permission": "read",
    }
    values.update(overrides)
    return DataSharingEvaluateRequest.model_validate(values)


def test_policy_matches_exact_request() -> None:
    assert policy_matches(_policy(), _request()) is True
    assert policy_matches(_policy(active=False), _request()) is False
    assert policy_matches(_policy(), _request(permission="update")) is False
    assert policy_matches(_policy(), _request(resource_type="financial_data")) is False
    assert policy_matches(_policy(), _request(target_type="ministry")) is False
    assert policy_matches(_policy(), _request(source_id="east")) is False


def test_policy_matches_wildcards() -> None:
    any_target = _policy(target_id="all")
    assert policy_matches(any_target, _request(target_id="west")) is True

    any_resource = _policy(resource_type=SharingResourceType.ALL, permissions=["read", "update"])
    assert policy_matches(any_resource, _request(resource_type="attendance_data", permission="update")) is True

    # "all" in the request is just another id, not a wildcard.
    assert policy_matches(_policy(), _request(target_id="all")) is False


def test_policy_crud_and_evaluate(sharing_client: TestClient) -> None:
    org_id, token, _ = _setup_admin(sharing_client, "org-sharing")

    created = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(permissions=["update", "read", "read"]),
        headers=_auth_header(token),
    )
    assert created.status_code == 201
    policy = created.json()
    assert policy["permissions"] == ["read", "update"]
    assert policy["active"] is True
    assert policy["created_by"] is not None

    allowed = sharing_client.post(
        "/api/security/data-sharing/evaluate",
        json={
            "source_type": "branch",
            "source_id": "north",
            "target_type": "branch",
            "target_id": "south",
            "resource_type": "member_data",
        },
        headers=_auth_header(token),
    )
    assert allowed.status_code == 200
    assert allowed.json() == {"allowed": True, "matched_policy_ids": [policy["id"]]}

    denied = sharing_client.post(
        "/api/security/data-sharing/evaluate",
        json={
            "source_type": "branch",
            "source_id": "north",
            "target_type": "branch",
            "target_id": "south",
            "resource_type": "member_data",
            "permission": "delete",
        },
        headers=_auth_header(token),
    )
    assert denied.json() == {"allowed": False, "matched_policy_ids": []}

    updated = sharing_client.patch(
        f"/api/security/data-sharing/policies/{policy['id']}",
        json={"target_id": "all", "description": None},
        headers=_auth_header(token),
    )
    assert updated.status_code == 200
    assert updated.json()["target_id"] == "all"
    assert updated.json()["description"] is None
    assert updated.json()["name"] == policy["name"]

    toggled = sharing_client.post(
        f"/api/security/data-sharing/policies/{policy['id']}/toggle",
        headers=_auth_header(token),
    )
    assert toggled.status_code == 200
    assert toggled.json()["active"] is False

    inactive = sharing_client.post(
        "/api/security/data-sharing/evaluate",
        json={
            "source_type": "branch",
            "source_id": "north",
            "target_type": "branch",
            "target_id": "west",
            "resource_type": "member_data",
        },
        headers=_auth_header(token),
    )
    assert inactive.json()["allowed"] is False

    reactivated = sharing_client.patch(
        f"/api/security/data-sharing/policies/{policy['id']}/active",
        json={"active": True},
        headers=_auth_header(token),
    )
    assert reactivated.status_code == 200
    assert reactivated.json()["active"] is True

    deleted = sharing_client.delete(
        f"/api/security/data-sharing/policies/{policy['id']}",
        headers=_auth_header(token),
    )
    assert deleted.status_code == 204
    missing = sharing_client.get(
        f"/api/security/data-sharing/policies/{policy['id']}",
        headers=_auth_header(token),
    )
    assert missing.status_code == 404

    with Session(db.get_engine()) as session:
        event_types = {
            item.event_type
            for item in session.exec(select(EventRecord).where(EventRecord.organization_id == org_id)).all()
        }
    assert {
        "data_sharing_policy.created",
        "data_sharing_policy.updated",
        "data_sharing_policy.deactivated",
        "data_sharing_policy.activated",
        "data_sharing_policy.deleted",
    } <= event_types


def test_policy_validation(sharing_client: TestClient) -> None:
    _, token, _ = _setup_admin(sharing_client, "org-sharing-validation")

    no_permissions = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(permissions=[]),
        headers=_auth_header(token),
    )
    assert no_permissions.status_code == 422

    blank_name = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(name="   "),
        headers=_auth_header(token),
    )
    assert blank_name.status_code == 422

    bad_entity = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(source_type="diocese"),
        headers=_auth_header(token),
    )
    assert bad_entity.status_code == 422

    created = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(),
        headers=_auth_header(token),
    )
    clear_permissions = sharing_client.patch(
        f"/api/security/data-sharing/policies/{created.json()['id']}",
        json={"permissions": []},
        headers=_auth_header(token),
    )
    assert clear_permissions.status_code == 422


def test_policy_listing_filters(sharing_client: TestClient) -> None:
    _, token, _ = _setup_admin(sharing_client, "org-sharing-list")

    for payload in (
        _policy_payload(name="a-members"),
        _policy_payload(name="b-finance", resource_type="financial_data", active=False),
        _policy_payload(name="c-ministry", source_type="ministry", source_id="choir"),
    ):
        response = sharing_client.post(
            "/api/security/data-sharing/policies",
            json=payload,
            headers=_auth_header(token),
        )
        assert response.status_code == 201

    everything = sharing_client.get("/api/security/data-sharing/policies", headers=_auth_header(token))
    assert [item["name"] for item in everything.json()] == ["a-members", "b-finance", "c-ministry"]

    active = sharing_client.get(
        "/api/security/data-sharing/policies",
        params={"active": "true"},
        headers=_auth_header(token),
    )
    assert [item["name"] for item in active.json()] == ["a-members", "c-ministry"]

    finance = sharing_client.get(
        "/api/security/data-sharing/policies",
        params={"resource_type": "financial_data"},
        headers=_auth_header(token),
    )
    assert [item["name"] for item in finance.json()] == ["b-finance"]

    ministry = sharing_client.get(
        "/api/security/data-sharing/policies",
        params={"source_type": "ministry", "source_id": "choir"},
        headers=_auth_header(token),
    )
    assert [item["name"] for item in ministry.json()] == ["c-ministry"]


def test_policies_are_organization_scoped_and_permissioned(sharing_client: TestClient) -> None:
    org_a, token_a, home_branch = _setup_admin(sharing_client, "org-sharing-a")
    _, token_b, _ = _setup_admin(sharing_client, "org-sharing-b")

    created = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(),
        headers=_auth_header(token_a),
    )
    policy_id = created.json()["id"]

    cross = sharing_client.get(
        f"/api/security/data-sharing/policies/{policy_id}",
        headers=_auth_header(token_b),
    )
    assert cross.status_code == 404

    cross_eval = sharing_client.post(
        "/api/security/data-sharing/evaluate",
        json={
            "source_type": "branch",
            "source_id": "north",
            "target_type": "branch",
            "target_id": "south",
            "resource_type": "member_data",
        },
        headers=_auth_header(token_b),
    )
    assert cross_eval.json()["allowed"] is False

    role = sharing_client.post(
        "/api/security/roles",
        json={"name": "settings", "description": "settings only", "permission_ids": ["admin.system_settings"]},
        headers=_auth_header(token_a),
    )
    user = sharing_client.post(
        "/api/identity/users",
        json={"username": "clerk", "password": "clerk-pass"},
        headers=_auth_header(token_a),
    )
    grant = sharing_client.post(
        f"/api/identity/users/{user.json()['id']}/branch-access",
        json={"branch_id": home_branch, "role_id": role.json()["id"]},
        headers=_auth_header(token_a),
    )
    assert grant.status_code == 201
    clerk_token = _login(sharing_client, org_a, "clerk", "clerk-pass")["access_token"]

    readable = sharing_client.get("/api/security/data-sharing/policies", headers=_auth_header(clerk_token))
    assert readable.status_code == 200
    assert len(readable.json()) == 1

    write = sharing_client.post(
        "/api/security/data-sharing/policies",
        json=_policy_payload(name="clerk policy"),
        headers=_auth_header(clerk_token),
    )
    assert write.status_code == 403
