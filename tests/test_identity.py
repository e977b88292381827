from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from churchhub import main as app_main
from churchhub.domain.models import EventRecord
from churchhub.infra import audit, db, events


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
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


def _create_organization(client: TestClient, name: str) -> str:
    response = client.post("/api/identity/organizations", json={"name": name})
    assert response.status_code == 201
    return response.json()["id"]


def _bootstrap_admin(client: TestClient, organization_id: str, username: str, password: str) -> None:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"organization_id": organization_id, "username": username, "password": password},
    )
    assert response.status_code == 201


def _login(client: TestClient, organization_id: str, username: str, password: str) -> dict:
    response = client.post(
        "/api/identity/dev-login",
        json={"organization_id": organization_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()


def test_identity_organization_isolation(identity_client: TestClient) -> None:
    org_a = _create_organization(identity_client, "st-marys")
    org_b = _create_organization(identity_client, "grace-chapel")
    _bootstrap_admin(identity_client, org_a, "admin_a", "pass-a")
    _bootstrap_admin(identity_client, org_b, "admin_b", "pass-b")

    token_a = _login(identity_client, org_a, "admin_a", "pass-a")["access_token"]
    token_b = _login(identity_client, org_b, "admin_b", "pass-b")["access_token"]

    create_user_resp = identity_client.post(
        "/api/identity/users",
        json={"username": "alice", "password": "alice-pass", "is_active": True},
        headers=_auth_header(token_a),
    )
    assert create_user_resp.status_code == 201
    alice_id = create_user_resp.json()["id"]

    cross_org_resp = identity_client.get(
        f"/api/identity/users/{alice_id}",
        headers=_auth_header(token_b),
    )
    assert cross_org_resp.status_code == 404

    other_org_resp = identity_client.get(
        f"/api/identity/organizations/{org_a}",
        headers=_auth_header(token_b),
    )
    assert other_org_resp.status_code == 404

    own_org_resp = identity_client.get(
        f"/api/identity/organizations/{org_a}",
        headers=_auth_header(token_a),
    )
    assert own_org_resp.status_code == 200
    assert own_org_resp.json()["name"] == "st-marys"


def test_identity_bootstrap_login_returns_home_branch(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-bootstrap")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")

    again = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"organization_id": org_id, "username": "admin2", "password": "x"},
    )
    assert again.status_code == 409

    login = _login(identity_client, org_id, "admin", "admin-pass")
    assert login["token_type"] == "bearer"
    assert login["permissions"] == ["*"]
    home_branch_id = login["home_branch_id"]
    assert home_branch_id is not None
    assert login["branch_permissions"] == {home_branch_id: ["*"]}

    me = identity_client.get("/api/identity/me", headers=_auth_header(login["access_token"]))
    assert me.status_code == 200
    assert me.json()["username"] == "admin"

    with Session(db.get_engine()) as session:
        recorded = session.exec(
            select(EventRecord).where(EventRecord.event_type == "organization.bootstrapped")
        ).all()
    assert len(recorded) == 1
    assert recorded[0].organization_id == org_id


def test_identity_login_rejects_bad_credentials(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-login")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")

    response = identity_client.post(
        "/api/identity/dev-login",
        json={"organization_id": org_id, "username": "admin", "password": "wrong"},
    )
    assert response.status_code == 401

    no_token = identity_client.get("/api/identity/me")
    assert no_token.status_code == 401

    garbage = identity_client.get("/api/identity/me", headers=_auth_header("not-a-jwt"))
    assert garbage.status_code == 401


def test_identity_inactive_user_cannot_login(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-inactive")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")
    token = _login(identity_client, org_id, "admin", "admin-pass")["access_token"]

    created = identity_client.post(
        "/api/identity/users",
        json={"username": "retired", "password": "retired-pass", "is_active": False},
        headers=_auth_header(token),
    )
    assert created.status_code == 201

    response = identity_client.post(
        "/api/identity/dev-login",
        json={"organization_id": org_id, "username": "retired", "password": "retired-pass"},
    )
    assert response.status_code == 401


def test_identity_permission_denied(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-perm")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")
    admin_login = _login(identity_client, org_id, "admin", "admin-pass")
    admin_token = admin_login["access_token"]

    role_resp = identity_client.post(
        "/api/security/roles",
        json={"name": "viewer", "description": "read members", "permission_ids": ["members.view"]},
        headers=_auth_header(admin_token),
    )
    assert role_resp.status_code == 201
    role_id = role_resp.json()["id"]

    bob_resp = identity_client.post(
        "/api/identity/users",
        json={"username": "bob", "password": "bob-pass", "is_active": True},
        headers=_auth_header(admin_token),
    )
    assert bob_resp.status_code == 201
    bob_id = bob_resp.json()["id"]

    grant_resp = identity_client.post(
        f"/api/identity/users/{bob_id}/branch-access",
        json={"branch_id": admin_login["home_branch_id"], "role_id": role_id},
        headers=_auth_header(admin_token),
    )
    assert grant_resp.status_code == 201

    bob_token = _login(identity_client, org_id, "bob", "bob-pass")["access_token"]
    forbidden_resp = identity_client.get("/api/identity/users", headers=_auth_header(bob_token))
    assert forbidden_resp.status_code == 403


def test_identity_user_search_and_filters(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-search")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")
    token = _login(identity_client, org_id, "admin", "admin-pass")["access_token"]

    for username, first_name, email, is_active in (
        ("jdoe", "John", "john@example.org", True),
        ("msmith", "Mary", "mary@example.org", True),
        ("jmary", "Joseph", "joseph@parish.org", False),
    ):
        response = identity_client.post(
            "/api/identity/users",
            json={
                "username": username,
                "password": "pw",
                "first_name": first_name,
                "email": email,
                "is_active": is_active,
            },
            headers=_auth_header(token),
        )
        assert response.status_code == 201

    by_name = identity_client.get(
        "/api/identity/users",
        params={"search": "MARY"},
        headers=_auth_header(token),
    )
    assert by_name.status_code == 200
    assert [item["username"] for item in by_name.json()] == ["jmary", "msmith"]

    by_email = identity_client.get(
        "/api/identity/users",
        params={"search": "parish"},
        headers=_auth_header(token),
    )
    assert [item["username"] for item in by_email.json()] == ["jmary"]

    active_only = identity_client.get(
        "/api/identity/users",
        params={"search": "mary", "is_active": "true"},
        headers=_auth_header(token),
    )
    assert [item["username"] for item in active_only.json()] == ["msmith"]


def test_identity_duplicate_username_conflict(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-dup")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")
    token = _login(identity_client, org_id, "admin", "admin-pass")["access_token"]

    first = identity_client.post(
        "/api/identity/users",
        json={"username": "peter", "password": "pw"},
        headers=_auth_header(token),
    )
    assert first.status_code == 201
    second = identity_client.post(
        "/api/identity/users",
        json={"username": "peter", "password": "pw"},
        headers=_auth_header(token),
    )
    assert second.status_code == 409


def test_identity_delete_organization_requires_empty(identity_client: TestClient) -> None:
    org_id = _create_organization(identity_client, "org-delete")
    _bootstrap_admin(identity_client, org_id, "admin", "admin-pass")
    token = _login(identity_client, org_id, "admin", "admin-pass")["access_token"]

    response = identity_client.delete(
        f"/api/identity/organizations/{org_id}",
        headers=_auth_header(token),
    )
    assert response.status_code == 409

    renamed = identity_client.patch(
        f"/api/identity/organizations/{org_id}",
        json={"name": "org-renamed"},
        headers=_auth_header(token),
    )
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "org-renamed"
