from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from churchhub import main as app_main
from churchhub.domain.models import AuditLog, EventRecord, UserBranchAccess
from churchhub.infra import audit, db, events


@pytest.fixture()
def access_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "branch_access_test.db"
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


def _setup_org(client: TestClient, name: str) -> tuple[str, str, str]:
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


def _create_branch(client: TestClient, token: str, name: str, *, is_active: bool = True) -> str:
    response = client.post(
        "/api/branches",
        json={"name": name, "location": f"{name} street", "region": "east", "is_active": is_active},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_user(client: TestClient, token: str, username: str) -> str:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": f"{username}-pass"},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_role_from_template(client: TestClient, token: str, template_key: str) -> str:
    response = client.post(
        "/api/security/roles:from-template",
        json={"template_key": template_key},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _grant(
    client: TestClient,
    token: str,
    user_id: str,
    branch_id: str,
    role_id: str,
    *,
    is_home_branch: bool = False,
) -> dict:
    response = client.post(
        f"/api/identity/users/{user_id}/branch-access",
        json={"branch_id": branch_id, "role_id": role_id, "is_home_branch": is_home_branch},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()


def _list_access(client: TestClient, token: str, user_id: str) -> list[dict]:
    response = client.get(f"/api/identity/users/{user_id}/branch-access", headers=_auth_header(token))
    assert response.status_code == 200
    return response.json()


def test_first_grant_becomes_home_and_home_moves(access_client: TestClient) -> None:
    _, token, main_branch = _setup_org(access_client, "org-home")
    north = _create_branch(access_client, token, "North")
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "martha")

    first = _grant(access_client, token, user_id, north, staff_role)
    assert first["is_home_branch"] is True

    second = _grant(access_client, token, user_id, main_branch, staff_role, is_home_branch=True)
    assert second["is_home_branch"] is True

    rows = _list_access(access_client, token, user_id)
    assert [item["branch_id"] for item in rows] == [main_branch, north]
    assert [item["is_home_branch"] for item in rows] == [True, False]

    home_resp = access_client.post(
        f"/api/identity/users/{user_id}/branch-access/{north}/home",
        headers=_auth_header(token),
    )
    assert home_resp.status_code == 200
    assert [(item["branch_id"], item["is_home_branch"]) for item in home_resp.json()] == [
        (north, True),
        (main_branch, False),
    ]

    with Session(db.get_engine()) as session:
        granted = session.exec(
            select(EventRecord).where(EventRecord.event_type == "branch_access.granted")
        ).all()
    assert len(granted) == 2


def test_grant_rejects_duplicates_and_inactive_branches(access_client: TestClient) -> None:
    _, token, main_branch = _setup_org(access_client, "org-grant-errors")
    closed = _create_branch(access_client, token, "Closed Mission", is_active=False)
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "thomas")

    _grant(access_client, token, user_id, main_branch, staff_role)

    duplicate = access_client.post(
        f"/api/identity/users/{user_id}/branch-access",
        json={"branch_id": main_branch, "role_id": staff_role},
        headers=_auth_header(token),
    )
    assert duplicate.status_code == 409

    inactive = access_client.post(
        f"/api/identity/users/{user_id}/branch-access",
        json={"branch_id": closed, "role_id": staff_role},
        headers=_auth_header(token),
    )
    assert inactive.status_code == 409

    unknown_role = access_client.post(
        f"/api/identity/users/{user_id}/branch-access",
        json={"branch_id": main_branch, "role_id": "missing-role"},
        headers=_auth_header(token),
    )
    assert unknown_role.status_code == 404


def test_replace_branch_access_validations(access_client: TestClient) -> None:
    _, token, main_branch = _setup_org(access_client, "org-replace")
    north = _create_branch(access_client, token, "North")
    south = _create_branch(access_client, token, "South")
    staff_role = _create_role_from_template(access_client, token, "staff")
    pastor_role = _create_role_from_template(access_client, token, "pastor")
    user_id = _create_user(access_client, token, "luke")

    empty = access_client.put(
        f"/api/identity/users/{user_id}/branch-access",
        json={"entries": []},
        headers=_auth_header(token),
    )
    assert empty.status_code == 422

    two_homes = access_client.put(
        f"/api/identity/users/{user_id}/branch-access",
        json={
            "entries": [
                {"branch_id": north, "role_id": staff_role, "is_home_branch": True},
                {"branch_id": south, "role_id": staff_role, "is_home_branch": True},
            ]
        },
        headers=_auth_header(token),
    )
    assert two_homes.status_code == 422

    duplicate = access_client.put(
        f"/api/identity/users/{user_id}/branch-access",
        json={
            "entries": [
                {"branch_id": north, "role_id": staff_role},
                {"branch_id": north, "role_id": pastor_role},
            ]
        },
        headers=_auth_header(token),
    )
    assert duplicate.status_code == 422

    replaced = access_client.put(
        f"/api/identity/users/{user_id}/branch-access",
        json={
            "entries": [
                {"branch_id": south, "role_id": staff_role},
                {"branch_id": north, "role_id": pastor_role},
            ]
        },
        headers=_auth_header(token),
    )
    assert replaced.status_code == 200
    body = replaced.json()
    assert body[0]["branch_id"] == south
    assert body[0]["is_home_branch"] is True
    assert {item["branch_id"]: item["role_id"] for item in body} == {south: staff_role, north: pastor_role}

    swapped = access_client.put(
        f"/api/identity/users/{user_id}/branch-access",
        json={
            "entries": [
                {"branch_id": main_branch, "role_id": staff_role},
                {"branch_id": north, "role_id": staff_role, "is_home_branch": True},
            ]
        },
        headers=_auth_header(token),
    )
    assert swapped.status_code == 200
    rows = _list_access(access_client, token, user_id)
    assert {item["branch_id"] for item in rows} == {main_branch, north}
    assert [item["branch_id"] for item in rows if item["is_home_branch"]] == [north]


def test_revoke_last_access_conflicts_and_home_is_promoted(access_client: TestClient) -> None:
    org_id, token, main_branch = _setup_org(access_client, "org-revoke")
    north = _create_branch(access_client, token, "North")
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "john")

    _grant(access_client, token, user_id, main_branch, staff_role)
    _grant(access_client, token, user_id, north, staff_role)

    revoked = access_client.delete(
        f"/api/identity/users/{user_id}/branch-access/{main_branch}",
        headers=_auth_header(token),
    )
    assert revoked.status_code == 200
    remaining = revoked.json()
    assert len(remaining) == 1
    assert remaining[0]["branch_id"] == north
    assert remaining[0]["is_home_branch"] is True

    last = access_client.delete(
        f"/api/identity/users/{user_id}/branch-access/{north}",
        headers=_auth_header(token),
    )
    assert last.status_code == 409

    missing = access_client.delete(
        f"/api/identity/users/{user_id}/branch-access/{main_branch}",
        headers=_auth_header(token),
    )
    assert missing.status_code == 404

    with Session(db.get_engine()) as session:
        rows = session.exec(
            select(AuditLog)
            .where(AuditLog.organization_id == org_id)
            .where(AuditLog.action == "revoke_access")
        ).all()
    assert sorted(item.status_code for item in rows) == [200, 404, 409]
    success = next(item for item in rows if item.status_code == 200)
    assert success.branch_id == main_branch
    assert success.resource == "user"
    assert success.detail["what"]["target_user_id"] == user_id
    assert success.detail["result"]["outcome"] == "success"


def test_effective_permissions_are_branch_scoped(access_client: TestClient) -> None:
    org_id, token, main_branch = _setup_org(access_client, "org-effective")
    north = _create_branch(access_client, token, "North")
    leader_role = _create_role_from_template(access_client, token, "ministry_leader")
    volunteer_role = _create_role_from_template(access_client, token, "volunteer")
    user_id = _create_user(access_client, token, "anna")

    _grant(access_client, token, user_id, north, leader_role)
    _grant(access_client, token, user_id, main_branch, volunteer_role)

    response = access_client.get(
        f"/api/identity/users/{user_id}/effective-permissions",
        headers=_auth_header(token),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user_id
    assert body["home_branch_id"] == north
    assert "groups.manage" in body["branch_permissions"][north]
    assert "groups.manage" not in body["branch_permissions"][main_branch]
    assert "groups.manage" in body["permissions"]
    assert body["branch_permissions"][main_branch] == ["events.attendance", "events.view"]

    login = _login(access_client, org_id, "anna", "anna-pass")
    assert login["home_branch_id"] == north
    assert login["branch_permissions"] == body["branch_permissions"]


def test_inactive_branch_drops_out_of_permissions(access_client: TestClient) -> None:
    _, token, main_branch = _setup_org(access_client, "org-inactive-branch")
    north = _create_branch(access_client, token, "North")
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "james")

    _grant(access_client, token, user_id, main_branch, staff_role)
    _grant(access_client, token, user_id, north, staff_role)

    closed = access_client.patch(
        f"/api/branches/{north}",
        json={"is_active": False},
        headers=_auth_header(token),
    )
    assert closed.status_code == 200
    assert closed.json()["is_active"] is False

    response = access_client.get(
        f"/api/identity/users/{user_id}/effective-permissions",
        headers=_auth_header(token),
    )
    assert set(response.json()["branch_permissions"]) == {main_branch}


def test_branch_scoped_staff_management(access_client: TestClient) -> None:
    org_id, token, main_branch = _setup_org(access_client, "org-scoped")
    north = _create_branch(access_client, token, "North")
    admin_role = _create_role_from_template(access_client, token, "branch_admin")
    staff_role = _create_role_from_template(access_client, token, "staff")

    manager_id = _create_user(access_client, token, "paul")
    _grant(access_client, token, manager_id, north, admin_role)
    target_id = _create_user(access_client, token, "silas")
    _grant(access_client, token, target_id, main_branch, staff_role)

    manager_token = _login(access_client, org_id, "paul", "paul-pass")["access_token"]

    grant_main = access_client.post(
        f"/api/identity/users/{target_id}/branch-access",
        json={"branch_id": main_branch, "role_id": admin_role},
        headers=_auth_header(manager_token),
    )
    assert grant_main.status_code == 403

    grant_north = access_client.post(
        f"/api/identity/users/{target_id}/branch-access",
        json={"branch_id": north, "role_id": staff_role},
        headers=_auth_header(manager_token),
    )
    assert grant_north.status_code == 201

    change_main = access_client.patch(
        f"/api/identity/users/{target_id}/branch-access/{main_branch}",
        json={"role_id": admin_role},
        headers=_auth_header(manager_token),
    )
    assert change_main.status_code == 403

    change_north = access_client.patch(
        f"/api/identity/users/{target_id}/branch-access/{north}",
        json={"role_id": admin_role},
        headers=_auth_header(manager_token),
    )
    assert change_north.status_code == 200
    assert change_north.json()["role_id"] == admin_role

    north_staff = access_client.get(f"/api/branches/{north}/users", headers=_auth_header(manager_token))
    assert north_staff.status_code == 200
    assert {item["user_id"] for item in north_staff.json()} == {manager_id, target_id}

    main_staff = access_client.get(f"/api/branches/{main_branch}/users", headers=_auth_header(manager_token))
    assert main_staff.status_code == 403

    replace_forbidden = access_client.put(
        f"/api/identity/users/{target_id}/branch-access",
        json={"entries": [{"branch_id": north, "role_id": staff_role}]},
        headers=_auth_header(manager_token),
    )
    assert replace_forbidden.status_code == 403


def test_delete_branch_rehomes_users(access_client: TestClient) -> None:
    _, token, main_branch = _setup_org(access_client, "org-delete-branch")
    north = _create_branch(access_client, token, "North")
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "mark")

    _grant(access_client, token, user_id, north, staff_role)
    _grant(access_client, token, user_id, main_branch, staff_role)

    deleted = access_client.delete(f"/api/branches/{north}", headers=_auth_header(token))
    assert deleted.status_code == 204

    rows = _list_access(access_client, token, user_id)
    assert [(item["branch_id"], item["is_home_branch"]) for item in rows] == [(main_branch, True)]

    gone = access_client.get(f"/api/branches/{north}", headers=_auth_header(token))
    assert gone.status_code == 404


def test_single_home_branch_enforced_by_database(access_client: TestClient) -> None:
    org_id, token, main_branch = _setup_org(access_client, "org-home-index")
    north = _create_branch(access_client, token, "North")
    staff_role = _create_role_from_template(access_client, token, "staff")
    user_id = _create_user(access_client, token, "timothy")
    _grant(access_client, token, user_id, main_branch, staff_role)

    with Session(db.get_engine(), expire_on_commit=False) as session:
        session.add(
            UserBranchAccess(
                organization_id=org_id,
                user_id=user_id,
                branch_id=north,
                role_id=staff_role,
                is_home_branch=True,
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        session.add(
            UserBranchAccess(
                organization_id=org_id,
                user_id=user_id,
                branch_id=north,
                role_id=staff_role,
                is_home_branch=False,
            )
        )
        session.commit()


def test_branch_listing_filters(access_client: TestClient) -> None:
    _, token, _ = _setup_org(access_client, "org-branch-list")
    _create_branch(access_client, token, "North")
    _create_branch(access_client, token, "Old Town", is_active=False)

    everything = access_client.get("/api/branches", headers=_auth_header(token))
    assert everything.status_code == 200
    assert [item["name"] for item in everything.json()] == ["Main Campus", "North", "Old Town"]

    active_east = access_client.get(
        "/api/branches",
        params={"region": "east", "is_active": "true"},
        headers=_auth_header(token),
    )
    assert [item["name"] for item in active_east.json()] == ["North"]

    duplicate = access_client.post(
        "/api/branches",
        json={"name": "North"},
        headers=_auth_header(token),
    )
    assert duplicate.status_code == 409
