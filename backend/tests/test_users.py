# tests/test_users.py — User directory router tests
import pytest
from httpx import AsyncClient
from sqlalchemy import select, func

from models import AuditLog, AuditEventType
from tests.conftest import get_auth_headers


NEW_USER = {
    "first_name": "Nina",
    "last_name": "New",
    "email": "nina@bugboard.dev",
    "password": "Welcome1!",
    "role": "user",
}


@pytest.mark.asyncio
async def test_admin_creates_user(client: AsyncClient, admin_user, mailer):
    """Admin creates an account; creator is the admin and credentials are mailed"""
    resp = await client.post("/api/v1/users", json=NEW_USER, headers=get_auth_headers(admin_user))
    assert resp.status_code == 201
    data = resp.json()
    assert data["email"] == "nina@bugboard.dev"
    assert data["role"] == "user"
    assert data["is_active"] is True
    assert data["creator_id"] == admin_user.id
    assert "password" not in data and "password_hash" not in data
    assert mailer.sent[0]["to"] == "nina@bugboard.dev"
    assert "Welcome1!" in mailer.sent[0]["body"]


@pytest.mark.asyncio
async def test_create_user_survives_mail_failure(client: AsyncClient, admin_user, mailer):
    """A dead mail relay does not block account creation"""
    mailer.fail = True
    resp = await client.post("/api/v1/users", json=NEW_USER, headers=get_auth_headers(admin_user))
    assert resp.status_code == 201
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_create_user_duplicate_email(client: AsyncClient, admin_user, test_user):
    payload = dict(NEW_USER, email="testuser@bugboard.dev")
    resp = await client.post("/api/v1/users", json=payload, headers=get_auth_headers(admin_user))
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_create_user_rejects_short_password(client: AsyncClient, admin_user):
    payload = dict(NEW_USER, password="12345")
    resp = await client.post("/api/v1/users", json=payload, headers=get_auth_headers(admin_user))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_user_rejects_unknown_role(client: AsyncClient, admin_user):
    payload = dict(NEW_USER, role="superuser")
    resp = await client.post("/api/v1/users", json=payload, headers=get_auth_headers(admin_user))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_regular_user_cannot_create_users(client: AsyncClient, test_user):
    resp = await client.post("/api/v1/users", json=NEW_USER, headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_users_as_admin(client: AsyncClient, admin_user, test_user, inactive_user):
    """Admin sees every account, active or not"""
    resp = await client.get("/api/v1/users", headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    emails = {u["email"] for u in resp.json()}
    assert {"admin@bugboard.dev", "testuser@bugboard.dev", "inactive@bugboard.dev"} <= emails


@pytest.mark.asyncio
async def test_list_users_forbidden_for_regular_user(client: AsyncClient, test_user):
    resp = await client.get("/api/v1/users", headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_active_users(client: AsyncClient, test_user, inactive_user):
    resp = await client.get("/api/v1/users/active", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    emails = {u["email"] for u in resp.json()}
    assert "testuser@bugboard.dev" in emails
    assert "inactive@bugboard.dev" not in emails


@pytest.mark.asyncio
async def test_get_user_not_found(client: AsyncClient, admin_user):
    resp = await client.get("/api/v1/users/9999", headers=get_auth_headers(admin_user))
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_update_user_names_and_role(client: AsyncClient, admin_user, test_user):
    resp = await client.patch(
        f"/api/v1/users/{test_user.id}",
        json={"first_name": "Tessa", "role": "admin"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["first_name"] == "Tessa"
    assert data["last_name"] == "User"
    assert data["role"] == "admin"


@pytest.mark.asyncio
async def test_promote_user(client: AsyncClient, admin_user, test_user):
    resp = await client.patch(
        f"/api/v1/users/{test_user.id}/role",
        json={"role": "admin"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    assert resp.json() == {"user_id": test_user.id, "old_role": "user", "new_role": "admin"}


@pytest.mark.asyncio
async def test_admin_cannot_be_demoted_by_another_admin(client: AsyncClient, admin_user, second_admin):
    resp = await client.patch(
        f"/api/v1/users/{second_admin.id}/role",
        json={"role": "user"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 403
    resp = await client.patch(
        f"/api/v1/users/{second_admin.id}",
        json={"role": "user"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_cannot_demote_self(client: AsyncClient, admin_user):
    resp = await client.patch(
        f"/api/v1/users/{admin_user.id}/role",
        json={"role": "user"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_promoted_admin_cannot_be_demoted(client: AsyncClient, admin_user, test_user):
    headers = get_auth_headers(admin_user)
    await client.patch(f"/api/v1/users/{test_user.id}/role", json={"role": "admin"}, headers=headers)
    resp = await client.patch(f"/api/v1/users/{test_user.id}/role", json={"role": "user"}, headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_cannot_deactivate_self(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    resp = await client.delete(f"/api/v1/users/{admin_user.id}", headers=headers)
    assert resp.status_code == 403
    resp = await client.patch(
        f"/api/v1/users/{admin_user.id}/status", json={"is_active": False}, headers=headers,
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_deactivate_and_reactivate_user(client: AsyncClient, admin_user, test_user):
    """Admin can deactivate a user (soft delete) and bring them back"""
    headers = get_auth_headers(admin_user)
    resp = await client.delete(f"/api/v1/users/{test_user.id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "deactivated"

    resp = await client.get(f"/api/v1/users/{test_user.id}", headers=headers)
    assert resp.json()["is_active"] is False

    resp = await client.post(f"/api/v1/users/{test_user.id}/reactivate", headers=headers)
    assert resp.status_code == 200
    resp = await client.get(f"/api/v1/users/{test_user.id}", headers=headers)
    assert resp.json()["is_active"] is True


@pytest.mark.asyncio
async def test_set_status(client: AsyncClient, admin_user, test_user):
    resp = await client.patch(
        f"/api/v1/users/{test_user.id}/status",
        json={"is_active": False},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False


@pytest.mark.asyncio
async def test_regular_user_cannot_deactivate_others(client: AsyncClient, test_user, other_user):
    resp = await client.delete(f"/api/v1/users/{other_user.id}", headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_duplicate_email_caught_by_constraint(client: AsyncClient, admin_user, monkeypatch):
    headers = get_auth_headers(admin_user)
    assert (await client.post("/api/v1/users", json=NEW_USER, headers=headers)).status_code == 201

    async def never_taken(db, email):
        return False

    monkeypatch.setattr("routers.users._email_taken", never_taken)
    resp = await client.post("/api/v1/users", json=NEW_USER, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


async def _user_update_events(db_session) -> int:
    result = await db_session.execute(
        select(func.count(AuditLog.id)).where(AuditLog.event_type == AuditEventType.USER_UPDATED)
    )
    return result.scalar()


@pytest.mark.asyncio
async def test_unchanged_update_writes_nothing(client: AsyncClient, db_session, admin_user, test_user):
    headers = get_auth_headers(admin_user)
    url = f"/api/v1/users/{test_user.id}"

    resp = await client.patch(url, json={"first_name": "Tess", "role": "user"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["first_name"] == "Tess"
    assert await _user_update_events(db_session) == 0

    resp = await client.patch(url, json={"last_name": "Tester"}, headers=headers)
    assert resp.json()["last_name"] == "Tester"
    assert await _user_update_events(db_session) == 1
