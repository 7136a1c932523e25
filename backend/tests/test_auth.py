# tests/test_auth.py — Authentication, tokens and credential tests
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

import auth as auth_module
from auth import (
    CredentialStore, TokenService, TEMP_PASSWORD_ALPHABET, MAX_LOGIN_ATTEMPTS, LOGIN_LOCKOUT_MINUTES,
)
from errors import InvalidInputError, TokenExpiredError, TokenInvalidError
from models import User, UserRole
from tests.conftest import get_auth_headers


def _transient_user(uid=7, role=UserRole.USER):
    return User(id=uid, first_name="T", last_name="U", email="t@x.com", role=role, is_active=True)


class TestCredentialStore:
    def test_hash_and_verify(self):
        store = CredentialStore(rounds=10)
        digest = store.hash_password("secret1")
        assert digest != "secret1"
        assert store.verify_password("secret1", digest)
        assert not store.verify_password("secret2", digest)

    def test_verify_tolerates_garbage_hash(self):
        assert not CredentialStore.verify_password("secret1", "not-a-bcrypt-hash")

    def test_password_policy(self):
        with pytest.raises(InvalidInputError):
            CredentialStore.validate_password("12345")
        assert CredentialStore.validate_password("123456") == "123456"

    def test_temporary_password_shape(self):
        pw = CredentialStore.generate_temporary_password()
        assert len(pw) == 12
        assert all(c in TEMP_PASSWORD_ALPHABET for c in pw)


class TestTokenService:
    tokens = TokenService("unit-test-signing-key-0123456789abcdef", expire_minutes=30)

    def test_claims(self):
        user = _transient_user(role=UserRole.ADMIN)
        payload = self.tokens.decode(self.tokens.issue(user))
        assert payload["sub"] == 7
        assert payload["email"] == "t@x.com"
        assert payload["role"] == "admin"

    def test_valid_at_29_minutes(self):
        issued = datetime.now(timezone.utc) - timedelta(minutes=29)
        payload = self.tokens.decode(self.tokens.issue(_transient_user(), issued_at=issued))
        assert payload["sub"] == 7

    def test_expired_at_31_minutes(self):
        issued = datetime.now(timezone.utc) - timedelta(minutes=31)
        token = self.tokens.issue(_transient_user(), issued_at=issued)
        with pytest.raises(TokenExpiredError):
            self.tokens.decode(token)

    def test_wrong_key_is_invalid(self):
        token = TokenService("another-key-entirely-0123456789abcdef").issue(_transient_user())
        with pytest.raises(TokenInvalidError):
            self.tokens.decode(token)

    def test_garbage_is_invalid(self):
        with pytest.raises(TokenInvalidError):
            self.tokens.decode("not.a.jwt")

    def test_missing_key_refused(self):
        with pytest.raises(ValueError):
            TokenService("")


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev",
            "password": "TestPass1!",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["access_token"]
        assert data["expires_in"] == 1800
        assert data["user"] == {
            "id": test_user.id,
            "first_name": "Tess",
            "last_name": "User",
            "email": "testuser@bugboard.dev",
            "role": "user",
        }
        assert "password_hash" not in res.text

    async def test_login_wrong_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev",
            "password": "WrongPass1!",
        })
        assert res.status_code == 401
        assert res.json()["error"] == "unauthorized"

    async def test_login_nonexistent_user(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@bugboard.dev",
            "password": "whatever1",
        })
        assert res.status_code == 401

    async def test_login_deactivated_account(self, client: AsyncClient, inactive_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "inactive@bugboard.dev",
            "password": "Inactive1!",
        })
        assert res.status_code == 401

    async def test_lockout_after_repeated_failures(self, client: AsyncClient, test_user):
        for _ in range(MAX_LOGIN_ATTEMPTS):
            res = await client.post("/api/v1/auth/login", json={
                "email": "testuser@bugboard.dev", "password": "WrongPass1!",
            })
            assert res.status_code == 401
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "TestPass1!",
        })
        assert res.status_code == 429

    async def test_clean_logins_leave_no_tracking_entry(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "TestPass1!",
        })
        assert res.status_code == 200
        assert auth_module._login_attempts == {}

    async def test_expired_attempts_are_dropped(self, client: AsyncClient, test_user):
        stale = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES + 1)
        auth_module._login_attempts["testuser@bugboard.dev"] = [stale] * MAX_LOGIN_ATTEMPTS
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "TestPass1!",
        })
        assert res.status_code == 200
        assert "testuser@bugboard.dev" not in auth_module._login_attempts

    async def test_tracker_sweeps_stale_emails_when_full(self, client: AsyncClient, monkeypatch):
        stale = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES + 1)
        auth_module._login_attempts.update({"old1@x.com": [stale], "old2@x.com": [stale]})
        monkeypatch.setattr(auth_module, "MAX_TRACKED_LOGIN_EMAILS", 2)
        res = await client.post("/api/v1/auth/login", json={
            "email": "ghost@bugboard.dev", "password": "whatever1",
        })
        assert res.status_code == 401
        assert list(auth_module._login_attempts) == ["ghost@bugboard.dev"]


@pytest.mark.asyncio
class TestProtectedRoutes:
    async def test_me(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["email"] == "testuser@bugboard.dev"

    async def test_missing_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code == 401

    async def test_invalid_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
        assert res.status_code == 401
        assert res.json()["error"] == "token_invalid"

    async def test_token_of_deleted_user(self, client: AsyncClient):
        headers = get_auth_headers(_transient_user(uid=4242))
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401
        assert res.json()["error"] == "user_not_found"

    async def test_deactivation_applies_to_live_token(self, client: AsyncClient, admin_user, test_user):
        headers = get_auth_headers(test_user)
        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 200
        res = await client.delete(f"/api/v1/users/{test_user.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 401


@pytest.mark.asyncio
class TestPasswords:
    async def test_change_password(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": "TestPass1!", "new_password": "BrandNew2@",
        }, headers=headers)
        assert res.status_code == 200
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "BrandNew2@",
        })
        assert res.status_code == 200

    async def test_change_password_wrong_current(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": "nope-nope", "new_password": "BrandNew2@",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_change_password_too_short(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": "TestPass1!", "new_password": "abc",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400
        assert res.json()["error"] == "validation_error"

    async def test_recover_password_mails_working_temporary(self, client: AsyncClient, test_user, mailer):
        res = await client.post("/api/v1/auth/recover-password", json={"email": "testuser@bugboard.dev"})
        assert res.status_code == 200
        assert len(mailer.sent) == 1
        body = mailer.sent[0]["body"]
        temporary = [line for line in body.splitlines() if len(line) == 12][0]

        old = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "TestPass1!",
        })
        assert old.status_code == 401
        new = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": temporary,
        })
        assert new.status_code == 200

    async def test_recover_unknown_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/recover-password", json={"email": "ghost@bugboard.dev"})
        assert res.status_code == 404

    async def test_recover_rolls_back_when_mail_fails(self, client: AsyncClient, test_user, mailer):
        mailer.fail = True
        res = await client.post("/api/v1/auth/recover-password", json={"email": "testuser@bugboard.dev"})
        assert res.status_code == 500
        assert res.json()["detail"] == "Internal server error"
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@bugboard.dev", "password": "TestPass1!",
        })
        assert res.status_code == 200
