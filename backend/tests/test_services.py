# tests/test_services.py — Blob store, mailer, bootstrap and config
import smtplib

import pytest
from sqlalchemy import select

from auth import CredentialStore
from config import Settings, load_settings
from mailer import LogMailer, SmtpMailer, build_mailer, send_best_effort, welcome_mail
from models import User, UserRole
from seed import ensure_bootstrap_admin
from storage import BlobNotFound, LocalBlobStore


@pytest.mark.asyncio
class TestLocalBlobStore:
    async def test_put_get_delete(self, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        locator = await store.put(b"payload")
        assert await store.get(locator) == b"payload"
        assert await store.exists(locator)

        await store.delete(locator)
        assert not await store.exists(locator)
        with pytest.raises(BlobNotFound):
            await store.get(locator)

    async def test_delete_missing_is_quiet(self, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        await store.delete("0" * 32)

    async def test_rejects_path_like_locators(self, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        with pytest.raises(BlobNotFound):
            await store.get("../../etc/passwd")


@pytest.mark.asyncio
class TestMailer:
    async def test_best_effort_swallows_delivery_failure(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "go away")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        mailer = SmtpMailer(host="mail.invalid", port=2525)
        assert await send_best_effort(mailer, "a@x.com", "hi", "body") is False

    async def test_log_mailer_reports_sent(self):
        assert await send_best_effort(LogMailer(), "a@x.com", "hi", "body") is True

    def test_build_mailer_picks_smtp_only_when_configured(self):
        assert isinstance(build_mailer(Settings()), LogMailer)
        assert isinstance(build_mailer(Settings(smtp_host="smtp.example.com")), SmtpMailer)

    def test_welcome_mail_carries_credentials(self):
        mail = welcome_mail("Nina", "nina@x.com", "Welcome1!")
        assert mail.to == "nina@x.com"
        assert "Welcome1!" in mail.body


@pytest.mark.asyncio
class TestBootstrap:
    async def test_creates_self_referencing_admin_once(self, db_session):
        settings = Settings(bootstrap_admin_email="Root@BugBoard.dev", bootstrap_admin_password="rootpass1")
        credentials = CredentialStore(rounds=10)

        admin = await ensure_bootstrap_admin(db_session, settings, credentials)
        assert admin is not None
        assert admin.role == UserRole.ADMIN
        assert admin.email == "root@bugboard.dev"
        assert admin.creator_id == admin.id
        assert credentials.verify_password("rootpass1", admin.password_hash)

        assert await ensure_bootstrap_admin(db_session, settings, credentials) is None
        result = await db_session.execute(select(User))
        assert len(result.scalars().all()) == 1

    async def test_skipped_when_users_exist(self, db_session, test_user):
        settings = Settings(bootstrap_admin_password="rootpass1")
        assert await ensure_bootstrap_admin(db_session, settings, CredentialStore(rounds=10)) is None


class TestConfig:
    def test_bcrypt_rounds_floor(self, monkeypatch):
        monkeypatch.setenv("BCRYPT_ROUNDS", "4")
        assert load_settings().bcrypt_rounds == 10

    def test_ephemeral_secret_when_unset(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
        first, second = load_settings(), load_settings()
        assert first.jwt_secret_key and first.jwt_secret_key != second.jwt_secret_key

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MAX_ATTACHMENT_BYTES", raising=False)
        monkeypatch.delenv("ACCESS_TOKEN_EXPIRE_MINUTES", raising=False)
        settings = load_settings()
        assert settings.max_attachment_bytes == 10485760
        assert settings.access_token_expire_minutes == 30
        assert "application/pdf" in settings.allowed_content_types
