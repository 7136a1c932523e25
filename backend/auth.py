# auth.py — Authentication for BugBoard
# Features:
# - Stateless HS256 JWT (sub, email, role, iat, exp), 30 minute lifetime
# - Every request re-reads the user, so role/active changes apply immediately
# - bcrypt password hashing with configurable cost
# - Temporary passwords for the recovery flow
# - Brute force protection on login

import secrets
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db_session
from errors import (
    InvalidInputError, ForbiddenError, UnauthorizedError, TokenExpiredError,
    TokenInvalidError, TokenUserNotFoundError, TooManyAttemptsError,
)
from models import User, UserRole

logger = logging.getLogger("bugboard.auth")

# ============================================================
# CONFIGURATION
# ============================================================

MIN_PASSWORD_LENGTH = 6
# bcrypt ignores everything past 72 bytes
MAX_PASSWORD_BYTES = 72
TEMP_PASSWORD_LENGTH = 12
TEMP_PASSWORD_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*"
)
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15
MAX_TRACKED_LOGIN_EMAILS = 10000

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker, per process
_login_attempts: Dict[str, list] = {}


# ============================================================
# CREDENTIAL STORE
# ============================================================

class CredentialStore:
    """Password hashing, verification and temporary password generation"""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False

    @staticmethod
    def validate_password(password: Optional[str]) -> str:
        if password is None or len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInputError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidInputError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return password

    @staticmethod
    def generate_temporary_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
        return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(length))


# ============================================================
# TOKEN SERVICE
# ============================================================

class TokenService:
    """Issues and decodes signed session tokens.

    The signing key comes from startup configuration; nothing here is lazily
    initialised. Tokens cannot be revoked, expiry is the only invalidation.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 30):
        if not secret_key:
            raise ValueError("TokenService requires a signing key")
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    @property
    def expires_in(self) -> int:
        return self.expire_minutes * 60

    def issue(self, user: User, issued_at: Optional[datetime] = None) -> str:
        now = issued_at or datetime.now(timezone.utc)
        role = user.role.value if isinstance(user.role, UserRole) else user.role
        to_encode = {
            "sub": str(user.id),
            "email": user.email,
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=self.expire_minutes),
            "type": "access",
        }
        return jwt.encode(to_encode, self._secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise TokenExpiredError()
        except JWTError:
            raise TokenInvalidError()

        if payload.get("type") != "access":
            raise TokenInvalidError("Invalid token type")
        try:
            payload["sub"] = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise TokenInvalidError()
        return payload

    async def verify(self, token: str, db: AsyncSession) -> User:
        """Decode the token and re-fetch the user it names"""
        payload = self.decode(token)
        user = await db.get(User, payload["sub"])
        if user is None:
            raise TokenUserNotFoundError()
        return user


@lru_cache
def get_credential_store() -> CredentialStore:
    return CredentialStore(rounds=get_settings().bcrypt_rounds)


@lru_cache
def get_token_service() -> TokenService:
    settings: Settings = get_settings()
    return TokenService(
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )


# ============================================================
# LOGIN
# ============================================================

def _check_brute_force(email: str) -> None:
    """Check if login attempts exceed threshold"""
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
    # Clean old attempts; emails with none left are dropped
    recent = [t for t in _login_attempts.get(email, []) if t > cutoff]
    if not recent:
        _login_attempts.pop(email, None)
        return
    _login_attempts[email] = recent
    if len(recent) >= MAX_LOGIN_ATTEMPTS:
        logger.warning(f"Login locked out for {email}")
        raise TooManyAttemptsError(
            f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes."
        )


def _record_failed_attempt(email: str) -> None:
    now = datetime.now(timezone.utc)
    if email not in _login_attempts and len(_login_attempts) >= MAX_TRACKED_LOGIN_EMAILS:
        _prune_stale_attempts(now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES))
    _login_attempts.setdefault(email, []).append(now)


def _prune_stale_attempts(cutoff: datetime) -> None:
    for key in list(_login_attempts):
        if not any(t > cutoff for t in _login_attempts[key]):
            del _login_attempts[key]


def _clear_attempts(email: str) -> None:
    _login_attempts.pop(email, None)


async def authenticate_user(
    email: str, password: str, db: AsyncSession, credentials: CredentialStore
) -> User:
    """Resolve an email/password pair to an active user or raise Unauthorized"""
    key = email.strip().lower()
    _check_brute_force(key)

    result = await db.execute(select(User).where(User.email == key))
    user = result.scalar_one_or_none()

    if not user or not credentials.verify_password(password, user.password_hash):
        _record_failed_attempt(key)
        logger.info(f"Failed login for {key}")
        raise UnauthorizedError("Invalid credentials")

    if not user.is_active:
        raise UnauthorizedError("Account is deactivated")

    _clear_attempts(key)
    return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
    tokens: TokenService = Depends(get_token_service),
) -> User:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Not authenticated")

    user = await tokens.verify(credentials.credentials, db)
    if not user.is_active:
        raise TokenUserNotFoundError()
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise ForbiddenError("Admin access required")
    return user
