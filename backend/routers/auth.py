# routers/auth.py — Login, profile and password endpoints
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import (
    CredentialStore, TokenService, authenticate_user, get_current_user,
    get_credential_store, get_token_service,
)
from database import get_db_session
from errors import InvalidInputError, NotFoundError, InternalError
from mailer import MailDeliveryError, get_mailer, recovery_mail
from models import User, AuditEventType, UserRole, utcnow
from routers.users import UserOut, user_to_out

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
logger = logging.getLogger("bugboard.auth")


# --- Schemas ---

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginUser(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    role: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: LoginUser


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class PasswordRecovery(BaseModel):
    email: EmailStr


# --- Endpoints ---

@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
):
    """Authenticate and receive an access token"""
    user = await authenticate_user(credentials.email, credentials.password, db, store)

    record_audit(db, AuditEventType.USER_LOGIN, user, "user", user.id, request=request)
    await db.commit()

    return TokenResponse(
        access_token=tokens.issue(user),
        expires_in=tokens.expires_in,
        user=LoginUser(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            role=user.role.value if isinstance(user.role, UserRole) else user.role,
        ),
    )


@router.get("/me", response_model=UserOut)
async def get_current_user_info(user: User = Depends(get_current_user)):
    """Get current authenticated user information"""
    return user_to_out(user)


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    store: CredentialStore = Depends(get_credential_store),
):
    """Change current user's password"""
    if not store.verify_password(password_data.current_password, user.password_hash):
        raise InvalidInputError("Current password is incorrect")
    new_password = store.validate_password(password_data.new_password)

    user.password_hash = store.hash_password(new_password)
    user.updated_at = utcnow()
    record_audit(db, AuditEventType.PASSWORD_CHANGED, user, "user", user.id, request=request)
    await db.commit()

    return {"status": "password_changed"}


@router.post("/recover-password")
async def recover_password(
    recovery: PasswordRecovery,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    store: CredentialStore = Depends(get_credential_store),
    mailer=Depends(get_mailer),
):
    """Replace the password with a temporary one and mail it to the owner"""
    email = recovery.email.strip().lower()
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("No account with this email")

    temporary = store.generate_temporary_password()
    user.password_hash = store.hash_password(temporary)
    user.updated_at = utcnow()
    record_audit(db, AuditEventType.PASSWORD_RECOVERED, user, "user", user.id, request=request)
    await db.flush()

    # The temporary password only exists in this mail; without it the reset is useless
    mail = recovery_mail(user.first_name, user.email, temporary)
    try:
        await mailer.send(mail.to, mail.subject, mail.body)
    except MailDeliveryError as exc:
        user_id = user.id
        await db.rollback()
        logger.error(f"Password recovery mail failed for user {user_id}: {exc}")
        raise InternalError(str(exc))

    await db.commit()
    return {"status": "temporary_password_sent", "email": user.email}
