# routers/users.py — User directory: admin-managed accounts, soft deactivation
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import CredentialStore, get_current_user, get_credential_store, require_admin
from database import get_db_session, commit_or_conflict, flush_or_conflict
from errors import NotFoundError, ConflictError, InvalidInputError
from issue_lifecycle import parse_role, parse_or_reject
from mailer import get_mailer, send_best_effort, welcome_mail
from models import User, AuditEventType, UserRole, isoformat_utc, utcnow
from permissions import can_manage_user, can_change_role, require

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    role: str
    is_active: bool
    creator_id: Optional[int] = None
    created_at: str


class UserCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str
    role: str = "user"


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str = Field(..., description="One of: admin, user")


class StatusUpdate(BaseModel):
    is_active: bool


# --- Helpers ---

def user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        first_name=u.first_name,
        last_name=u.last_name,
        email=u.email,
        role=u.role.value if isinstance(u.role, UserRole) else u.role,
        is_active=u.is_active,
        creator_id=u.creator_id,
        created_at=isoformat_utc(u.created_at) or "",
    )


async def get_user_or_404(db: AsyncSession, user_id: int) -> User:
    target = await db.get(User, user_id)
    if not target:
        raise NotFoundError(f"User {user_id} not found")
    return target


async def _email_taken(db: AsyncSession, email: str) -> bool:
    result = await db.execute(select(User.id).where(User.email == email).limit(1))
    return result.scalar_one_or_none() is not None


def _require_name(value: str, field: str) -> str:
    if not value or not value.strip():
        raise InvalidInputError(f"{field} must not be blank")
    return value.strip()


def _set_role(actor: User, target: User, raw_role: str) -> Optional[tuple]:
    new_role = parse_or_reject(parse_role, raw_role, "role")
    require(
        can_change_role(actor, target, new_role),
        "Cannot change this user's role",
    )
    if new_role == target.role:
        return None
    old_role = target.role
    target.role = new_role
    return old_role, new_role


def _set_active(actor: User, target: User, active: bool) -> bool:
    require(can_manage_user(actor, target), "Cannot change the status of this account")
    if target.is_active == active:
        return False
    target.is_active = active
    target.updated_at = utcnow()
    return True


# --- Endpoints ---

@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    store: CredentialStore = Depends(get_credential_store),
    mailer=Depends(get_mailer),
):
    """Create an account (admin only) and mail the credentials to its owner"""
    email = data.email.strip().lower()
    role = parse_or_reject(parse_role, data.role, "role")
    password = store.validate_password(data.password)

    if await _email_taken(db, email):
        raise ConflictError(f"User with email {email} already exists")

    new_user = User(
        first_name=_require_name(data.first_name, "first_name"),
        last_name=_require_name(data.last_name, "last_name"),
        email=email,
        password_hash=store.hash_password(password),
        role=role,
        is_active=True,
        creator_id=current_user.id,
    )
    db.add(new_user)
    await flush_or_conflict(db, f"User with email {email} already exists")
    record_audit(
        db, AuditEventType.USER_CREATED, current_user, "user", new_user.id,
        {"email": email, "role": role.value}, request,
    )
    await commit_or_conflict(db, f"User with email {email} already exists")

    mail = welcome_mail(new_user.first_name, new_user.email, password)
    await send_best_effort(mailer, mail.to, mail.subject, mail.body)

    return user_to_out(new_user)


@router.get("", response_model=List[UserOut])
async def list_users(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """List all users, active and deactivated"""
    result = await db.execute(select(User).order_by(User.id))
    return [user_to_out(u) for u in result.scalars().all()]


@router.get("/active", response_model=List[UserOut])
async def list_active_users(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List active users (assignee pickers)"""
    result = await db.execute(select(User).where(User.is_active == True).order_by(User.id))
    return [user_to_out(u) for u in result.scalars().all()]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user"""
    return user_to_out(await get_user_or_404(db, user_id))


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: int,
    update: UserUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Update name and role (admin only)"""
    target = await get_user_or_404(db, user_id)

    changed = []
    role_change = None
    if update.role is not None:
        role_change = _set_role(current_user, target, update.role)
        if role_change:
            changed.append("role")
    for field in ("first_name", "last_name"):
        raw = getattr(update, field)
        if raw is None:
            continue
        value = _require_name(raw, field)
        if value != getattr(target, field):
            setattr(target, field, value)
            changed.append(field)

    if not changed:
        return user_to_out(target)

    target.updated_at = utcnow()
    details = {"fields": sorted(changed)}
    if role_change:
        details["old_role"], details["new_role"] = role_change[0].value, role_change[1].value
    record_audit(db, AuditEventType.USER_UPDATED, current_user, "user", target.id, details, request)
    await db.commit()
    return user_to_out(target)


@router.patch("/{user_id}/role")
async def update_user_role(
    user_id: int,
    role_update: RoleUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a user's role. Admins can never be demoted."""
    target = await get_user_or_404(db, user_id)
    old_role = target.role
    change = _set_role(current_user, target, role_update.role)
    if change:
        target.updated_at = utcnow()
        record_audit(
            db, AuditEventType.USER_ROLE_CHANGED, current_user, "user", target.id,
            {"old_role": change[0].value, "new_role": change[1].value}, request,
        )
        await db.commit()

    return {"user_id": target.id, "old_role": old_role.value, "new_role": target.role.value}


@router.patch("/{user_id}/status", response_model=UserOut)
async def update_user_status(
    user_id: int,
    status_update: StatusUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Activate or deactivate an account (never your own)"""
    target = await get_user_or_404(db, user_id)
    if _set_active(current_user, target, status_update.is_active):
        event = AuditEventType.USER_REACTIVATED if status_update.is_active else AuditEventType.USER_DEACTIVATED
        record_audit(db, event, current_user, "user", target.id, request=request)
        await db.commit()
    return user_to_out(target)


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: int,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete / deactivate a user"""
    target = await get_user_or_404(db, user_id)
    if _set_active(current_user, target, False):
        record_audit(db, AuditEventType.USER_DEACTIVATED, current_user, "user", target.id, request=request)
        await db.commit()
    return {"user_id": target.id, "status": "deactivated"}


@router.post("/{user_id}/reactivate")
async def reactivate_user(
    user_id: int,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Reactivate a deactivated user"""
    target = await get_user_or_404(db, user_id)
    if _set_active(current_user, target, True):
        record_audit(db, AuditEventType.USER_REACTIVATED, current_user, "user", target.id, request=request)
        await db.commit()
    return {"user_id": target.id, "status": "active"}
