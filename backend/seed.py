# seed.py — First-run bootstrap of the admin account
import logging
import secrets
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CredentialStore
from config import Settings
from models import User, UserRole

logger = logging.getLogger("bugboard.seed")


async def ensure_bootstrap_admin(
    db: AsyncSession, settings: Settings, credentials: CredentialStore
) -> Optional[User]:
    """Create the first admin when the user directory is empty.

    Two phases: the row is inserted with no creator, then pointed at itself
    once its id exists.
    """
    result = await db.execute(select(func.count(User.id)))
    if (result.scalar() or 0) > 0:
        return None

    password = settings.bootstrap_admin_password
    if not password:
        password = secrets.token_urlsafe(12)
        logger.warning(
            f"No BOOTSTRAP_ADMIN_PASSWORD set. Generated one for "
            f"{settings.bootstrap_admin_email}: {password}"
        )

    admin = User(
        first_name="Admin",
        last_name="BugBoard",
        email=settings.bootstrap_admin_email.strip().lower(),
        password_hash=credentials.hash_password(password),
        role=UserRole.ADMIN,
        is_active=True,
        creator_id=None,
    )
    db.add(admin)
    await db.flush()

    admin.creator_id = admin.id
    await db.commit()
    logger.info(f"Bootstrap admin created: {admin.email} (id={admin.id})")
    return admin
