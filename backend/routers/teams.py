# routers/teams.py — Teams: admin-managed groups of users that own issues
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import get_current_user, require_admin
from database import (
    get_db_session, commit_or_conflict, flush_or_conflict, contains_pattern, LIKE_ESCAPE,
)
from errors import NotFoundError, ConflictError, InvalidInputError
from models import Team, User, AuditEventType, team_members, isoformat_utc, utcnow
from routers.issues import detach_team_issues
from routers.users import UserOut, user_to_out, get_user_or_404

router = APIRouter(prefix="/api/v1/teams", tags=["Teams"])


# --- Schemas ---

class TeamOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    creator_id: Optional[int] = None
    is_active: bool
    member_ids: List[int] = []
    created_at: str


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


# --- Helpers ---

def _team_to_out(t: Team) -> TeamOut:
    return TeamOut(
        id=t.id,
        name=t.name,
        description=t.description,
        creator_id=t.creator_id,
        is_active=t.is_active,
        member_ids=[m.id for m in t.members],
        created_at=isoformat_utc(t.created_at) or "",
    )


async def _get_team_or_404(db: AsyncSession, team_id: int) -> Team:
    team = await db.get(Team, team_id)
    if not team:
        raise NotFoundError(f"Team {team_id} not found")
    return team


def _clean_name(name: str) -> str:
    if not name or not name.strip():
        raise InvalidInputError("Team name must not be blank")
    return name.strip()


async def _name_taken(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Team.id).where(Team.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Team.id != exclude_id)
    result = await db.execute(stmt.limit(1))
    return result.scalar_one_or_none() is not None


# --- Read endpoints ---

@router.get("", response_model=List[TeamOut])
async def list_teams(
    active: Optional[bool] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List teams, optionally only active or inactive ones"""
    stmt = select(Team).order_by(Team.name)
    if active is not None:
        stmt = stmt.where(Team.is_active == active)
    result = await db.execute(stmt)
    return [_team_to_out(t) for t in result.scalars().all()]


@router.get("/search", response_model=List[TeamOut])
async def search_teams(
    name: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Search teams by name, ignoring case"""
    stmt = select(Team).where(Team.name.ilike(contains_pattern(name), escape=LIKE_ESCAPE)).order_by(Team.name)
    result = await db.execute(stmt)
    return [_team_to_out(t) for t in result.scalars().all()]


@router.get("/stats")
async def team_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Total, active and inactive team counts"""
    total = (await db.execute(select(func.count(Team.id)))).scalar() or 0
    active = (await db.execute(
        select(func.count(Team.id)).where(Team.is_active == True)
    )).scalar() or 0
    return {"total": total, "active": active, "inactive": total - active}


@router.get("/by-user/{user_id}", response_model=List[TeamOut])
async def teams_of_user(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Teams a user belongs to"""
    await get_user_or_404(db, user_id)
    stmt = (
        select(Team)
        .join(team_members, team_members.c.team_id == Team.id)
        .where(team_members.c.user_id == user_id)
        .order_by(Team.name)
    )
    result = await db.execute(stmt)
    return [_team_to_out(t) for t in result.scalars().all()]


@router.get("/by-creator/{user_id}", response_model=List[TeamOut])
async def teams_created_by(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Teams created by an admin"""
    await get_user_or_404(db, user_id)
    result = await db.execute(
        select(Team).where(Team.creator_id == user_id).order_by(Team.name)
    )
    return [_team_to_out(t) for t in result.scalars().all()]


@router.get("/{team_id}", response_model=TeamOut)
async def get_team(
    team_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a single team"""
    return _team_to_out(await _get_team_or_404(db, team_id))


@router.get("/{team_id}/members", response_model=List[UserOut])
async def list_members(
    team_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Members of a team"""
    team = await _get_team_or_404(db, team_id)
    return [user_to_out(m) for m in team.members]


# --- Mutations ---

@router.post("", response_model=TeamOut, status_code=201)
async def create_team(
    data: TeamCreate,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a team (admin only)"""
    name = _clean_name(data.name)
    if await _name_taken(db, name):
        raise ConflictError(f"Team {name!r} already exists")

    team = Team(
        name=name,
        description=data.description,
        creator_id=admin.id,
        is_active=True,
        members=[],
    )
    db.add(team)
    await flush_or_conflict(db, f"Team {name!r} already exists")
    record_audit(db, AuditEventType.TEAM_CREATED, admin, "team", team.id, {"name": name}, request)
    await commit_or_conflict(db, f"Team {name!r} already exists")
    return _team_to_out(team)


@router.patch("/{team_id}", response_model=TeamOut)
async def update_team(
    team_id: int,
    update: TeamUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename a team or change its description"""
    team = await _get_team_or_404(db, team_id)
    if update.name is not None:
        name = _clean_name(update.name)
        if name != team.name and await _name_taken(db, name, exclude_id=team.id):
            raise ConflictError(f"Team {name!r} already exists")
        team.name = name
    if update.description is not None:
        team.description = update.description
    team.updated_at = utcnow()
    record_audit(
        db, AuditEventType.TEAM_UPDATED, admin, "team", team.id,
        {"fields": sorted(k for k, v in update.model_dump().items() if v is not None)}, request,
    )
    await commit_or_conflict(db, "A team with this name already exists")
    return _team_to_out(team)


@router.put("/{team_id}/members/{user_id}", response_model=TeamOut)
async def add_member(
    team_id: int,
    user_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Add an active user to a team"""
    team = await _get_team_or_404(db, team_id)
    member = await get_user_or_404(db, user_id)
    if not member.is_active:
        raise InvalidInputError("Cannot add a deactivated user to a team")
    if any(m.id == member.id for m in team.members):
        raise ConflictError("User is already a member of this team")

    team.members.append(member)
    team.updated_at = utcnow()
    record_audit(db, AuditEventType.TEAM_UPDATED, admin, "team", team.id, {"added_member": member.id}, request)
    await db.commit()
    return _team_to_out(team)


@router.delete("/{team_id}/members/{user_id}", response_model=TeamOut)
async def remove_member(
    team_id: int,
    user_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member from a team"""
    team = await _get_team_or_404(db, team_id)
    member = next((m for m in team.members if m.id == user_id), None)
    if member is None:
        raise NotFoundError("User is not a member of this team")

    team.members.remove(member)
    team.updated_at = utcnow()
    record_audit(db, AuditEventType.TEAM_UPDATED, admin, "team", team.id, {"removed_member": user_id}, request)
    await db.commit()
    return _team_to_out(team)


async def _set_team_active(db: AsyncSession, team_id: int, active: bool, admin: User, request: Request) -> Team:
    team = await _get_team_or_404(db, team_id)
    if team.is_active == active:
        state = "active" if active else "inactive"
        raise ConflictError(f"Team is already {state}")
    team.is_active = active
    team.updated_at = utcnow()
    record_audit(db, AuditEventType.TEAM_UPDATED, admin, "team", team.id, {"is_active": active}, request)
    await db.commit()
    return team


@router.post("/{team_id}/deactivate", response_model=TeamOut)
async def deactivate_team(
    team_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Deactivate a team"""
    return _team_to_out(await _set_team_active(db, team_id, False, admin, request))


@router.post("/{team_id}/activate", response_model=TeamOut)
async def activate_team(
    team_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Reactivate a team"""
    return _team_to_out(await _set_team_active(db, team_id, True, admin, request))


@router.delete("/{team_id}", status_code=204)
async def delete_team(
    team_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a team; its issues stay, without a team"""
    team = await _get_team_or_404(db, team_id)
    await detach_team_issues(db, team.id)
    record_audit(db, AuditEventType.TEAM_DELETED, admin, "team", team.id, {"name": team.name}, request)
    await db.delete(team)
    await db.commit()
    return Response(status_code=204)
