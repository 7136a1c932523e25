# routers/issues.py — Issue tracking: lifecycle, archival, assignment, search
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

import issue_lifecycle as lifecycle
from audit import record_audit
from auth import get_current_user, require_admin
from database import (
    get_db_session, commit_or_conflict, flush_or_conflict, contains_pattern, LIKE_ESCAPE,
)
from errors import NotFoundError, ConflictError, InvalidInputError
from models import (
    Issue, User, Team, AuditEventType, IssuePriority, IssueStatus, isoformat_utc, utcnow,
)
from permissions import can_delete_issue, require
from storage import LocalBlobStore, get_blob_store

router = APIRouter(prefix="/api/v1/issues", tags=["Issues"])
logger = logging.getLogger("bugboard.issues")

URGENT_PRIORITIES = (IssuePriority.CRITICAL, IssuePriority.HIGH)


# --- Schemas ---

class IssueOut(BaseModel):
    id: int
    title: str
    description: str
    priority: str
    status: str
    type: str
    is_archived: bool
    archived_at: Optional[str] = None
    archived_by_id: Optional[int] = None
    created_at: str
    updated_at: str
    resolved_at: Optional[str] = None
    creator_id: int
    team_id: Optional[int] = None
    assignee_ids: List[int] = []
    attachment_count: int = 0


class IssueCreate(BaseModel):
    title: str = Field(..., description="Unique, at most 200 characters")
    description: str
    priority: Optional[str] = Field(default=None, description="none, low, medium, high, critical")
    type: str = Field(..., description="bug, feature, question, documentation")
    # Accepted for client compatibility; new issues always start in todo
    status: Optional[str] = None


class IssueUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None


class TeamAssignment(BaseModel):
    team_id: Optional[int] = None


class AssigneeOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str


class IssueStats(BaseModel):
    total: int
    active: int
    archived: int
    todo: int
    in_progress: int
    done: int
    resolved: int
    unresolved: int


# --- Helpers ---

def _iso(value) -> Optional[str]:
    return isoformat_utc(value)


def _issue_to_out(i: Issue) -> IssueOut:
    return IssueOut(
        id=i.id,
        title=i.title,
        description=i.description,
        priority=i.priority.value,
        status=i.status.value,
        type=i.type.value,
        is_archived=i.is_archived,
        archived_at=_iso(i.archived_at),
        archived_by_id=i.archived_by_id,
        created_at=_iso(i.created_at) or "",
        updated_at=_iso(i.updated_at) or "",
        resolved_at=_iso(i.resolved_at),
        creator_id=i.creator_id,
        team_id=i.team_id,
        assignee_ids=i.assignee_ids,
        attachment_count=len(i.attachments),
    )


async def get_issue_or_404(db: AsyncSession, issue_id: int) -> Issue:
    issue = await db.get(Issue, issue_id)
    if not issue:
        raise NotFoundError(f"Issue {issue_id} not found")
    return issue


async def _title_taken(db: AsyncSession, title: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Issue.id).where(Issue.title == title)
    if exclude_id is not None:
        stmt = stmt.where(Issue.id != exclude_id)
    result = await db.execute(stmt.limit(1))
    return result.scalar_one_or_none() is not None


def _optional_filter(parser, raw: Optional[str], field: str):
    if raw is None or not raw.strip():
        return None
    return lifecycle.parse_or_reject(parser, raw, field)


# --- Read endpoints ---

@router.get("", response_model=List[IssueOut])
async def list_issues(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    archived: Optional[bool] = None,
    team_id: Optional[int] = None,
    q: Optional[str] = Query(default=None, description="Case-insensitive title substring"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
):
    """List issues, most recently modified first. Absent filters don't constrain."""
    stmt = select(Issue).order_by(Issue.updated_at.desc(), Issue.id.desc())

    status_value = _optional_filter(lifecycle.parse_status, status, "status")
    if status_value is not None:
        stmt = stmt.where(Issue.status == status_value)
    priority_value = _optional_filter(lifecycle.parse_priority, priority, "priority")
    if priority_value is not None:
        stmt = stmt.where(Issue.priority == priority_value)
    type_value = _optional_filter(lifecycle.parse_type, type, "type")
    if type_value is not None:
        stmt = stmt.where(Issue.type == type_value)
    if archived is not None:
        stmt = stmt.where(Issue.is_archived == archived)
    if team_id is not None:
        stmt = stmt.where(Issue.team_id == team_id)
    if q:
        stmt = stmt.where(Issue.title.ilike(contains_pattern(q), escape=LIKE_ESCAPE))

    result = await db.execute(stmt.offset(skip).limit(limit))
    return [_issue_to_out(i) for i in result.scalars().all()]


@router.get("/urgent", response_model=List[IssueOut])
async def list_urgent_issues(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Critical and high priority issues that are not archived"""
    stmt = (
        select(Issue)
        .where(Issue.priority.in_(URGENT_PRIORITIES), Issue.is_archived == False)
        .order_by(Issue.updated_at.desc(), Issue.id.desc())
    )
    result = await db.execute(stmt)
    return [_issue_to_out(i) for i in result.scalars().all()]


@router.get("/search", response_model=List[IssueOut])
async def search_issues(
    q: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Search issue titles, ignoring case"""
    stmt = (
        select(Issue)
        .where(Issue.title.ilike(contains_pattern(q), escape=LIKE_ESCAPE))
        .order_by(Issue.updated_at.desc(), Issue.id.desc())
    )
    result = await db.execute(stmt)
    return [_issue_to_out(i) for i in result.scalars().all()]


@router.get("/stats", response_model=IssueStats)
async def issue_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Counts by archival, status and resolution"""
    async def count(*conditions) -> int:
        result = await db.execute(select(func.count(Issue.id)).where(*conditions))
        return result.scalar() or 0

    total = await count()
    archived = await count(Issue.is_archived == True)
    resolved = await count(Issue.resolved_at.is_not(None))
    return IssueStats(
        total=total,
        active=total - archived,
        archived=archived,
        todo=await count(Issue.status == IssueStatus.TODO),
        in_progress=await count(Issue.status == IssueStatus.IN_PROGRESS),
        done=await count(Issue.status == IssueStatus.DONE),
        resolved=resolved,
        unresolved=total - resolved,
    )


@router.get("/{issue_id}", response_model=IssueOut)
async def get_issue(
    issue_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a single issue"""
    return _issue_to_out(await get_issue_or_404(db, issue_id))


@router.get("/{issue_id}/assignees", response_model=List[AssigneeOut])
async def list_assignees(
    issue_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Users assigned to an issue"""
    issue = await get_issue_or_404(db, issue_id)
    return [
        AssigneeOut(id=u.id, first_name=u.first_name, last_name=u.last_name, email=u.email)
        for u in issue.assignees
    ]


# --- Mutations ---

@router.post("", response_model=IssueOut, status_code=201)
async def create_issue(
    data: IssueCreate,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an issue; it always starts in todo"""
    draft = lifecycle.prepare_issue(data.title, data.description, data.priority, data.type)
    if await _title_taken(db, draft.title):
        raise ConflictError(f"An issue titled {draft.title!r} already exists")

    issue = lifecycle.new_issue(draft, user)
    db.add(issue)
    await flush_or_conflict(db, f"An issue titled {draft.title!r} already exists")
    record_audit(
        db, AuditEventType.ISSUE_CREATED, user, "issue", issue.id,
        {"title": issue.title, "priority": issue.priority.value, "type": issue.type.value},
        request,
    )
    await commit_or_conflict(db, f"An issue titled {draft.title!r} already exists")
    return _issue_to_out(issue)


@router.patch("/{issue_id}", response_model=IssueOut)
async def update_issue(
    issue_id: int,
    update: IssueUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Partially update an issue (creator, assignee or admin)"""
    issue = await get_issue_or_404(db, issue_id)
    patch = lifecycle.IssuePatch(**update.model_dump())
    changes = lifecycle.plan_update(user, issue, patch)
    if not changes:
        return _issue_to_out(issue)

    if "title" in changes and await _title_taken(db, changes["title"], exclude_id=issue.id):
        raise ConflictError(f"An issue titled {changes['title']!r} already exists")

    old_status = issue.status
    lifecycle.apply_changes(issue, changes)
    details = {"fields": sorted(changes)}
    if "status" in changes:
        details["old_status"], details["new_status"] = old_status.value, issue.status.value
    record_audit(db, AuditEventType.ISSUE_UPDATED, user, "issue", issue.id, details, request)
    await commit_or_conflict(db, "An issue with this title already exists")
    return _issue_to_out(issue)


@router.post("/{issue_id}/archive", response_model=IssueOut)
async def archive_issue(
    issue_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Archive an issue (admin only)"""
    issue = await get_issue_or_404(db, issue_id)
    lifecycle.archive(issue, user)
    record_audit(db, AuditEventType.ISSUE_ARCHIVED, user, "issue", issue.id, request=request)
    await db.commit()
    return _issue_to_out(issue)


@router.post("/{issue_id}/unarchive", response_model=IssueOut)
async def unarchive_issue(
    issue_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Unarchive an issue (admin only)"""
    issue = await get_issue_or_404(db, issue_id)
    lifecycle.unarchive(issue, user)
    record_audit(db, AuditEventType.ISSUE_UNARCHIVED, user, "issue", issue.id, request=request)
    await db.commit()
    return _issue_to_out(issue)


@router.delete("/{issue_id}", status_code=204)
async def delete_issue(
    issue_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    """Delete an issue together with its attachments"""
    issue = await get_issue_or_404(db, issue_id)
    require(
        can_delete_issue(user, issue),
        "Only the creator or an admin can delete this issue; archived issues need an admin",
    )

    for attachment in list(issue.attachments):
        try:
            await blobs.delete(attachment.storage_key)
        except (OSError, NotFoundError) as exc:
            logger.warning(
                f"Could not delete blob {attachment.storage_key} of attachment "
                f"{attachment.id} (issue {issue.id}): {exc}"
            )

    record_audit(
        db, AuditEventType.ISSUE_DELETED, user, "issue", issue.id,
        {"title": issue.title, "attachments": len(issue.attachments)}, request,
    )
    await db.delete(issue)
    await db.commit()
    return Response(status_code=204)


@router.put("/{issue_id}/assignees/{user_id}", response_model=IssueOut)
async def assign_user(
    issue_id: int,
    user_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a user to the assignees (admin only, idempotent)"""
    issue = await get_issue_or_404(db, issue_id)
    assignee = await db.get(User, user_id)
    if not assignee:
        raise NotFoundError(f"User {user_id} not found")
    if not assignee.is_active:
        raise InvalidInputError("Cannot assign a deactivated user")

    if lifecycle.add_assignee(issue, assignee):
        issue.updated_at = utcnow()
        record_audit(
            db, AuditEventType.ISSUE_ASSIGNED, admin, "issue", issue.id,
            {"user_id": assignee.id}, request,
        )
        await db.commit()
    return _issue_to_out(issue)


@router.delete("/{issue_id}/assignees/{user_id}", response_model=IssueOut)
async def unassign_user(
    issue_id: int,
    user_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a user from the assignees; removing a non-assignee is a no-op"""
    issue = await get_issue_or_404(db, issue_id)
    if lifecycle.remove_assignee(issue, user_id):
        issue.updated_at = utcnow()
        record_audit(
            db, AuditEventType.ISSUE_UNASSIGNED, admin, "issue", issue.id,
            {"user_id": user_id}, request,
        )
        await db.commit()
    return _issue_to_out(issue)


@router.put("/{issue_id}/team", response_model=IssueOut)
async def set_issue_team(
    issue_id: int,
    assignment: TeamAssignment,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Attach an issue to a team, or detach it with team_id null"""
    issue = await get_issue_or_404(db, issue_id)
    if assignment.team_id is not None:
        team = await db.get(Team, assignment.team_id)
        if not team:
            raise NotFoundError(f"Team {assignment.team_id} not found")
        if not team.is_active:
            raise InvalidInputError("Cannot assign an issue to an inactive team")

    if issue.team_id != assignment.team_id:
        issue.team_id = assignment.team_id
        issue.updated_at = utcnow()
        record_audit(
            db, AuditEventType.ISSUE_UPDATED, admin, "issue", issue.id,
            {"fields": ["team_id"], "team_id": assignment.team_id}, request,
        )
        await db.commit()
    return _issue_to_out(issue)


async def detach_team_issues(db: AsyncSession, team_id: int) -> None:
    """Clear team_id on every issue of a team about to be deleted"""
    await db.execute(
        sql_update(Issue).where(Issue.team_id == team_id).values(team_id=None)
    )
