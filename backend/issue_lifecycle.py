# issue_lifecycle.py — Issue state machine
# Status flow for non-admins: todo -> in_progress -> done. Admins may set any
# status. Archived and done issues are locked to non-admins. Type is write-once.
# Everything here is pure; routers load, call, then commit.

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Callable, TypeVar

from errors import InvalidInputError, ForbiddenError, AlreadyArchivedError
from models import (
    User, Issue, IssuePriority, IssueStatus, IssueType, UserRole, utcnow,
)
from permissions import is_admin, is_owner, can_mutate_issue

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000

E = TypeVar("E")

# ============================================================
# LITERAL PARSING
# ============================================================

_PRIORITY_LITERALS = {
    "none": IssuePriority.NONE,
    "low": IssuePriority.LOW,
    "medium": IssuePriority.MEDIUM,
    "high": IssuePriority.HIGH,
    "critical": IssuePriority.CRITICAL,
}

_STATUS_LITERALS = {
    "todo": IssueStatus.TODO,
    "inprogress": IssueStatus.IN_PROGRESS,
    "in_progress": IssueStatus.IN_PROGRESS,
    "in-progress": IssueStatus.IN_PROGRESS,
    "done": IssueStatus.DONE,
}

_TYPE_LITERALS = {
    "bug": IssueType.BUG,
    "feature": IssueType.FEATURE,
    "features": IssueType.FEATURE,
    "question": IssueType.QUESTION,
    "documentation": IssueType.DOCUMENTATION,
}

_ROLE_LITERALS = {
    "admin": UserRole.ADMIN,
    "user": UserRole.USER,
}


def _lookup(table: Dict[str, E], raw: Optional[str]) -> Optional[E]:
    if raw is None:
        return None
    return table.get(raw.strip().lower())


def parse_priority(raw: Optional[str]) -> Optional[IssuePriority]:
    """Blank or absent means `none`; an unknown literal gives None."""
    if raw is None or not raw.strip():
        return IssuePriority.NONE
    return _lookup(_PRIORITY_LITERALS, raw)


def parse_status(raw: Optional[str]) -> Optional[IssueStatus]:
    return _lookup(_STATUS_LITERALS, raw)


def parse_type(raw: Optional[str]) -> Optional[IssueType]:
    return _lookup(_TYPE_LITERALS, raw)


def parse_role(raw: Optional[str]) -> Optional[UserRole]:
    return _lookup(_ROLE_LITERALS, raw)


def parse_or_reject(parser: Callable[[Optional[str]], Optional[E]], raw: Optional[str], field: str) -> E:
    value = parser(raw)
    if value is None:
        raise InvalidInputError(f"Invalid {field}: {raw!r}")
    return value


# ============================================================
# FIELD VALIDATION
# ============================================================

def validate_title(title: Optional[str]) -> str:
    if title is None or not title.strip():
        raise InvalidInputError("Title is required")
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise InvalidInputError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return title


def validate_description(description: Optional[str]) -> str:
    if description is None or not description.strip():
        raise InvalidInputError("Description is required")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidInputError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")
    return description


# ============================================================
# TRANSITIONS
# ============================================================

_ALLOWED_TRANSITIONS = {
    IssueStatus.TODO: {IssueStatus.TODO, IssueStatus.IN_PROGRESS},
    IssueStatus.IN_PROGRESS: {IssueStatus.IN_PROGRESS, IssueStatus.DONE},
    IssueStatus.DONE: {IssueStatus.DONE},
}


def is_transition_allowed(current: IssueStatus, target: IssueStatus, admin: bool = False) -> bool:
    if admin:
        return True
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def check_transition(current: IssueStatus, target: IssueStatus, admin: bool = False) -> None:
    if not is_transition_allowed(current, target, admin):
        raise InvalidInputError(
            f"Illegal status transition: {current.value} -> {target.value}"
        )


def enter_status(issue: Issue, status: IssueStatus, now: Optional[datetime] = None) -> None:
    """Set status; the first entry into done stamps resolved_at, later ones don't."""
    issue.status = status
    if status == IssueStatus.DONE and issue.resolved_at is None:
        issue.resolved_at = now or utcnow()


# ============================================================
# CREATE / UPDATE
# ============================================================

@dataclass
class IssueDraft:
    title: str
    description: str
    priority: IssuePriority
    type: IssueType


def prepare_issue(
    title: Optional[str],
    description: Optional[str],
    priority: Optional[str],
    issue_type: Optional[str],
) -> IssueDraft:
    """Validate creation input. Any client status is ignored, issues start in todo."""
    return IssueDraft(
        title=validate_title(title),
        description=validate_description(description),
        priority=parse_or_reject(parse_priority, priority, "priority"),
        type=parse_or_reject(parse_type, issue_type, "type"),
    )


def new_issue(draft: IssueDraft, creator: User, now: Optional[datetime] = None) -> Issue:
    now = now or utcnow()
    return Issue(
        title=draft.title,
        description=draft.description,
        priority=draft.priority,
        type=draft.type,
        status=IssueStatus.TODO,
        is_archived=False,
        creator_id=creator.id,
        created_at=now,
        updated_at=now,
        assignees=[],
        attachments=[],
    )


@dataclass
class IssuePatch:
    """Partial update: None means leave the field alone."""
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None


def plan_update(actor: User, issue: Issue, patch: IssuePatch) -> Dict[str, Any]:
    """Authorize and validate a patch, returning only the fields that change.

    Checks run in a fixed order: ownership, then the no-op check, then the
    archived/done lock from can_mutate_issue, then the status transition,
    then the type lock. An empty result is a no-op.
    """
    admin = is_admin(actor)
    if not admin and not is_owner(actor, issue):
        raise ForbiddenError("Only the creator, an assignee or an admin can modify this issue")

    changes: Dict[str, Any] = {}
    if patch.title is not None:
        title = validate_title(patch.title)
        if title != issue.title:
            changes["title"] = title
    if patch.description is not None:
        description = validate_description(patch.description)
        if description != issue.description:
            changes["description"] = description
    if patch.priority is not None:
        priority = parse_or_reject(parse_priority, patch.priority, "priority")
        if priority != issue.priority:
            changes["priority"] = priority
    if patch.status is not None:
        status = parse_or_reject(parse_status, patch.status, "status")
        if status != issue.status:
            changes["status"] = status
    if patch.type is not None:
        issue_type = parse_or_reject(parse_type, patch.type, "type")
        if issue_type != issue.type:
            changes["type"] = issue_type

    if not changes:
        return changes

    if not can_mutate_issue(actor, issue):
        state = "Archived" if issue.is_archived else "Closed"
        raise ForbiddenError(f"{state} issues can only be modified by an admin")

    if "status" in changes:
        check_transition(issue.status, changes["status"], admin)
    if "type" in changes:
        raise InvalidInputError("Issue type cannot be modified")

    return changes


def apply_changes(issue: Issue, changes: Dict[str, Any], now: Optional[datetime] = None) -> Issue:
    if not changes:
        return issue
    now = now or utcnow()
    for field in ("title", "description", "priority"):
        if field in changes:
            setattr(issue, field, changes[field])
    if "status" in changes:
        enter_status(issue, changes["status"], now)
    issue.updated_at = now
    return issue


# ============================================================
# ARCHIVAL / ASSIGNMENT
# ============================================================

def archive(issue: Issue, actor: User, now: Optional[datetime] = None) -> Issue:
    if not is_admin(actor):
        raise ForbiddenError("Only an admin can archive issues")
    if issue.is_archived:
        raise AlreadyArchivedError()
    now = now or utcnow()
    issue.is_archived = True
    issue.archived_at = now
    issue.archived_by_id = actor.id
    issue.updated_at = now
    return issue


def unarchive(issue: Issue, actor: User, now: Optional[datetime] = None) -> Issue:
    if not is_admin(actor):
        raise ForbiddenError("Only an admin can unarchive issues")
    if not issue.is_archived:
        raise InvalidInputError("Issue is not archived")
    issue.is_archived = False
    issue.archived_at = None
    issue.archived_by_id = None
    issue.updated_at = now or utcnow()
    return issue


def add_assignee(issue: Issue, user: User) -> bool:
    """Returns False when the user was already assigned."""
    if any(u.id == user.id for u in issue.assignees):
        return False
    issue.assignees.append(user)
    return True


def remove_assignee(issue: Issue, user_id: int) -> bool:
    """Returns False when the user was not assigned; that is not an error."""
    for u in list(issue.assignees):
        if u.id == user_id:
            issue.assignees.remove(u)
            return True
    return False
