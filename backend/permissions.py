# permissions.py — Authorization guard
# Pure decisions over (actor, target). No I/O; routers call these after loading
# the entities and before writing anything.

from typing import Optional

from errors import ForbiddenError
from models import User, Issue, Attachment, UserRole, IssueStatus


def is_admin(actor: User) -> bool:
    return actor.role == UserRole.ADMIN


def is_owner(actor: User, issue: Issue) -> bool:
    """Creator or assignee"""
    if issue.creator_id == actor.id:
        return True
    return any(u.id == actor.id for u in issue.assignees)


def can_mutate_issue(actor: User, issue: Issue) -> bool:
    if is_admin(actor):
        return True
    if issue.is_archived or issue.status == IssueStatus.DONE:
        return False
    return is_owner(actor, issue)


def can_delete_issue(actor: User, issue: Issue) -> bool:
    if is_admin(actor):
        return True
    if issue.is_archived:
        return False
    return issue.creator_id == actor.id


def can_upload_attachment(actor: User, issue: Issue) -> bool:
    return is_admin(actor) or not issue.is_archived


def can_delete_attachment(actor: User, attachment: Attachment, issue: Issue) -> bool:
    if is_admin(actor):
        return True
    if issue.is_archived:
        return False
    return actor.id in (attachment.uploader_id, issue.creator_id)


def can_manage_user(actor: User, target: User) -> bool:
    """Deactivate, reactivate, change status or role: Admin only, never on oneself"""
    return is_admin(actor) and actor.id != target.id


def can_change_role(actor: User, target: User, new_role: Optional[UserRole]) -> bool:
    if not can_manage_user(actor, target):
        return False
    # Admins are never demoted, by anyone
    if target.role == UserRole.ADMIN and new_role != UserRole.ADMIN:
        return False
    return True


def require(allowed: bool, detail: str = "Operation not permitted") -> None:
    if not allowed:
        raise ForbiddenError(detail)
