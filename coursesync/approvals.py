"""Course publication and seat registration approval workflows.

Both workflows are pure functions over status values so they can be checked in
isolation from the replica and the remote store. Role permissions for the
intents that drive them live here as well.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransitionError, PermissionDeniedError
from .models import CourseApprovalStatus, RegistrationStatus, User, UserRole

COURSE_AUTHOR_ROLES: FrozenSet[UserRole] = frozenset(
    {
        UserRole.ADMIN,
        UserRole.KEY_ACCOUNT,
        UserRole.TRAINER,
        UserRole.PRODUCT_MANAGER,
        UserRole.REGIONAL_MANAGER,
    }
)
TERMINAL_APPROVER_ROLES: FrozenSet[UserRole] = frozenset({UserRole.ADMIN, UserRole.KEY_ACCOUNT})
REGISTRATION_APPROVER_ROLES: FrozenSet[UserRole] = frozenset(
    {
        UserRole.ADMIN,
        UserRole.TRAINER,
        UserRole.PRODUCT_MANAGER,
        UserRole.KEY_ACCOUNT,
    }
)
REQUESTER_ROLES: FrozenSet[UserRole] = frozenset(
    {UserRole.ADMIN, UserRole.AREA_MANAGER, UserRole.REGIONAL_MANAGER}
)

AWAITING_APPROVAL: FrozenSet[CourseApprovalStatus] = frozenset(
    {CourseApprovalStatus.PENDING_TRAINER, CourseApprovalStatus.TRAINER_APPROVED}
)
_DECISIONS: FrozenSet[CourseApprovalStatus] = frozenset(
    {CourseApprovalStatus.APPROVED, CourseApprovalStatus.REJECTED}
)

_STATUS_LABELS: Dict[str, str] = {
    CourseApprovalStatus.PENDING_TRAINER.value: "Awaiting approval",
    CourseApprovalStatus.TRAINER_APPROVED.value: "Awaiting approval",
    CourseApprovalStatus.APPROVED.value: "Published",
    CourseApprovalStatus.REJECTED.value: "Rejected",
    RegistrationStatus.PENDING.value: "Pending",
    RegistrationStatus.CONFIRMED.value: "Confirmed",
}


# ----------------------------------------------------------------------
# Course publication
# ----------------------------------------------------------------------
def initial_course_status(author_role: UserRole) -> CourseApprovalStatus:
    """Return the status a freshly authored course starts in."""

    if author_role not in COURSE_AUTHOR_ROLES:
        raise PermissionDeniedError(f"Role {author_role.value} may not author courses")
    if author_role in TERMINAL_APPROVER_ROLES:
        return CourseApprovalStatus.APPROVED
    return CourseApprovalStatus.TRAINER_APPROVED


def decide_course(
    current: CourseApprovalStatus,
    target: CourseApprovalStatus,
) -> CourseApprovalStatus:
    """Apply a terminal approver's publish/block decision."""

    if current not in AWAITING_APPROVAL or target not in _DECISIONS:
        raise InvalidTransitionError("course", current.value, target.value)
    return target


def course_status_after_edit(current: CourseApprovalStatus) -> CourseApprovalStatus:
    """Editing a rejected course resubmits it; any other status is kept."""

    if current is CourseApprovalStatus.REJECTED:
        return CourseApprovalStatus.TRAINER_APPROVED
    return current


def is_offered_for_registration(status: CourseApprovalStatus) -> bool:
    return status is CourseApprovalStatus.APPROVED


def is_awaiting_approval(status: CourseApprovalStatus) -> bool:
    return status in AWAITING_APPROVAL


# ----------------------------------------------------------------------
# Seat registration
# ----------------------------------------------------------------------
def initial_registration_status() -> RegistrationStatus:
    return RegistrationStatus.PENDING


def confirm_registration(current: RegistrationStatus) -> RegistrationStatus:
    if current is not RegistrationStatus.PENDING:
        raise InvalidTransitionError("registration", current.value, RegistrationStatus.CONFIRMED.value)
    return RegistrationStatus.CONFIRMED


# ----------------------------------------------------------------------
# Permissions
# ----------------------------------------------------------------------
def require_role(user: User, allowed: FrozenSet[UserRole], action: str) -> None:
    if user.role not in allowed:
        raise PermissionDeniedError(f"Role {user.role.value} may not {action}")


def can_edit_course(user: User, creator_role: Optional[UserRole]) -> bool:
    """Authors edit courses created by their role; admins edit everything."""

    if user.role is UserRole.ADMIN:
        return True
    if user.role not in COURSE_AUTHOR_ROLES:
        return False
    return creator_role is None or creator_role is user.role


def status_label(status: object) -> str:
    value = getattr(status, "value", status)
    return _STATUS_LABELS.get(str(value), str(value))


__all__ = [
    "AWAITING_APPROVAL",
    "COURSE_AUTHOR_ROLES",
    "REGISTRATION_APPROVER_ROLES",
    "REQUESTER_ROLES",
    "TERMINAL_APPROVER_ROLES",
    "can_edit_course",
    "confirm_registration",
    "course_status_after_edit",
    "decide_course",
    "initial_course_status",
    "initial_registration_status",
    "is_awaiting_approval",
    "is_offered_for_registration",
    "require_role",
    "status_label",
]
