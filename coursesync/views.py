"""Read-side projections over a replica snapshot.

Every join from a registration to its course goes through
:func:`join_registrations`, which drops orphans whose course has gone.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from .approvals import TERMINAL_APPROVER_ROLES, is_awaiting_approval, is_offered_for_registration
from .models import (
    Course,
    CourseApprovalStatus,
    Registration,
    RegistrationStatus,
    Snapshot,
    User,
    UserRole,
)


@dataclass(frozen=True)
class RegistrationView:
    registration: Registration
    course: Course

    def to_dict(self) -> Dict[str, object]:
        return {"registration": self.registration.to_dict(), "course": self.course.to_dict()}


def catalog(courses: Iterable[Course]) -> List[Course]:
    """Courses that may be registered for."""

    return [course for course in courses if is_offered_for_registration(course.approval_status)]


def course_approval_queue(courses: Iterable[Course]) -> List[Course]:
    return [course for course in courses if is_awaiting_approval(course.approval_status)]


def join_registrations(
    snapshot: Snapshot,
    registrations: Optional[Iterable[Registration]] = None,
) -> List[RegistrationView]:
    courses = {course.id: course for course in snapshot.courses}
    joined: List[RegistrationView] = []
    for registration in snapshot.registrations if registrations is None else registrations:
        course = courses.get(registration.course_id)
        if course is None:
            continue
        joined.append(RegistrationView(registration, course))
    return joined


def registrations_for(snapshot: Snapshot, user: User) -> List[RegistrationView]:
    return join_registrations(
        snapshot,
        [registration for registration in snapshot.registrations if registration.requester_id == user.id],
    )


def registration_approval_queue(snapshot: Snapshot) -> List[RegistrationView]:
    return join_registrations(
        snapshot,
        [
            registration
            for registration in snapshot.registrations
            if registration.status is RegistrationStatus.PENDING
        ],
    )


_SEES_ALL_REGISTRATIONS = frozenset({UserRole.ADMIN, UserRole.TRAINER, UserRole.KEY_ACCOUNT})


def _on_calendar(registration: Registration, viewer: User) -> bool:
    if viewer.role is UserRole.AREA_MANAGER and registration.status is not RegistrationStatus.CONFIRMED:
        return False
    if viewer.role in _SEES_ALL_REGISTRATIONS:
        return True
    if registration.requester_id == viewer.id:
        return True
    return viewer.region is not None and registration.region == viewer.region


def calendar_entries(snapshot: Snapshot, viewer: User) -> List[RegistrationView]:
    """Registrations ``viewer`` may see on the calendar, ordered by registration date.

    ADMIN, TRAINER and KA see every registration. Everyone else sees their own
    and those from their region; area managers only see confirmed seats.
    """

    visible = [registration for registration in snapshot.registrations if _on_calendar(registration, viewer)]
    entries = join_registrations(snapshot, visible)
    entries.sort(key=lambda entry: (entry.registration.date, entry.course.start_time))
    return entries


@dataclass(frozen=True)
class Notification:
    id: str
    level: str
    title: str
    message: str
    count: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "count": self.count,
        }


_NOTIFIED_AUTHORS = frozenset(
    {UserRole.TRAINER, UserRole.PRODUCT_MANAGER, UserRole.REGIONAL_MANAGER, UserRole.KEY_ACCOUNT}
)


def notifications(snapshot: Snapshot, user: User, today: date) -> List[Notification]:
    """Role-based reminders derived from the approval state of the replica."""

    notes: List[Notification] = []

    if user.role in TERMINAL_APPROVER_ROLES:
        awaiting = len(course_approval_queue(snapshot.courses))
        if awaiting:
            notes.append(
                Notification(
                    "approve-courses",
                    "warning",
                    "Courses to approve",
                    f"{awaiting} new course(s) are waiting for your approval.",
                    awaiting,
                )
            )
        pending = sum(
            1 for registration in snapshot.registrations if registration.status is RegistrationStatus.PENDING
        )
        if pending:
            notes.append(
                Notification(
                    "approve-registrations",
                    "info",
                    "Registrations to review",
                    f"{pending} registration request(s) are waiting to be processed.",
                    pending,
                )
            )

    if user.role in _NOTIFIED_AUTHORS:
        own = [course for course in snapshot.courses if course.creator_role is user.role]
        rejected = sum(1 for course in own if course.approval_status is CourseApprovalStatus.REJECTED)
        if rejected:
            notes.append(
                Notification(
                    "courses-rejected",
                    "error",
                    "Courses rejected",
                    f"{rejected} of your course(s) were rejected. Edit them to resubmit for approval.",
                    rejected,
                )
            )
        published = sum(
            1
            for course in own
            if course.approval_status is CourseApprovalStatus.APPROVED and _is_upcoming(course, today)
        )
        if published:
            notes.append(
                Notification(
                    "courses-published",
                    "success",
                    "Courses published",
                    f"{published} of your upcoming course(s) were approved and published.",
                    published,
                )
            )

    seats = sum(
        1
        for view in registrations_for(snapshot, user)
        if view.registration.status is RegistrationStatus.CONFIRMED and _is_upcoming(view.course, today)
    )
    if seats:
        notes.append(
            Notification(
                "seats-confirmed",
                "success",
                "Registrations confirmed",
                f"{seats} upcoming class(es) have confirmed seats for you.",
                seats,
            )
        )
    return notes


def _share(counts: Counter, total: int) -> List[Dict[str, object]]:
    rows = [
        {"name": name, "count": count, "percent": round(count / total * 100)}
        for name, count in counts.items()
    ]
    rows.sort(key=lambda row: row["count"], reverse=True)  # type: ignore[arg-type,return-value]
    return rows


def _is_upcoming(course: Course, today: date) -> bool:
    try:
        return date.fromisoformat(course.start_date) >= today
    except ValueError:
        return False


def statistics(snapshot: Snapshot, *, today: Optional[date] = None) -> Optional[Dict[str, object]]:
    """Dashboard figures; ``None`` until both courses and registrations exist."""

    courses: Sequence[Course] = snapshot.courses
    registrations: Sequence[Registration] = snapshot.registrations
    if not courses or not registrations:
        return None

    today = today or date.today()
    total_registrations = len(registrations)
    confirmed = sum(1 for registration in registrations if registration.status is RegistrationStatus.CONFIRMED)

    return {
        "total_courses": len(courses),
        "upcoming_courses": sum(1 for course in courses if _is_upcoming(course, today)),
        "categories": _share(Counter(course.category for course in courses), len(courses)),
        "total_registrations": total_registrations,
        "confirmed_registrations": confirmed,
        "approval_rate": round(confirmed / total_registrations * 100),
        "regions": _share(
            Counter(registration.region or "Other" for registration in registrations),
            total_registrations,
        ),
    }


__all__ = [
    "Notification",
    "RegistrationView",
    "calendar_entries",
    "catalog",
    "course_approval_queue",
    "join_registrations",
    "notifications",
    "registration_approval_queue",
    "registrations_for",
    "statistics",
]
