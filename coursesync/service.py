"""Intent surface used by the UI layer: the only way collections change."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import replace
from datetime import date
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import anyio

from . import approvals
from .config import SyncConfig
from .errors import (
    AuthenticationError,
    EmptyRemoteDataError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .identity import IdentityStore
from .models import (
    Collection,
    Course,
    CourseApprovalStatus,
    CourseFormat,
    PopupConfig,
    Registration,
    Snapshot,
    SystemSettings,
    User,
    UserPreferences,
    UserRole,
    WriteOp,
)
from .mutations import MutationOutcome, OptimisticMutator, Sleep
from .remote import InMemoryRecordStore, RecordStore, SheetRecordStore
from .replica import Mutation, ReconcileResult, ReplicaStore
from .scheduler import SuppressionGate, SyncScheduler
from .seed import DEFAULT_COURSE_IMAGE, seed_courses, seed_snapshot, seed_users

logger = logging.getLogger("coursesync.service")

DEFAULT_USER_PASSWORD = "123456"

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_USER_FIELDS = {"name", "email", "phone", "bio", "password", "avatar_url", "preferences"}
_ADMIN_USER_FIELDS = _USER_FIELDS | {"username", "role", "region"}
_COURSE_FIELDS = {
    "title",
    "description",
    "start_date",
    "end_date",
    "start_time",
    "end_time",
    "category",
    "image_url",
    "target_audience",
    "format",
    "location",
}


def _default_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def _cancelled() -> MutationOutcome:
    return MutationOutcome(False, "Action cancelled.", attempted=0, written=0)


def _require_text(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} must not be empty")
    return cleaned


def _validate_schedule(course: Course) -> None:
    try:
        start = date.fromisoformat(course.start_date)
        end = date.fromisoformat(course.end_date)
    except ValueError as exc:
        raise ValidationError("Course dates must use the YYYY-MM-DD format") from exc
    if end < start:
        raise ValidationError("Course end date must not be before its start date")
    for label, value in (("start", course.start_time), ("end", course.end_time)):
        if value and not _TIME_PATTERN.match(value):
            raise ValidationError(f"Course {label} time must use the HH:mm format")
    if course.start_date == course.end_date and course.start_time and course.end_time:
        if course.end_time <= course.start_time:
            raise ValidationError("Course end time must be after its start time")


def _coerce_format(value: object) -> CourseFormat:
    allowed = ", ".join(item.value for item in CourseFormat)
    if value is None:
        raise ValidationError(f"Course format must be one of: {allowed}")
    try:
        return CourseFormat(value)
    except ValueError as exc:
        raise ValidationError(f"Course format must be one of: {allowed}") from exc


def _coerce_preferences(value: object) -> Optional[UserPreferences]:
    if value is None or isinstance(value, UserPreferences):
        return value
    preferences = UserPreferences.from_dict(value)
    if preferences is None:
        raise ValidationError("Preferences must be an object")
    return preferences


class TrainingService:
    """Owns the replica, the background sync and every mutation intent."""

    def __init__(
        self,
        store: RecordStore,
        *,
        config: Optional[SyncConfig] = None,
        identity: Optional[IdentityStore] = None,
        sleep: Sleep = asyncio.sleep,
        id_factory: Callable[[str], str] = _default_id,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._config = config or SyncConfig()
        self._store = store
        self._identity = identity
        self._sleep = sleep
        self._new_id = id_factory
        self._today = today

        self.replica = ReplicaStore(store, fallback=lambda: seed_snapshot(self._today()))
        self.gate = SuppressionGate()
        self.scheduler = SyncScheduler(self.replica, self.gate, interval=self._config.poll_interval)
        self.mutator = OptimisticMutator(
            self.replica,
            store,
            self.gate,
            confirm_writes=self._config.confirm_writes,
            sleep=sleep,
        )
        self._current_user: Optional[User] = identity.load() if identity else None

    # ------------------------------------------------------------------
    # Lifecycle and reads
    # ------------------------------------------------------------------
    @property
    def current_user(self) -> Optional[User]:
        return self._current_user

    @property
    def config(self) -> SyncConfig:
        return self._config

    async def start(self) -> Snapshot:
        """Initial load, then background sync if a session was rehydrated."""

        snapshot = await self.replica.load()
        if self._current_user is not None:
            fresh = snapshot.find_user(self._current_user.id)
            if fresh is not None and fresh != self._current_user:
                await self._set_current_user(fresh)
            self.scheduler.start()
        return snapshot

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.mutator.close()
        aclose = getattr(self._store, "aclose", None)
        if aclose is not None:
            await aclose()

    async def refresh(self) -> Optional[ReconcileResult]:
        """Foreground refresh; runs even while writes hold the gate."""

        return await self.scheduler.refresh_now()

    def snapshot(self) -> Snapshot:
        return self.replica.snapshot()

    def today(self) -> date:
        return self._today()

    def status(self) -> Dict[str, object]:
        synced = self.replica.last_synced_at
        return {
            "connected": self.replica.connected,
            "empty_remote": self.replica.empty_remote,
            "last_synced_at": synced.isoformat() if synced else None,
            "polling_allowed": self.gate.allowed,
            "writes_in_flight": self.gate.active_count,
            "background_sync": self.scheduler.running,
            "skipped_ticks": self.scheduler.skipped_ticks,
            "signed_in": self._current_user.id if self._current_user else None,
        }

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def login(self, username: str, password: str) -> User:
        await self.replica.refresh()
        if self.replica.empty_remote:
            raise EmptyRemoteDataError()

        wanted_username = username.strip().lower()
        wanted_password = password.strip()
        user = next(
            (
                candidate
                for candidate in self.snapshot().users
                if candidate.normalized_username == wanted_username
                and candidate.password.strip() == wanted_password
            ),
            None,
        )
        if user is None:
            logger.warning("Failed login attempt for %s", wanted_username)
            raise AuthenticationError("Invalid username or password")

        await self._set_current_user(user)
        self.scheduler.start()
        logger.info("User %s signed in", user.id)
        return user

    async def sign_up(
        self,
        *,
        username: str,
        password: str,
        name: str,
        role: UserRole,
        region: Optional[str] = None,
    ) -> MutationOutcome:
        if role is UserRole.ADMIN:
            raise PermissionDeniedError("Administrator accounts cannot be self-registered")
        user = User(
            id=self._new_id(""),
            username=_require_text(username, "Username"),
            password=_require_text(password, "Password"),
            name=_require_text(name, "Name"),
            role=role,
            region=(region or "").strip() or None,
        )
        self._ensure_unique_username(user.username)

        previous = self._current_user
        await self._set_current_user(user)
        self.scheduler.start()
        outcome = await self.mutator.run(
            Mutation(Collection.USERS, WriteOp.ADD, user),
            lag=self._config.visibility_lag.user,
            success_message="Account created.",
            failure_message="Could not create the account. Please try again.",
        )
        if not outcome.ok:
            await self._restore_session(previous)
        return outcome

    async def logout(self) -> None:
        user, self._current_user = self._current_user, None
        if self._identity is not None:
            await anyio.to_thread.run_sync(self._identity.clear)
        await self.scheduler.stop()
        if user is not None:
            logger.info("User %s signed out", user.id)

    async def _set_current_user(self, user: User) -> None:
        self._current_user = user
        if self._identity is not None:
            await anyio.to_thread.run_sync(self._identity.save, user)

    async def _restore_session(self, previous: Optional[User]) -> None:
        """Put the session back as it was before a write that did not reach the store."""

        if previous is None:
            self._current_user = None
            if self._identity is not None:
                await anyio.to_thread.run_sync(self._identity.clear)
            await self.scheduler.stop()
        else:
            await self._set_current_user(previous)

    def _require_user(self) -> User:
        if self._current_user is None:
            raise AuthenticationError("Sign in first")
        return self._current_user

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def update_profile(self, **changes: object) -> MutationOutcome:
        user = self._require_user()
        unknown = set(changes) - _USER_FIELDS
        if unknown:
            raise ValidationError(f"Profile fields cannot be changed: {', '.join(sorted(unknown))}")
        updated = self._apply_user_changes(user, changes)
        await self._set_current_user(updated)
        outcome = await self.mutator.run(
            Mutation(Collection.USERS, WriteOp.UPDATE, updated),
            lag=self._config.visibility_lag.user,
            success_message="Profile updated.",
            failure_message="Could not save the profile.",
        )
        if not outcome.ok:
            await self._restore_session(user)
        return outcome

    async def admin_update_user(self, user_id: str, **changes: object) -> MutationOutcome:
        self._require_admin("edit users")
        unknown = set(changes) - _ADMIN_USER_FIELDS
        if unknown:
            raise ValidationError(f"User fields cannot be changed: {', '.join(sorted(unknown))}")
        user = self._get_user(user_id)
        updated = self._apply_user_changes(user, changes)
        if updated.normalized_username != user.normalized_username:
            self._ensure_unique_username(updated.username, exclude_id=user.id)
        previous = self._current_user
        editing_self = previous is not None and previous.id == user.id
        if editing_self:
            await self._set_current_user(updated)
        outcome = await self.mutator.run(
            Mutation(Collection.USERS, WriteOp.UPDATE, updated),
            lag=self._config.visibility_lag.user,
            success_message="User updated.",
            failure_message="Could not save the user.",
        )
        if editing_self and not outcome.ok:
            await self._restore_session(previous)
        return outcome

    async def create_user(
        self,
        *,
        username: str,
        name: str,
        role: UserRole,
        password: Optional[str] = None,
        region: Optional[str] = None,
    ) -> MutationOutcome:
        self._require_admin("create users")
        user = User(
            id=self._new_id("u"),
            username=_require_text(username, "Username"),
            password=(password or "").strip() or DEFAULT_USER_PASSWORD,
            name=_require_text(name, "Name"),
            role=role,
            region=None if role is UserRole.ADMIN else ((region or "").strip() or None),
            preferences=UserPreferences(),
        )
        self._ensure_unique_username(user.username)
        return await self.mutator.run(
            Mutation(Collection.USERS, WriteOp.ADD, user),
            lag=self._config.visibility_lag.user,
            success_message="User created.",
            failure_message="Could not create the user.",
        )

    async def delete_user(self, user_id: str, *, confirmed: bool) -> MutationOutcome:
        admin = self._require_admin("delete users")
        user = self._get_user(user_id)
        if user.id == admin.id:
            raise ValidationError("You cannot delete your own account")
        if not confirmed:
            return _cancelled()
        return await self.mutator.run(
            Mutation(Collection.USERS, WriteOp.DELETE, user),
            lag=self._config.visibility_lag.user,
            success_message="User deleted.",
            failure_message="Could not delete the user.",
        )

    def _apply_user_changes(self, user: User, changes: Mapping[str, object]) -> User:
        values: Dict[str, object] = {}
        for key, value in changes.items():
            if key == "preferences":
                values[key] = _coerce_preferences(value)
            elif key == "role":
                try:
                    values[key] = UserRole(value)
                except ValueError as exc:
                    raise ValidationError(f"Unknown role {value!r}") from exc
            elif key in {"username", "name", "password"}:
                if value is None:
                    continue
                values[key] = _require_text(str(value), key.capitalize())
            else:
                text = str(value).strip() if value is not None else ""
                values[key] = text or None
        return replace(user, **values)  # type: ignore[arg-type]

    def _ensure_unique_username(self, username: str, *, exclude_id: Optional[str] = None) -> None:
        wanted = username.strip().lower()
        for user in self.snapshot().users:
            if user.id != exclude_id and user.normalized_username == wanted:
                raise ValidationError(f"Username '{username}' is already taken")

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------
    async def create_course(
        self,
        *,
        title: str,
        start_date: str,
        end_date: Optional[str] = None,
        start_time: str = "",
        end_time: str = "",
        description: str = "",
        category: str = "Other",
        image_url: str = "",
        target_audience: str = "",
        format: CourseFormat = CourseFormat.ONLINE,
        location: str = "",
    ) -> MutationOutcome:
        author = self._require_user()
        status = approvals.initial_course_status(author.role)
        course = Course(
            id=self._new_id("c"),
            title=_require_text(title, "Title"),
            description=description.strip(),
            start_date=start_date.strip(),
            end_date=(end_date or start_date).strip(),
            start_time=start_time.strip(),
            end_time=end_time.strip(),
            category=category.strip() or "Other",
            image_url=image_url.strip() or DEFAULT_COURSE_IMAGE,
            target_audience=target_audience.strip() or "All staff",
            format=_coerce_format(format),
            location=location.strip(),
            approval_status=status,
            creator_role=author.role,
        )
        _validate_schedule(course)
        return await self.mutator.run(
            Mutation(Collection.COURSES, WriteOp.ADD, course),
            lag=self._config.visibility_lag.course,
            success_message=(
                "Course created."
                if status is CourseApprovalStatus.APPROVED
                else "Course submitted; awaiting key account approval."
            ),
            failure_message="Could not save the course.",
        )

    async def update_course(self, course_id: str, **changes: object) -> MutationOutcome:
        editor = self._require_user()
        course = self._get_course(course_id)
        if not approvals.can_edit_course(editor, course.creator_role):
            raise PermissionDeniedError(f"Role {editor.role.value} may not edit this course")
        if "approval_status" in changes:
            raise ValidationError("Approval status changes go through the approval workflow")
        unknown = set(changes) - _COURSE_FIELDS
        if unknown:
            raise ValidationError(f"Course fields cannot be changed: {', '.join(sorted(unknown))}")

        values: Dict[str, object] = {
            key: (_coerce_format(value) if key == "format" else str(value or "").strip())
            for key, value in changes.items()
        }
        if "title" in values:
            _require_text(str(values["title"]), "Title")
        resubmitted = course.approval_status is CourseApprovalStatus.REJECTED
        updated = replace(
            course,
            approval_status=approvals.course_status_after_edit(course.approval_status),
            **values,  # type: ignore[arg-type]
        )
        _validate_schedule(updated)
        return await self.mutator.run(
            Mutation(Collection.COURSES, WriteOp.UPDATE, updated),
            lag=self._config.visibility_lag.course,
            success_message=(
                "Course updated and resubmitted for approval." if resubmitted else "Course updated."
            ),
            failure_message="Could not save the course.",
        )

    async def delete_course(self, course_id: str, *, confirmed: bool) -> MutationOutcome:
        self._require_admin("delete courses")
        course = self._get_course(course_id)
        if not confirmed:
            return _cancelled()
        return await self.mutator.run(
            Mutation(Collection.COURSES, WriteOp.DELETE, course),
            lag=self._config.visibility_lag.course,
            success_message="Course deleted.",
            failure_message="Could not delete the course.",
        )

    async def decide_course(self, course_id: str, *, approve: bool) -> MutationOutcome:
        approver = self._require_user()
        approvals.require_role(approver, approvals.TERMINAL_APPROVER_ROLES, "approve courses")
        course = self._get_course(course_id)
        target = CourseApprovalStatus.APPROVED if approve else CourseApprovalStatus.REJECTED
        updated = replace(course, approval_status=approvals.decide_course(course.approval_status, target))
        logger.info(
            "Course %s moved from %s to %s by %s",
            course.id,
            course.approval_status.value,
            updated.approval_status.value,
            approver.id,
        )
        return await self.mutator.run(
            Mutation(Collection.COURSES, WriteOp.UPDATE, updated),
            lag=self._config.visibility_lag.course,
            success_message="Course published." if approve else "Course rejected.",
            failure_message="Could not save the decision.",
        )

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------
    async def submit_registrations(self, course_ids: Sequence[str]) -> MutationOutcome:
        requester = self._require_user()
        approvals.require_role(requester, approvals.REQUESTER_ROLES, "register for courses")

        selected = list(dict.fromkeys(course_id for course_id in course_ids if course_id))
        if not selected:
            raise ValidationError("Select at least one course")

        snapshot = self.snapshot()
        already = {
            registration.course_id
            for registration in snapshot.registrations
            if registration.requester_id == requester.id
        }
        registrations: List[Registration] = []
        for course_id in selected:
            course = self._get_course(course_id)
            if not approvals.is_offered_for_registration(course.approval_status):
                raise ValidationError(f"Course '{course.title}' is not open for registration")
            if course.id in already:
                continue
            registrations.append(
                Registration(
                    id=self._new_id("r"),
                    course_id=course.id,
                    requester_id=requester.id,
                    region=requester.region or "Unknown",
                    date=course.start_date or self._today().isoformat(),
                    status=approvals.initial_registration_status(),
                )
            )
        if not registrations:
            raise ValidationError("You are already registered for the selected courses")

        return await self.mutator.run_batch(
            [Mutation(Collection.REGISTRATIONS, WriteOp.ADD, registration) for registration in registrations],
            lag=self._config.visibility_lag.register,
            spacing=self._config.batch_spacing,
            success_message="Registration submitted; awaiting approval.",
            failure_message="Some registrations could not be saved",
        )

    async def cancel_registration(self, registration_id: str, *, confirmed: bool) -> MutationOutcome:
        requester = self._require_user()
        registration = self._get_registration(registration_id)
        if registration.requester_id != requester.id and requester.role is not UserRole.ADMIN:
            raise PermissionDeniedError("Only the requester may cancel this registration")
        if not confirmed:
            return _cancelled()
        return await self.mutator.run(
            Mutation(Collection.REGISTRATIONS, WriteOp.DELETE, registration),
            lag=self._config.visibility_lag.cancel,
            success_message="Registration cancelled.",
            failure_message="Could not cancel the registration. Please try again.",
        )

    async def confirm_registration(self, registration_id: str) -> MutationOutcome:
        approver = self._require_user()
        approvals.require_role(approver, approvals.REGISTRATION_APPROVER_ROLES, "approve registrations")
        registration = self._get_registration(registration_id)
        updated = replace(registration, status=approvals.confirm_registration(registration.status))
        return await self.mutator.run(
            Mutation(Collection.REGISTRATIONS, WriteOp.UPDATE, updated),
            lag=self._config.visibility_lag.registration_action,
            success_message="Registration confirmed.",
            failure_message="Could not confirm the registration.",
        )

    async def reject_registration(self, registration_id: str, *, confirmed: bool) -> MutationOutcome:
        approver = self._require_user()
        approvals.require_role(approver, approvals.REGISTRATION_APPROVER_ROLES, "reject registrations")
        registration = self._get_registration(registration_id)
        if not confirmed:
            return _cancelled()
        return await self.mutator.run(
            Mutation(Collection.REGISTRATIONS, WriteOp.DELETE, registration),
            lag=self._config.visibility_lag.registration_action,
            success_message="Registration rejected.",
            failure_message="Could not reject the registration.",
        )

    # ------------------------------------------------------------------
    # Settings and recovery
    # ------------------------------------------------------------------
    async def save_popup_config(self, *, is_active: bool, image_url: str = "", link_url: str = "") -> MutationOutcome:
        self._require_admin("change system settings")
        settings = SystemSettings(
            popup=PopupConfig(is_active=is_active, image_url=image_url.strip(), link_url=link_url.strip())
        )
        return await self.mutator.run(
            Mutation(Collection.SETTINGS, WriteOp.UPDATE, settings),
            lag=self._config.visibility_lag.settings,
            success_message="Popup settings saved.",
            failure_message="Could not save the popup settings.",
        )

    async def reseed(self, *, confirmed: bool) -> MutationOutcome:
        """Wipe the remote store and restore the seed accounts and courses."""

        if self._current_user is not None:
            self._require_admin("reseed the remote store")
        if not confirmed:
            return _cancelled()

        lease = self.gate.acquire("reseed")
        try:
            try:
                ok = await self._store.seed(seed_users(), seed_courses(self._today()))
            except Exception:
                logger.exception("Remote store adapter raised while reseeding")
                ok = False
            if ok:
                await self._sleep(self._config.visibility_lag.reseed)
        finally:
            self.gate.release(lease)

        await self.replica.refresh()
        if not ok:
            return MutationOutcome(False, "Could not restore the seed data.", written=0)
        logger.info("Remote store reseeded")
        return MutationOutcome(True, "Seed data restored. Sign in with admin / admin.")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def _require_admin(self, action: str) -> User:
        user = self._require_user()
        if user.role is not UserRole.ADMIN:
            raise PermissionDeniedError(f"Only administrators may {action}")
        return user

    def _get_user(self, user_id: str) -> User:
        user = self.snapshot().find_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def _get_course(self, course_id: str) -> Course:
        course = self.snapshot().find_course(course_id)
        if course is None:
            raise NotFoundError("Course", course_id)
        return course

    def _get_registration(self, registration_id: str) -> Registration:
        registration = self.snapshot().find_registration(registration_id)
        if registration is None:
            raise NotFoundError("Registration", registration_id)
        return registration


def build_service(config: SyncConfig, *, store: Optional[RecordStore] = None) -> TrainingService:
    """Wire a service from configuration, using the HTTP store when an endpoint is set."""

    if store is None:
        if config.endpoint:
            store = SheetRecordStore(
                config.endpoint,
                timeout=config.request_timeout,
                tz=config.local_timezone,
            )
        else:
            logger.warning("No remote endpoint configured; using an in-memory store seeded with sample data")
            store = InMemoryRecordStore(seed_snapshot(), tz=config.local_timezone)
    identity = IdentityStore(config.state_dir, secret=config.identity_secret)
    return TrainingService(store, config=config, identity=identity)


__all__ = ["DEFAULT_USER_PASSWORD", "TrainingService", "build_service"]
