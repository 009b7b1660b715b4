"""Domain models shared by the replica, the approval workflows and the API."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger("coursesync.models")


class UserRole(str, Enum):
    """Roles understood by the remote store. Values are the stored codes."""

    ADMIN = "ADMIN"
    AREA_MANAGER = "ASM"
    TRAINER = "TRAINER"
    REGIONAL_MANAGER = "RSM"
    PRODUCT_MANAGER = "PM"
    KEY_ACCOUNT = "KA"


class CourseApprovalStatus(str, Enum):
    """Publication lifecycle of a course."""

    PENDING_TRAINER = "pending_trainer"
    TRAINER_APPROVED = "trainer_approved"
    APPROVED = "approved"
    REJECTED = "rejected"


class RegistrationStatus(str, Enum):
    """Confirmation lifecycle of a seat request."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


class CourseFormat(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"
    LIVESTREAM = "Livestream"


class Collection(str, Enum):
    """Names of the collections (sheets) held by the remote store."""

    USERS = "Users"
    COURSES = "Courses"
    REGISTRATIONS = "Registrations"
    SETTINGS = "Settings"


class WriteOp(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


def _text(value: object, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def _optional_text(value: object) -> Optional[str]:
    text = _text(value)
    return text or None


_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})")


def _timestamp(text: str, tz: Optional[tzinfo]) -> Optional[datetime]:
    """Parse an ISO timestamp into local wall-clock time, if ``text`` is one.

    Offset-aware values are converted to ``tz`` (UTC when unset); naive
    values are taken as already local.
    """

    if "T" not in text:
        return None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        moment = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz or timezone.utc)
    return moment


def _date_text(value: object, tz: Optional[tzinfo] = None) -> str:
    """Normalise dates that the store may hand back as full ISO timestamps."""

    text = _text(value)
    moment = _timestamp(text, tz)
    if moment is not None:
        return moment.date().isoformat()
    if len(text) > 10 and text[4:5] == "-" and text[10:11] == "T":
        return text[:10]
    return text


def _time_text(value: object, tz: Optional[tzinfo] = None) -> str:
    """Reduce ``HH:mm:ss`` cells and time-only timestamps to ``HH:mm``."""

    text = _text(value)
    moment = _timestamp(text, tz)
    if moment is not None:
        return f"{moment.hour:02d}:{moment.minute:02d}"
    match = _CLOCK_PATTERN.match(text)
    if match is None or "T" in text:
        return text
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _flag(value: object, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class UserPreferences:
    email_notification: bool = True
    browser_notification: bool = False
    compact_mode: bool = False
    theme_color: Optional[str] = None
    language: Optional[str] = None

    @staticmethod
    def from_dict(data: object) -> Optional["UserPreferences"]:
        if isinstance(data, str):
            cleaned = data.strip()
            if not cleaned.startswith("{"):
                return None
            try:
                data = json.loads(cleaned)
            except ValueError:
                logger.warning("Ignoring malformed user preferences payload")
                return None
        if not isinstance(data, Mapping):
            return None
        return UserPreferences(
            email_notification=_flag(data.get("emailNotification"), True),
            browser_notification=_flag(data.get("browserNotification")),
            compact_mode=_flag(data.get("compactMode")),
            theme_color=_optional_text(data.get("themeColor")),
            language=_optional_text(data.get("language")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "emailNotification": self.email_notification,
                "browserNotification": self.browser_notification,
                "compactMode": self.compact_mode,
                "themeColor": self.theme_color,
                "language": self.language,
            }
        )


@dataclass(frozen=True)
class User:
    """A person known to the training system."""

    id: str
    username: str
    password: str
    name: str
    role: UserRole
    region: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    preferences: Optional[UserPreferences] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "User":
        if not _text(data.get("id")):
            raise ValueError("User record is missing an id")
        return User(
            id=_text(data["id"]),
            username=_text(data.get("username")),
            password=_text(data.get("password")),
            name=_text(data.get("name")),
            role=UserRole(_text(data.get("role"))),
            region=_optional_text(data.get("region")),
            avatar_url=_optional_text(data.get("avatarUrl")),
            email=_optional_text(data.get("email")),
            phone=_optional_text(data.get("phone")),
            bio=_optional_text(data.get("bio")),
            preferences=UserPreferences.from_dict(data.get("preferences")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "username": self.username,
                "password": self.password,
                "name": self.name,
                "role": self.role.value,
                "region": self.region,
                "avatarUrl": self.avatar_url,
                "email": self.email,
                "phone": self.phone,
                "bio": self.bio,
                "preferences": self.preferences.to_dict() if self.preferences else None,
            }
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialise without the credential, for consumers that only display users."""

        payload = self.to_dict()
        payload.pop("password", None)
        return payload

    @property
    def normalized_username(self) -> str:
        return self.username.strip().lower()


@dataclass(frozen=True)
class Course:
    """A training course and its publication status."""

    id: str
    title: str
    description: str
    start_date: str
    end_date: str
    start_time: str
    end_time: str
    category: str
    image_url: str
    target_audience: str
    format: CourseFormat
    location: str
    approval_status: CourseApprovalStatus
    creator_role: Optional[UserRole] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any], tz: Optional[tzinfo] = None) -> "Course":
        if not _text(data.get("id")):
            raise ValueError("Course record is missing an id")
        creator = _text(data.get("creatorRole"))
        return Course(
            id=_text(data["id"]),
            title=_text(data.get("title")),
            description=_text(data.get("description")),
            start_date=_date_text(data.get("startDate"), tz),
            end_date=_date_text(data.get("endDate"), tz),
            start_time=_time_text(data.get("startTime"), tz),
            end_time=_time_text(data.get("endTime"), tz),
            category=_text(data.get("category"), "Other") or "Other",
            image_url=_text(data.get("imageUrl")),
            target_audience=_text(data.get("targetAudience")),
            format=CourseFormat(_text(data.get("format")) or CourseFormat.ONLINE.value),
            location=_text(data.get("location")),
            approval_status=CourseApprovalStatus(_text(data.get("approvalStatus"))),
            creator_role=UserRole(creator) if creator else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "startDate": self.start_date,
                "endDate": self.end_date,
                "startTime": self.start_time,
                "endTime": self.end_time,
                "category": self.category,
                "imageUrl": self.image_url,
                "targetAudience": self.target_audience,
                "format": self.format.value,
                "location": self.location,
                "approvalStatus": self.approval_status.value,
                "creatorRole": self.creator_role.value if self.creator_role else None,
            }
        )


@dataclass(frozen=True)
class Registration:
    """A seat request from a user for one course."""

    id: str
    course_id: str
    requester_id: str
    region: str
    date: str
    status: RegistrationStatus

    @staticmethod
    def from_dict(data: Mapping[str, Any], tz: Optional[tzinfo] = None) -> "Registration":
        if not _text(data.get("id")):
            raise ValueError("Registration record is missing an id")
        return Registration(
            id=_text(data["id"]),
            course_id=_text(data.get("courseId")),
            requester_id=_text(data.get("asmId")),
            region=_text(data.get("region")),
            date=_date_text(data.get("date"), tz),
            status=RegistrationStatus(_text(data.get("status")) or RegistrationStatus.PENDING.value),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "courseId": self.course_id,
            "asmId": self.requester_id,
            "region": self.region,
            "date": self.date,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class PopupConfig:
    is_active: bool = False
    image_url: str = ""
    link_url: str = ""

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "PopupConfig":
        return PopupConfig(
            is_active=_flag(data.get("isActive")),
            image_url=_text(data.get("imageUrl")),
            link_url=_text(data.get("linkUrl")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"isActive": self.is_active, "imageUrl": self.image_url, "linkUrl": self.link_url}


@dataclass(frozen=True)
class SystemSettings:
    popup: PopupConfig = field(default_factory=PopupConfig)

    @staticmethod
    def from_dict(data: object) -> Optional["SystemSettings"]:
        if not isinstance(data, Mapping):
            return None
        popup = data.get("popup")
        if not isinstance(popup, Mapping):
            return None
        return SystemSettings(popup=PopupConfig.from_dict(popup))

    def to_dict(self) -> Dict[str, Any]:
        return {"popup": self.popup.to_dict()}


_T = TypeVar("_T")


def _parse_records(kind: str, raw: object, parser) -> Tuple[_T, ...]:
    if not isinstance(raw, list):
        return ()
    records: List[_T] = []
    for item in raw:
        if not isinstance(item, Mapping):
            logger.warning("Skipping non-object %s row from remote store", kind)
            continue
        try:
            records.append(parser(item))
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping malformed %s row %r: %s", kind, item.get("id"), exc)
    return tuple(records)


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of every replicated collection."""

    users: Tuple[User, ...] = ()
    courses: Tuple[Course, ...] = ()
    registrations: Tuple[Registration, ...] = ()
    settings: Optional[SystemSettings] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any], tz: Optional[tzinfo] = None) -> "Snapshot":
        """Parse a store payload; ``tz`` is the zone that timestamps are read in."""

        return Snapshot(
            users=_parse_records("user", data.get("users"), User.from_dict),
            courses=_parse_records("course", data.get("courses"), lambda row: Course.from_dict(row, tz)),
            registrations=_parse_records(
                "registration", data.get("registrations"), lambda row: Registration.from_dict(row, tz)
            ),
            settings=SystemSettings.from_dict(data.get("settings")),
        )

    def to_dict(self, *, include_passwords: bool = True) -> Dict[str, Any]:
        if include_passwords:
            users = [user.to_dict() for user in self.users]
        else:
            users = [user.to_public_dict() for user in self.users]
        payload: Dict[str, Any] = {
            "users": users,
            "courses": [course.to_dict() for course in self.courses],
            "registrations": [registration.to_dict() for registration in self.registrations],
        }
        if self.settings is not None:
            payload["settings"] = self.settings.to_dict()
        return payload

    def with_collection(self, collection: Collection, records: Iterable[object]) -> "Snapshot":
        values = tuple(records)
        if collection is Collection.USERS:
            return replace(self, users=values)  # type: ignore[arg-type]
        if collection is Collection.COURSES:
            return replace(self, courses=values)  # type: ignore[arg-type]
        if collection is Collection.REGISTRATIONS:
            return replace(self, registrations=values)  # type: ignore[arg-type]
        raise ValueError(f"{collection.value} is not a record collection")

    def records(self, collection: Collection) -> Tuple[object, ...]:
        if collection is Collection.USERS:
            return self.users
        if collection is Collection.COURSES:
            return self.courses
        if collection is Collection.REGISTRATIONS:
            return self.registrations
        raise ValueError(f"{collection.value} is not a record collection")

    def find_user(self, user_id: str) -> Optional[User]:
        return next((user for user in self.users if user.id == user_id), None)

    def find_course(self, course_id: str) -> Optional[Course]:
        return next((course for course in self.courses if course.id == course_id), None)

    def find_registration(self, registration_id: str) -> Optional[Registration]:
        return next(
            (registration for registration in self.registrations if registration.id == registration_id),
            None,
        )


RECORD_COLLECTIONS = (Collection.USERS, Collection.COURSES, Collection.REGISTRATIONS)


__all__ = [
    "Collection",
    "Course",
    "CourseApprovalStatus",
    "CourseFormat",
    "PopupConfig",
    "RECORD_COLLECTIONS",
    "Registration",
    "RegistrationStatus",
    "Snapshot",
    "SystemSettings",
    "User",
    "UserPreferences",
    "UserRole",
    "WriteOp",
]
