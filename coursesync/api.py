"""FastAPI application exposing replica snapshots and mutation intents to a UI."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .approvals import status_label
from .errors import (
    AuthenticationError,
    CourseSyncError,
    EmptyRemoteDataError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import CourseFormat, UserRole
from .mutations import MutationOutcome
from .service import TrainingService
from .views import (
    calendar_entries,
    catalog,
    course_approval_queue,
    notifications,
    registration_approval_queue,
    registrations_for,
    statistics,
)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=200)


class SignUpRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)
    role: UserRole
    region: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username must not be empty")
        return stripped


class PreferencesPayload(BaseModel):
    emailNotification: bool = True
    browserNotification: bool = False
    compactMode: bool = False
    themeColor: Optional[str] = None
    language: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    bio: Optional[str] = Field(default=None, max_length=2000)
    password: Optional[str] = Field(default=None, max_length=200)
    avatar_url: Optional[str] = None
    preferences: Optional[PreferencesPayload] = None


class UserUpdateRequest(ProfileUpdateRequest):
    username: Optional[str] = Field(default=None, max_length=100)
    role: Optional[UserRole] = None
    region: Optional[str] = Field(default=None, max_length=100)


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    role: UserRole
    password: Optional[str] = Field(default=None, max_length=200)
    region: Optional[str] = Field(default=None, max_length=100)


class CourseCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    start_date: str
    end_date: Optional[str] = None
    start_time: str = ""
    end_time: str = ""
    description: str = ""
    category: str = "Other"
    image_url: str = ""
    target_audience: str = ""
    format: CourseFormat = CourseFormat.ONLINE
    location: str = ""


class CourseUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=300)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    target_audience: Optional[str] = None
    format: Optional[CourseFormat] = None
    location: Optional[str] = None


class CourseDecisionRequest(BaseModel):
    approve: bool


class RegistrationRequest(BaseModel):
    course_ids: List[str] = Field(min_length=1)

    @field_validator("course_ids")
    @classmethod
    def _normalize_course_ids(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("course_ids must contain at least one course")
        return cleaned


class PopupConfigRequest(BaseModel):
    is_active: bool
    image_url: str = ""
    link_url: str = ""


def _outcome_response(outcome: MutationOutcome) -> JSONResponse:
    failed_write = not outcome.ok and outcome.attempted > 0
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY if failed_write else status.HTTP_200_OK,
        content=outcome.to_dict(),
    )


def create_app(service: TrainingService) -> FastAPI:
    """Build the UI-facing application around a single client session."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="Training Registration Sync",
        description="Local replica of users, courses and registrations with approval workflows",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    def _require_user():
        user = service.current_user
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sign in first")
        return user

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @app.get("/status")
    async def get_status() -> Dict[str, object]:
        return service.status()

    @app.get("/snapshot")
    async def get_snapshot() -> Dict[str, object]:
        return service.snapshot().to_dict(include_passwords=False)

    @app.post("/refresh")
    async def refresh() -> Dict[str, object]:
        result = await service.refresh()
        return {"status": service.status(), "changes": result.to_dict() if result else None}

    @app.get("/catalog")
    async def get_catalog() -> Dict[str, object]:
        return {"courses": [course.to_dict() for course in catalog(service.snapshot().courses)]}

    @app.get("/approvals/courses")
    async def get_course_queue() -> Dict[str, object]:
        return {
            "courses": [
                {**course.to_dict(), "statusLabel": status_label(course.approval_status)}
                for course in course_approval_queue(service.snapshot().courses)
            ]
        }

    @app.get("/approvals/registrations")
    async def get_registration_queue() -> Dict[str, object]:
        return {"registrations": [view.to_dict() for view in registration_approval_queue(service.snapshot())]}

    @app.get("/registrations/mine")
    async def get_my_registrations() -> Dict[str, object]:
        user = _require_user()
        return {"registrations": [view.to_dict() for view in registrations_for(service.snapshot(), user)]}

    @app.get("/calendar")
    async def get_calendar() -> Dict[str, object]:
        user = _require_user()
        entries = calendar_entries(service.snapshot(), user)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/notifications")
    async def get_notifications() -> Dict[str, object]:
        user = _require_user()
        notes = notifications(service.snapshot(), user, service.today())
        return {"notifications": [note.to_dict() for note in notes]}

    @app.get("/statistics")
    async def get_statistics() -> Dict[str, object]:
        return {"statistics": statistics(service.snapshot(), today=service.today())}

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    @app.get("/session")
    async def get_session() -> Dict[str, object]:
        user = service.current_user
        return {"user": user.to_public_dict() if user else None}

    @app.post("/session/login")
    async def login(payload: LoginRequest) -> Dict[str, object]:
        user = await service.login(payload.username, payload.password)
        return {"user": user.to_public_dict()}

    @app.post("/session/signup")
    async def sign_up(payload: SignUpRequest) -> JSONResponse:
        return _outcome_response(await service.sign_up(**payload.model_dump()))

    @app.post("/session/logout")
    async def logout() -> Dict[str, object]:
        await service.logout()
        return {"user": None}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.put("/profile")
    async def update_profile(payload: ProfileUpdateRequest) -> JSONResponse:
        return _outcome_response(await service.update_profile(**payload.model_dump(exclude_unset=True)))

    @app.post("/users")
    async def create_user(payload: UserCreateRequest) -> JSONResponse:
        return _outcome_response(await service.create_user(**payload.model_dump()))

    @app.put("/users/{user_id}")
    async def update_user(user_id: str, payload: UserUpdateRequest) -> JSONResponse:
        return _outcome_response(
            await service.admin_update_user(user_id, **payload.model_dump(exclude_unset=True))
        )

    @app.delete("/users/{user_id}")
    async def delete_user(user_id: str, confirm: bool = Query(default=False)) -> JSONResponse:
        return _outcome_response(await service.delete_user(user_id, confirmed=confirm))

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------
    @app.post("/courses")
    async def create_course(payload: CourseCreateRequest) -> JSONResponse:
        return _outcome_response(await service.create_course(**payload.model_dump()))

    @app.put("/courses/{course_id}")
    async def update_course(course_id: str, payload: CourseUpdateRequest) -> JSONResponse:
        return _outcome_response(
            await service.update_course(course_id, **payload.model_dump(exclude_unset=True))
        )

    @app.delete("/courses/{course_id}")
    async def delete_course(course_id: str, confirm: bool = Query(default=False)) -> JSONResponse:
        return _outcome_response(await service.delete_course(course_id, confirmed=confirm))

    @app.post("/courses/{course_id}/decision")
    async def decide_course(course_id: str, payload: CourseDecisionRequest) -> JSONResponse:
        return _outcome_response(await service.decide_course(course_id, approve=payload.approve))

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------
    @app.post("/registrations")
    async def submit_registrations(payload: RegistrationRequest) -> JSONResponse:
        return _outcome_response(await service.submit_registrations(payload.course_ids))

    @app.delete("/registrations/{registration_id}")
    async def cancel_registration(registration_id: str, confirm: bool = Query(default=False)) -> JSONResponse:
        return _outcome_response(await service.cancel_registration(registration_id, confirmed=confirm))

    @app.post("/registrations/{registration_id}/confirm")
    async def confirm_registration(registration_id: str) -> JSONResponse:
        return _outcome_response(await service.confirm_registration(registration_id))

    @app.post("/registrations/{registration_id}/reject")
    async def reject_registration(registration_id: str, confirm: bool = Query(default=False)) -> JSONResponse:
        return _outcome_response(await service.reject_registration(registration_id, confirmed=confirm))

    # ------------------------------------------------------------------
    # Settings and recovery
    # ------------------------------------------------------------------
    @app.put("/settings/popup")
    async def save_popup(payload: PopupConfigRequest) -> JSONResponse:
        return _outcome_response(await service.save_popup_config(**payload.model_dump()))

    @app.post("/recovery/reseed")
    async def reseed(confirm: bool = Query(default=False)) -> JSONResponse:
        return _outcome_response(await service.reseed(confirmed=confirm))

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------
    _status_codes = (
        (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
        (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
        (NotFoundError, status.HTTP_404_NOT_FOUND),
        (InvalidTransitionError, status.HTTP_409_CONFLICT),
        (EmptyRemoteDataError, status.HTTP_409_CONFLICT),
        (ValidationError, status.HTTP_400_BAD_REQUEST),
    )

    @app.exception_handler(CourseSyncError)
    async def handle_sync_error(_: object, exc: CourseSyncError):
        code = next(
            (code for kind, code in _status_codes if isinstance(exc, kind)),
            status.HTTP_400_BAD_REQUEST,
        )
        payload: Dict[str, object] = {"detail": str(exc)}
        if isinstance(exc, EmptyRemoteDataError):
            payload["recovery"] = "/recovery/reseed?confirm=true"
        return JSONResponse(status_code=code, content=payload)

    return app


__all__ = ["create_app"]
