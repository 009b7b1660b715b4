"""Fixed seed data used offline and to rebuild a wiped remote store."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional, Sequence, Tuple

from .models import (
    Course,
    CourseApprovalStatus,
    CourseFormat,
    Registration,
    RegistrationStatus,
    Snapshot,
    SystemSettings,
    User,
    UserRole,
)

AREA_MANAGER_REGIONS = (
    "Miền Bắc 1",
    "Miền Bắc 2",
    "Hà Nội",
    "Hồ Chí Minh",
    "Miền Trung",
    "Miền Đông",
    "Miền Tây",
)
TRAINER_REGIONS = ("Miền Bắc", "Miền Trung", "Miền Nam")

DEFAULT_COURSE_IMAGE = (
    "https://images.unsplash.com/photo-1517245386807-bb43f82c33c4?auto=format&fit=crop&q=80&w=400"
)


def _relative_date(today: date, offset: int) -> str:
    return (today + timedelta(days=offset)).isoformat()


def seed_users() -> Tuple[User, ...]:
    return (
        User(id="u1", username="admin", password="admin", name="Hệ Thống Admin", role=UserRole.ADMIN),
        User(
            id="u2",
            username="asm_hanoi",
            password="password",
            name="ASM Hà Nội",
            role=UserRole.AREA_MANAGER,
            region="Hà Nội",
        ),
        User(
            id="u3",
            username="asm_hcm",
            password="password",
            name="ASM HCM",
            role=UserRole.AREA_MANAGER,
            region="Hồ Chí Minh",
        ),
        User(
            id="u4",
            username="trainer_bac",
            password="password",
            name="GV Miền Bắc",
            role=UserRole.TRAINER,
            region="Miền Bắc",
        ),
        User(
            id="u5",
            username="rsm_mienbac",
            password="password",
            name="RSM Miền Bắc",
            role=UserRole.REGIONAL_MANAGER,
            region="Miền Bắc 1",
        ),
        User(id="u6", username="pm_product", password="password", name="Product Manager", role=UserRole.PRODUCT_MANAGER),
        User(id="u7", username="ka_manager", password="password", name="Key Account Mgr", role=UserRole.KEY_ACCOUNT),
    )


def seed_courses(today: Optional[date] = None) -> Tuple[Course, ...]:
    """Sample courses covering every approval status, dated relative to ``today``."""

    today = today or date.today()
    return (
        Course(
            id="c1",
            title="Nâng Cao Kỹ Năng Bán Hàng",
            description="Làm chủ nghệ thuật chốt đơn và xây dựng mối quan hệ khách hàng.",
            start_date=_relative_date(today, 2),
            end_date=_relative_date(today, 3),
            start_time="08:30",
            end_time="17:00",
            category="Sales",
            image_url="https://images.unsplash.com/photo-1552581234-26160f608093?auto=format&fit=crop&q=80&w=400",
            target_audience="ASM, Sales Sup, Nhân viên kinh doanh",
            format=CourseFormat.OFFLINE,
            location="Phòng họp Ruby, Tầng 5, VP Hà Nội",
            approval_status=CourseApprovalStatus.APPROVED,
            creator_role=UserRole.TRAINER,
        ),
        Course(
            id="c2",
            title="Kiến Thức Sản Phẩm Mới",
            description=f"Đánh giá chuyên sâu về dòng sản phẩm hè {today.year} và các tính năng chính.",
            start_date=_relative_date(today, 5),
            end_date=_relative_date(today, 5),
            start_time="09:00",
            end_time="16:30",
            category="Product",
            image_url="https://images.unsplash.com/photo-1523275335684-37898b6baf30?auto=format&fit=crop&q=80&w=400",
            target_audience="Toàn bộ nhân viên",
            format=CourseFormat.ONLINE,
            location="Zoom ID: 888 999 1111",
            approval_status=CourseApprovalStatus.APPROVED,
            creator_role=UserRole.PRODUCT_MANAGER,
        ),
        Course(
            id="c3",
            title="Lãnh Đạo Hiệu Quả Cho ASM",
            description="Phát triển kỹ năng quản lý để dẫn dắt đội ngũ vùng hiệu quả.",
            start_date=_relative_date(today, 10),
            end_date=_relative_date(today, 12),
            start_time="08:00",
            end_time="17:30",
            category="Soft Skills",
            image_url="https://images.unsplash.com/photo-1519389950473-47ba0277781c?auto=format&fit=crop&q=80&w=400",
            target_audience="ASM, Giám đốc vùng",
            format=CourseFormat.OFFLINE,
            location="Trung tâm đào tạo HCM",
            approval_status=CourseApprovalStatus.PENDING_TRAINER,
            creator_role=UserRole.REGIONAL_MANAGER,
        ),
        Course(
            id="c4",
            title="Căn Bản Tiếp Thị Kỹ Thuật Số",
            description="Hiểu về mạng xã hội và tìm kiếm địa phương để tăng trưởng vùng.",
            start_date=_relative_date(today, 15),
            end_date=_relative_date(today, 15),
            start_time="13:00",
            end_time="17:00",
            category="Marketing",
            image_url="https://images.unsplash.com/photo-1460925895917-afdab827c52f?auto=format&fit=crop&q=80&w=400",
            target_audience="Marketing Team, ASM",
            format=CourseFormat.ONLINE,
            location="Google Meet: meet.google.com/abc-xyz-123",
            approval_status=CourseApprovalStatus.TRAINER_APPROVED,
            creator_role=UserRole.TRAINER,
        ),
    )


def offline_registrations(courses: Sequence[Course]) -> Tuple[Registration, ...]:
    """Registrations shown when running against seed data, so calendars are populated."""

    def _start(index: int) -> str:
        return courses[index].start_date if len(courses) > index else date.today().isoformat()

    return (
        Registration("r_mock_1", "c1", "u2", "Hà Nội", _start(0), RegistrationStatus.CONFIRMED),
        Registration("r_mock_2", "c2", "u2", "Hà Nội", _start(1), RegistrationStatus.PENDING),
        Registration("r_mock_3", "c3", "u3", "Hồ Chí Minh", _start(2), RegistrationStatus.CONFIRMED),
    )


def reseed_registrations(users: Sequence[User], courses: Sequence[Course]) -> Tuple[Registration, ...]:
    """The single pending registration written alongside a reseed."""

    requester = next((user for user in users if user.role is UserRole.AREA_MANAGER), None)
    first_course = courses[0] if courses else None
    return (
        Registration(
            id="reg_seed_1",
            course_id=first_course.id if first_course else "c1",
            requester_id=requester.id if requester else "u2",
            region=(requester.region if requester and requester.region else "Hà Nội"),
            date=first_course.start_date if first_course else date.today().isoformat(),
            status=RegistrationStatus.PENDING,
        ),
    )


def seed_snapshot(today: Optional[date] = None) -> Snapshot:
    courses = seed_courses(today)
    return Snapshot(
        users=seed_users(),
        courses=courses,
        registrations=offline_registrations(courses),
        settings=SystemSettings(),
    )


__all__ = [
    "AREA_MANAGER_REGIONS",
    "DEFAULT_COURSE_IMAGE",
    "TRAINER_REGIONS",
    "offline_registrations",
    "reseed_registrations",
    "seed_courses",
    "seed_snapshot",
    "seed_users",
]
