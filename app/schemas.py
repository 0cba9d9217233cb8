# app/schemas.py
import re
import uuid
from datetime import datetime, date
from typing import Annotated, Generic, List, Literal, Optional, TypeVar, Union

from fastapi import Query
from pydantic import BaseModel, EmailStr, Field, TypeAdapter, field_validator

from .models import (
    AppointmentStatus, AuditAction, CircleRole, DepartmentStatus, Gender, LiveStreamStatus,
    NotificationStatus, NotificationType, RelationshipType, UserRole, UserStatus,
    VisitType,
)

T = TypeVar("T")

MAX_PER_PAGE = 100
PHONE_PATTERN = re.compile(r"^\d{11}$")

# Fixed slot enumeration, in booking order
TIME_SLOTS = (
    "09:00", "09:30", "10:00", "10:30", "11:00", "11:30",
    "14:00", "14:30", "15:00", "15:30", "16:00", "16:30",
)


# --- Validators ---
_ID_WEIGHTS = (7, 9, 10, 5, 8, 4, 2, 1, 6, 3, 7, 9, 10, 5, 8, 4, 2)
_ID_CHECK_CODES = ('1', '0', 'X', '9', '8', '7', '6', '5', '4', '3', '2')
_THIRTY_DAY_MONTHS = (4, 6, 9, 11)


def _ascii_digits(value: str) -> bool:
    return value.isascii() and value.isdigit()


def is_valid_id_number(id_number: str) -> bool:
    """Validate a 15- or 18-character resident identity number.

    Checks the embedded month/day and, for 18-character numbers, the
    weighted mod-11 check character (a lowercase ``x`` is accepted).
    """
    if len(id_number) not in (15, 18):
        return False

    if len(id_number) == 18:
        month_part, day_part = id_number[10:12], id_number[12:14]
    else:
        month_part, day_part = id_number[8:10], id_number[10:12]

    if not (_ascii_digits(month_part) and _ascii_digits(day_part)):
        return False
    month, day = int(month_part), int(day_part)
    if month < 1 or month > 12 or day < 1 or day > 31:
        return False
    if month == 2 and day > 29:
        return False
    if month in _THIRTY_DAY_MONTHS and day > 30:
        return False

    if len(id_number) == 15:
        return _ascii_digits(id_number)

    body = id_number[:17]
    if not _ascii_digits(body):
        return False
    total = sum(int(digit) * weight for digit, weight in zip(body, _ID_WEIGHTS))
    expected = _ID_CHECK_CODES[total % 11]
    return id_number[17].upper() == expected


def _check_phone(v):
    if v is not None and not PHONE_PATTERN.match(v):
        raise ValueError('phone must be 11 digits')
    return v


def _check_optional_id_number(v):
    if v is not None and not is_valid_id_number(v):
        raise ValueError("id_number is not a valid identity number")
    return v


def _check_slot(v):
    if v is not None and v not in TIME_SLOTS:
        raise ValueError(f"time_slot must be one of {', '.join(TIME_SLOTS)}")
    return v


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


class ApiResponse(BaseModel, Generic[T]):
    """Uniform response envelope"""
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


def ok(data=None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    per_page: int


class PageParams:
    """Listing pagination; per_page is clamped rather than rejected"""

    def __init__(self, page: int = Query(1, ge=1), per_page: int = Query(20, ge=1)):
        self.page = page
        self.per_page = min(per_page, MAX_PER_PAGE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


# --- User Schemas ---
class UserView(BaseSchema):
    id: uuid.UUID
    account: str
    name: str
    gender: Optional[Gender] = None
    phone: str
    email: Optional[str] = None
    birthday: Optional[date] = None
    role: UserRole
    status: UserStatus
    created_at: datetime
    updated_at: datetime


class UserBase(BaseModel):
    account: str = Field(..., min_length=3, max_length=50)
    name: str = Field(..., min_length=2, max_length=50)
    phone: str
    email: Optional[EmailStr] = None
    gender: Optional[Gender] = None
    birthday: Optional[date] = None

    check_phone = field_validator("phone")(_check_phone)


class RegisterRequest(UserBase):
    password: str = Field(..., min_length=6, max_length=128)
    role: UserRole = UserRole.patient


class UserCreate(RegisterRequest):
    """Admin-created account; any role allowed"""


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    gender: Optional[Gender] = None
    birthday: Optional[date] = None
    password: Optional[str] = Field(None, min_length=6, max_length=128)
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None

    check_phone = field_validator("phone")(_check_phone)


class BatchDeleteRequest(BaseModel):
    ids: List[uuid.UUID] = Field(..., min_length=1, max_length=MAX_PER_PAGE)


class LoginRequest(BaseModel):
    account: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserView


class Principal(BaseModel):
    """Resolved caller identity"""
    user_id: uuid.UUID
    role: UserRole


# --- Department Schemas ---
class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=50)
    contact_person: Optional[str] = Field(None, max_length=50)
    contact_phone: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None
    status: DepartmentStatus = DepartmentStatus.active


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    contact_person: Optional[str] = Field(None, max_length=50)
    contact_phone: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None
    status: Optional[DepartmentStatus] = None


class DepartmentView(BaseSchema):
    id: uuid.UUID
    name: str
    code: str
    contact_person: Optional[str] = None
    contact_phone: Optional[str] = None
    description: Optional[str] = None
    status: DepartmentStatus
    created_at: datetime
    updated_at: datetime


# --- Doctor Schemas ---
class DoctorCreate(BaseModel):
    user_id: Optional[uuid.UUID] = None
    certificate_type: str = Field("id_card", max_length=20)
    id_number: Optional[str] = None
    hospital: str = Field(..., min_length=1, max_length=100)
    department: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=50)
    introduction: Optional[str] = None
    specialties: List[str] = Field(default_factory=list)
    experience: Optional[str] = None

    check_id_number = field_validator("id_number")(_check_optional_id_number)

    @field_validator('specialties')
    @classmethod
    def validate_specialties(cls, v):
        if any(not item or len(item) > 50 for item in v):
            raise ValueError('each specialty must be 1-50 characters')
        return v


class DoctorUpdate(BaseModel):
    certificate_type: Optional[str] = Field(None, max_length=20)
    id_number: Optional[str] = None
    hospital: Optional[str] = Field(None, min_length=1, max_length=100)
    department: Optional[str] = Field(None, min_length=1, max_length=50)
    title: Optional[str] = Field(None, min_length=1, max_length=50)
    introduction: Optional[str] = None
    specialties: Optional[List[str]] = None
    experience: Optional[str] = None

    check_id_number = field_validator("id_number")(_check_optional_id_number)


class DoctorView(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    certificate_type: str
    id_number: Optional[str] = None
    hospital: str
    department: str
    title: str
    introduction: Optional[str] = None
    specialties: List[str]
    experience: Optional[str] = None
    avatar: Optional[str] = None
    license_photo: Optional[str] = None
    id_card_front: Optional[str] = None
    id_card_back: Optional[str] = None
    title_cert: Optional[str] = None
    created_at: datetime
    updated_at: datetime


DOCTOR_PHOTO_FIELDS = ("avatar", "license_photo", "id_card_front", "id_card_back", "title_cert")


# --- Patient Profile Schemas ---
class PatientProfileCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    id_number: str
    phone: str
    gender: Optional[Gender] = None
    birthday: Optional[date] = None
    relationship: RelationshipType = RelationshipType.self
    is_default: bool = False

    check_phone = field_validator("phone")(_check_phone)

    @field_validator('id_number')
    @classmethod
    def validate_id_number(cls, v):
        if not is_valid_id_number(v):
            raise ValueError('id_number is not a valid identity number')
        return v


class PatientProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    id_number: Optional[str] = None
    phone: Optional[str] = None
    gender: Optional[Gender] = None
    birthday: Optional[date] = None
    relationship: Optional[RelationshipType] = None

    check_phone = field_validator("phone")(_check_phone)

    check_id_number = field_validator("id_number")(_check_optional_id_number)


class PatientProfileView(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    id_number: str
    phone: str
    gender: Optional[Gender] = None
    birthday: Optional[date] = None
    relationship: RelationshipType
    is_default: bool
    created_at: datetime
    updated_at: datetime


# --- Appointment Schemas ---
class AppointmentCreate(BaseModel):
    doctor_id: uuid.UUID
    patient_id: Optional[uuid.UUID] = None
    appointment_date: datetime
    time_slot: str
    visit_type: VisitType
    symptoms: str = Field("", max_length=100)
    has_visited_before: bool = False

    check_slot = field_validator("time_slot")(_check_slot)


class AppointmentUpdate(BaseModel):
    appointment_date: Optional[datetime] = None
    time_slot: Optional[str] = None
    visit_type: Optional[VisitType] = None
    symptoms: Optional[str] = Field(None, max_length=100)
    has_visited_before: Optional[bool] = None
    status: Optional[AppointmentStatus] = None
    cancellation_reason: Optional[str] = Field(None, max_length=500)

    check_slot = field_validator("time_slot")(_check_slot)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AppointmentView(BaseSchema):
    id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    appointment_date: datetime
    time_slot: str
    visit_type: VisitType
    symptoms: str
    has_visited_before: bool
    status: AppointmentStatus
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AvailableSlots(BaseModel):
    doctor_id: uuid.UUID
    date: date
    slots: List[str]


# --- Prescription Schemas ---
class Medicine(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    dosage: str = Field(..., min_length=1, max_length=50)
    frequency: str = Field(..., min_length=1, max_length=50)
    duration: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=200)


class PrescriptionCreate(BaseModel):
    doctor_id: Optional[uuid.UUID] = None
    patient_id: uuid.UUID
    patient_name: str = Field(..., min_length=1, max_length=50)
    diagnosis: str = Field(..., min_length=1, max_length=500)
    medicines: List[Medicine] = Field(..., min_length=1)
    instructions: Optional[str] = Field(None, max_length=1000)
    prescription_date: Optional[datetime] = None


class PrescriptionView(BaseSchema):
    id: uuid.UUID
    code: str
    doctor_id: uuid.UUID
    patient_id: uuid.UUID
    patient_name: str
    diagnosis: str
    medicines: List[Medicine]
    instructions: Optional[str] = None
    prescription_date: datetime
    created_at: datetime


# --- Review Schemas ---
Rating = Annotated[int, Field(ge=1, le=5)]


class ReviewCreate(BaseModel):
    appointment_id: uuid.UUID
    rating: Rating
    attitude_rating: Rating
    professionalism_rating: Rating
    efficiency_rating: Rating
    comment: Optional[str] = Field(None, max_length=1000)
    is_anonymous: bool = False


class ReviewUpdate(BaseModel):
    rating: Optional[Rating] = None
    attitude_rating: Optional[Rating] = None
    professionalism_rating: Optional[Rating] = None
    efficiency_rating: Optional[Rating] = None
    comment: Optional[str] = Field(None, max_length=1000)
    is_anonymous: Optional[bool] = None


class ReviewReply(BaseModel):
    reply: str = Field(..., min_length=1, max_length=500)


class ReviewVisibility(BaseModel):
    is_visible: bool


class ReviewView(BaseSchema):
    id: uuid.UUID
    appointment_id: uuid.UUID
    doctor_id: uuid.UUID
    # None on anonymous reviews shown to anyone but the author or an admin
    patient_id: Optional[uuid.UUID] = None
    patient_name: Optional[str] = None
    rating: int
    attitude_rating: int
    professionalism_rating: int
    efficiency_rating: int
    comment: Optional[str] = None
    reply: Optional[str] = None
    reply_at: Optional[datetime] = None
    is_anonymous: bool
    is_visible: bool
    created_at: datetime
    updated_at: datetime


class RatingDistribution(BaseModel):
    five_star: int = 0
    four_star: int = 0
    three_star: int = 0
    two_star: int = 0
    one_star: int = 0


class ReviewStatistics(BaseModel):
    doctor_id: uuid.UUID
    total_reviews: int
    average_rating: float
    average_attitude: float
    average_professionalism: float
    average_efficiency: float
    rating_distribution: RatingDistribution


# --- Notification Schemas ---
class NotificationView(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    notification_type: NotificationType
    title: str
    content: str
    related_id: Optional[uuid.UUID] = None
    status: NotificationStatus
    created_at: datetime
    read_at: Optional[datetime] = None


class NotificationList(Page[NotificationView]):
    unread_count: int


class NotificationStats(BaseModel):
    total: int
    unread: int
    read: int


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    target_role: Optional[UserRole] = None


class AnnouncementResult(BaseModel):
    recipients: int
    delivered_live: int


# --- Live Stream Schemas ---
class LiveStreamCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    scheduled_time: datetime


class LiveStreamUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    scheduled_time: Optional[datetime] = None
    stream_url: Optional[str] = Field(None, max_length=500)


class LiveStreamStart(BaseModel):
    stream_url: Optional[str] = Field(None, max_length=500)


class LiveStreamView(BaseSchema):
    id: uuid.UUID
    title: str
    host_id: uuid.UUID
    host_name: str
    scheduled_time: datetime
    stream_url: Optional[str] = None
    status: LiveStreamStatus
    viewer_count: int = 0
    created_at: datetime
    updated_at: datetime


class ViewerCount(BaseModel):
    stream_id: uuid.UUID
    count: int


# --- Circle Schemas ---
class CircleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: str = Field(..., min_length=1, max_length=50)


class CircleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    is_active: Optional[bool] = None


class CircleView(BaseSchema):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    category: str
    creator_id: uuid.UUID
    member_count: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
    member_role: Optional[CircleRole] = None


class CircleMemberView(BaseModel):
    user_id: uuid.UUID
    user_name: str
    role: CircleRole
    joined_at: datetime


class MemberRoleUpdate(BaseModel):
    role: CircleRole


# --- Circle Post Schemas ---
class PostCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=1000)
    images: List[str] = Field(default_factory=list, max_length=9)


class PostUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = Field(None, min_length=1, max_length=1000)
    images: Optional[List[str]] = Field(None, max_length=9)


class PostView(BaseModel):
    id: uuid.UUID
    circle_id: uuid.UUID
    circle_name: str
    author_id: uuid.UUID
    author_name: str
    title: str
    content: str
    images: List[str]
    likes: int
    comments: int
    is_liked: bool
    created_at: datetime
    updated_at: datetime


class LikeResult(BaseModel):
    post_id: uuid.UUID
    liked: bool
    likes: int


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=500)


class CommentView(BaseModel):
    id: uuid.UUID
    post_id: uuid.UUID
    author_id: uuid.UUID
    author_name: str
    content: str
    created_at: datetime


# --- Video consultation signaling ---
class CallResult(BaseModel):
    consultation_id: uuid.UUID
    to_user_id: uuid.UUID
    delivered: bool


# --- Audit / Health ---
class AuditLogView(BaseSchema):
    id: int
    timestamp: datetime
    user_id: Optional[uuid.UUID] = None
    username: Optional[str] = None
    action: AuditAction
    category: str
    severity: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[str] = None


class HealthStatus(BaseModel):
    status: str
    database: str
    cache: str
    online_connections: int


class ConsistencyReport(BaseModel):
    orphan_appointments: List[uuid.UUID]
    double_booked_slots: List[str]


# --- Fan-out envelope ---
class AuthMessage(BaseModel):
    type: Literal["auth"] = "auth"
    token: str


class AuthSuccess(BaseModel):
    type: Literal["auth_success"] = "auth_success"
    user_id: uuid.UUID
    role: UserRole


class AuthError(BaseModel):
    type: Literal["auth_error"] = "auth_error"
    message: str


class NotificationMessage(BaseModel):
    type: Literal["notification"] = "notification"
    id: uuid.UUID
    title: str
    content: str
    notification_type: NotificationType


class ChatMessage(BaseModel):
    """Inbound chat carries receiver and content; the server stamps the rest"""
    type: Literal["chat_message"] = "chat_message"
    id: Optional[uuid.UUID] = None
    sender_id: Optional[uuid.UUID] = None
    receiver_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=2000)
    timestamp: Optional[datetime] = None


class VideoCallRequest(BaseModel):
    type: Literal["video_call_request"] = "video_call_request"
    consultation_id: uuid.UUID
    from_user_id: uuid.UUID
    to_user_id: uuid.UUID


class VideoCallAccepted(BaseModel):
    type: Literal["video_call_accepted"] = "video_call_accepted"
    consultation_id: uuid.UUID


class VideoCallRejected(BaseModel):
    type: Literal["video_call_rejected"] = "video_call_rejected"
    consultation_id: uuid.UUID
    reason: Optional[str] = None


class VideoCallEnded(BaseModel):
    type: Literal["video_call_ended"] = "video_call_ended"
    consultation_id: uuid.UUID


class LiveStreamStarted(BaseModel):
    type: Literal["live_stream_started"] = "live_stream_started"
    stream_id: uuid.UUID
    title: str
    host_name: str


class LiveStreamEnded(BaseModel):
    type: Literal["live_stream_ended"] = "live_stream_ended"
    stream_id: uuid.UUID


class LiveStreamViewerCount(BaseModel):
    type: Literal["live_stream_viewer_count"] = "live_stream_viewer_count"
    stream_id: uuid.UUID
    count: int


class Heartbeat(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"


class HeartbeatAck(BaseModel):
    type: Literal["heartbeat_ack"] = "heartbeat_ack"


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


class SystemAnnouncement(BaseModel):
    type: Literal["system_announcement"] = "system_announcement"
    title: str
    content: str


WsMessage = Annotated[
    Union[
        AuthMessage, AuthSuccess, AuthError, NotificationMessage, ChatMessage,
        VideoCallRequest, VideoCallAccepted, VideoCallRejected, VideoCallEnded,
        LiveStreamStarted, LiveStreamEnded, LiveStreamViewerCount,
        Heartbeat, HeartbeatAck, ErrorMessage, SystemAnnouncement,
    ],
    Field(discriminator="type"),
]

ws_message_adapter = TypeAdapter(WsMessage)
