# app/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text, Boolean, JSON,
    Enum as SQLAlchemyEnum, Index, UniqueConstraint, Uuid, text
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    admin = "admin"
    doctor = "doctor"
    patient = "patient"


class UserStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class Gender(str, enum.Enum):
    male = "male"
    female = "female"


class DepartmentStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class AppointmentStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class VisitType(str, enum.Enum):
    online_video = "online_video"
    offline = "offline"


class RelationshipType(str, enum.Enum):
    self = "self"
    family = "family"
    friend = "friend"
    other = "other"


class NotificationType(str, enum.Enum):
    appointment_reminder = "appointment_reminder"
    appointment_confirmed = "appointment_confirmed"
    appointment_cancelled = "appointment_cancelled"
    prescription_ready = "prescription_ready"
    clinician_reply = "clinician_reply"
    system_announcement = "system_announcement"
    review_reply = "review_reply"
    live_stream_reminder = "live_stream_reminder"
    group_message = "group_message"


class NotificationStatus(str, enum.Enum):
    unread = "unread"
    read = "read"
    deleted = "deleted"


class LiveStreamStatus(str, enum.Enum):
    scheduled = "scheduled"
    live = "live"
    ended = "ended"


class CircleRole(str, enum.Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    BULK_ACTION = "BULK_ACTION"


# Statuses that hold a slot; shared by the partial index and the occupancy query
OCCUPYING_STATUSES = (AppointmentStatus.pending, AppointmentStatus.confirmed)
_OCCUPYING_PREDICATE = "status IN ('pending', 'confirmed')"


class User(Base):
    """Registered account of any role"""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_status', 'role', 'status'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(50), nullable=False)
    password_hash = Column(String(255), nullable=False)
    gender = Column(SQLAlchemyEnum(Gender, name='gender'), nullable=True)
    phone = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)
    birthday = Column(Date, nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.patient, nullable=False)
    status = Column(SQLAlchemyEnum(UserStatus, name='user_status'), default=UserStatus.active, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    doctor_profile = relationship("Doctor", back_populates="user", uselist=False)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.active


class Department(Base):
    __tablename__ = "departments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, index=True, nullable=False)
    contact_person = Column(String(50), nullable=True)
    contact_phone = Column(String(20), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(DepartmentStatus, name='department_status'), default=DepartmentStatus.active, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Doctor(Base):
    """Clinician profile; exactly one per doctor-role user"""
    __tablename__ = "doctors"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    certificate_type = Column(String(20), default="id_card", nullable=False)
    id_number = Column(String(18), nullable=True)
    hospital = Column(String(100), nullable=False)
    department = Column(String(50), nullable=False)
    title = Column(String(50), nullable=False)
    introduction = Column(Text, nullable=True)
    specialties = Column(JSON, default=list, nullable=False)
    experience = Column(Text, nullable=True)

    # Stored file URLs
    avatar = Column(String(500), nullable=True)
    license_photo = Column(String(500), nullable=True)
    id_card_front = Column(String(500), nullable=True)
    id_card_back = Column(String(500), nullable=True)
    title_cert = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="doctor_profile")

    @property
    def name(self) -> str:
        return self.user.name if self.user else ""


class PatientProfile(Base):
    """Contact card a patient books or receives prescriptions under"""
    __tablename__ = "patient_profiles"
    __table_args__ = (
        Index('idx_patient_profiles_user', 'user_id', 'is_default'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    name = Column(String(50), nullable=False)
    id_number = Column(String(18), nullable=False)
    phone = Column(String(20), nullable=False)
    gender = Column(SQLAlchemyEnum(Gender, name='gender'), nullable=True)
    birthday = Column(Date, nullable=True)
    relationship = Column(SQLAlchemyEnum(RelationshipType, name='relationship_type'), default=RelationshipType.self, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Appointment(Base):
    """A booking of one slot on one clinician's day"""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_patient_date', 'patient_id', 'appointment_date'),
        Index('idx_appointments_doctor_date', 'doctor_id', 'appointment_date'),
        Index('idx_appointments_status_date', 'status', 'appointment_date'),
        Index(
            'uq_appointments_active_slot', 'doctor_id', 'appointment_day', 'time_slot',
            unique=True,
            postgresql_where=text(_OCCUPYING_PREDICATE),
            sqlite_where=text(_OCCUPYING_PREDICATE),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Uuid, ForeignKey("doctors.id"), nullable=False)

    appointment_date = Column(DateTime(timezone=True), nullable=False)
    # UTC date part of appointment_date; scopes the slot key
    appointment_day = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=False)

    visit_type = Column(SQLAlchemyEnum(VisitType, name='visit_type'), nullable=False)
    symptoms = Column(String(100), nullable=False, default="")
    has_visited_before = Column(Boolean, default=False, nullable=False)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.pending, nullable=False)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("Doctor")


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index('idx_prescriptions_doctor', 'doctor_id', 'prescription_date'),
        Index('idx_prescriptions_patient', 'patient_id', 'prescription_date'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(14), unique=True, index=True, nullable=False)
    doctor_id = Column(Uuid, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    patient_name = Column(String(50), nullable=False)
    diagnosis = Column(Text, nullable=False)
    medicines = Column(JSON, default=list, nullable=False)
    instructions = Column(Text, nullable=True)
    prescription_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    doctor = relationship("Doctor")


class Review(Base):
    """Patient rating of a completed appointment; one per appointment"""
    __tablename__ = "reviews"
    __table_args__ = (
        Index('idx_reviews_doctor_visible', 'doctor_id', 'is_visible', 'created_at'),
        Index('idx_reviews_patient', 'patient_id', 'created_at'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id = Column(Uuid, ForeignKey("appointments.id"), unique=True, nullable=False)
    doctor_id = Column(Uuid, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Uuid, ForeignKey("users.id"), nullable=False)

    rating = Column(Integer, nullable=False)
    attitude_rating = Column(Integer, nullable=False)
    professionalism_rating = Column(Integer, nullable=False)
    efficiency_rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    reply = Column(Text, nullable=True)
    reply_at = Column(DateTime(timezone=True), nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("User")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index('idx_notifications_user_status', 'user_id', 'status', 'created_at'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    notification_type = Column(SQLAlchemyEnum(NotificationType, name='notification_type'), nullable=False)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    related_id = Column(Uuid, nullable=True)
    status = Column(SQLAlchemyEnum(NotificationStatus, name='notification_status'), default=NotificationStatus.unread, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)


class LiveStream(Base):
    __tablename__ = "live_streams"
    __table_args__ = (
        Index('idx_live_streams_status_time', 'status', 'scheduled_time'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(200), nullable=False)
    host_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    host_name = Column(String(50), nullable=False)
    scheduled_time = Column(DateTime(timezone=True), nullable=False)
    stream_url = Column(String(500), nullable=True)
    status = Column(SQLAlchemyEnum(LiveStreamStatus, name='live_stream_status'), default=LiveStreamStatus.scheduled, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Circle(Base):
    """Community group; membership roles are local to the circle"""
    __tablename__ = "circles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    category = Column(String(50), nullable=False)
    creator_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    member_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    members = relationship("CircleMember", back_populates="circle", cascade="all, delete-orphan")
    posts = relationship("CirclePost", back_populates="circle", cascade="all, delete-orphan")


class CircleMember(Base):
    __tablename__ = "circle_members"
    __table_args__ = (
        UniqueConstraint('circle_id', 'user_id', name='uq_circle_members_circle_user'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    circle_id = Column(Uuid, ForeignKey("circles.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    role = Column(SQLAlchemyEnum(CircleRole, name='circle_role'), default=CircleRole.member, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    circle = relationship("Circle", back_populates="members")
    user = relationship("User")


class CirclePost(Base):
    """Message board entry inside a circle; deletion is soft"""
    __tablename__ = "circle_posts"
    __table_args__ = (
        Index('idx_circle_posts_circle_time', 'circle_id', 'created_at'),
        Index('idx_circle_posts_author', 'author_id', 'created_at'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    circle_id = Column(Uuid, ForeignKey("circles.id"), nullable=False)
    author_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    images = Column(JSON, default=list, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    circle = relationship("Circle", back_populates="posts")
    author = relationship("User")
    likes = relationship("PostLike", back_populates="post", cascade="all, delete-orphan")
    comments = relationship("PostComment", back_populates="post", cascade="all, delete-orphan")


class PostLike(Base):
    __tablename__ = "post_likes"
    __table_args__ = (
        UniqueConstraint('post_id', 'user_id', name='uq_post_likes_post_user'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid, ForeignKey("circle_posts.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    post = relationship("CirclePost", back_populates="likes")


class PostComment(Base):
    __tablename__ = "post_comments"
    __table_args__ = (
        Index('idx_post_comments_post_time', 'post_id', 'created_at'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid, ForeignKey("circle_posts.id"), nullable=False)
    author_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    content = Column(String(500), nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    post = relationship("CirclePost", back_populates="comments")
    author = relationship("User")


class AuditLog(Base):
    """Security-relevant event trail; user_id is a soft reference"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_logs_timestamp', 'timestamp'),
        Index('idx_audit_logs_user', 'user_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    user_id = Column(Uuid, nullable=True)
    username = Column(String(50), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL")
    severity = Column(String(20), nullable=False, default="INFO")
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
