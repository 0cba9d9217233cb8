"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OCCUPYING = "status IN ('pending', 'confirmed')"

ENUM_TYPES = (
    'gender', 'user_role', 'user_status', 'department_status', 'relationship_type',
    'visit_type', 'appointment_status', 'notification_type', 'notification_status',
    'live_stream_status', 'circle_role', 'audit_action',
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('account', sa.String(50), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('gender', sa.Enum('male', 'female', name='gender'), nullable=True),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('birthday', sa.Date(), nullable=True),
        sa.Column('role', sa.Enum('admin', 'doctor', 'patient', name='user_role'), nullable=False),
        sa.Column('status', sa.Enum('active', 'inactive', name='user_status'), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_users_account', 'users', ['account'], unique=True)
    op.create_index('idx_users_role_status', 'users', ['role', 'status'])

    op.create_table(
        'departments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('contact_person', sa.String(50), nullable=True),
        sa.Column('contact_phone', sa.String(20), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum('active', 'inactive', name='department_status'), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_departments_code', 'departments', ['code'], unique=True)

    op.create_table(
        'doctors',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('certificate_type', sa.String(20), nullable=False),
        sa.Column('id_number', sa.String(18), nullable=True),
        sa.Column('hospital', sa.String(100), nullable=False),
        sa.Column('department', sa.String(50), nullable=False),
        sa.Column('title', sa.String(50), nullable=False),
        sa.Column('introduction', sa.Text(), nullable=True),
        sa.Column('specialties', sa.JSON(), nullable=False),
        sa.Column('experience', sa.Text(), nullable=True),
        sa.Column('avatar', sa.String(500), nullable=True),
        sa.Column('license_photo', sa.String(500), nullable=True),
        sa.Column('id_card_front', sa.String(500), nullable=True),
        sa.Column('id_card_back', sa.String(500), nullable=True),
        sa.Column('title_cert', sa.String(500), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'patient_profiles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('id_number', sa.String(18), nullable=False),
        sa.Column('phone', sa.String(20), nullable=False),
        # gender type already exists from users
        sa.Column('gender', postgresql.ENUM('male', 'female', name='gender', create_type=False), nullable=True),
        sa.Column('birthday', sa.Date(), nullable=True),
        sa.Column('relationship', sa.Enum('self', 'family', 'friend', 'other', name='relationship_type'), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_patient_profiles_user', 'patient_profiles', ['user_id', 'is_default'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('patient_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('doctor_id', sa.Uuid(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('appointment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('appointment_day', sa.Date(), nullable=False),
        sa.Column('time_slot', sa.String(5), nullable=False),
        sa.Column('visit_type', sa.Enum('online_video', 'offline', name='visit_type'), nullable=False),
        sa.Column('symptoms', sa.String(100), nullable=False),
        sa.Column('has_visited_before', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Enum('pending', 'confirmed', 'completed', 'cancelled', name='appointment_status'), nullable=False),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_appointments_patient_date', 'appointments', ['patient_id', 'appointment_date'])
    op.create_index('idx_appointments_doctor_date', 'appointments', ['doctor_id', 'appointment_date'])
    op.create_index('idx_appointments_status_date', 'appointments', ['status', 'appointment_date'])
    op.create_index(
        'uq_appointments_active_slot', 'appointments', ['doctor_id', 'appointment_day', 'time_slot'],
        unique=True,
        postgresql_where=sa.text(OCCUPYING),
        sqlite_where=sa.text(OCCUPYING),
    )

    op.create_table(
        'prescriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(14), nullable=False),
        sa.Column('doctor_id', sa.Uuid(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('patient_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('patient_name', sa.String(50), nullable=False),
        sa.Column('diagnosis', sa.Text(), nullable=False),
        sa.Column('medicines', sa.JSON(), nullable=False),
        sa.Column('instructions', sa.Text(), nullable=True),
        sa.Column('prescription_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_prescriptions_code', 'prescriptions', ['code'], unique=True)
    op.create_index('idx_prescriptions_doctor', 'prescriptions', ['doctor_id', 'prescription_date'])
    op.create_index('idx_prescriptions_patient', 'prescriptions', ['patient_id', 'prescription_date'])

    op.create_table(
        'reviews',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('appointment_id', sa.Uuid(), sa.ForeignKey('appointments.id'), nullable=False),
        sa.Column('doctor_id', sa.Uuid(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('patient_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('attitude_rating', sa.Integer(), nullable=False),
        sa.Column('professionalism_rating', sa.Integer(), nullable=False),
        sa.Column('efficiency_rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('reply', sa.Text(), nullable=True),
        sa.Column('reply_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_anonymous', sa.Boolean(), nullable=False),
        sa.Column('is_visible', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('appointment_id'),
    )
    op.create_index('idx_reviews_doctor_visible', 'reviews', ['doctor_id', 'is_visible', 'created_at'])
    op.create_index('idx_reviews_patient', 'reviews', ['patient_id', 'created_at'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('notification_type', sa.Enum(
            'appointment_reminder', 'appointment_confirmed', 'appointment_cancelled', 'prescription_ready',
            'clinician_reply', 'system_announcement', 'review_reply', 'live_stream_reminder', 'group_message',
            name='notification_type',
        ), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('related_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.Enum('unread', 'read', 'deleted', name='notification_status'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_notifications_user_status', 'notifications', ['user_id', 'status', 'created_at'])

    op.create_table(
        'live_streams',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('host_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('host_name', sa.String(50), nullable=False),
        sa.Column('scheduled_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('stream_url', sa.String(500), nullable=True),
        sa.Column('status', sa.Enum('scheduled', 'live', 'ended', name='live_stream_status'), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_live_streams_status_time', 'live_streams', ['status', 'scheduled_time'])

    op.create_table(
        'circles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('creator_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('member_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'circle_members',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('circle_id', sa.Uuid(), sa.ForeignKey('circles.id'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', sa.Enum('owner', 'admin', 'member', name='circle_role'), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('circle_id', 'user_id', name='uq_circle_members_circle_user'),
    )

    op.create_table(
        'circle_posts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('circle_id', sa.Uuid(), sa.ForeignKey('circles.id'), nullable=False),
        sa.Column('author_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('images', sa.JSON(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_circle_posts_circle_time', 'circle_posts', ['circle_id', 'created_at'])
    op.create_index('idx_circle_posts_author', 'circle_posts', ['author_id', 'created_at'])

    op.create_table(
        'post_likes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('post_id', sa.Uuid(), sa.ForeignKey('circle_posts.id'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('post_id', 'user_id', name='uq_post_likes_post_user'),
    )

    op.create_table(
        'post_comments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('post_id', sa.Uuid(), sa.ForeignKey('circle_posts.id'), nullable=False),
        sa.Column('author_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('content', sa.String(500), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_post_comments_post_time', 'post_comments', ['post_id', 'created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('username', sa.String(50), nullable=True),
        sa.Column('action', sa.Enum(
            'CREATE', 'READ', 'UPDATE', 'DELETE', 'LOGIN', 'LOGOUT', 'ACCESS_DENIED', 'BULK_ACTION',
            name='audit_action',
        ), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=True),
        sa.Column('resource_id', sa.String(64), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
    )
    op.create_index('idx_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('idx_audit_logs_user', 'audit_logs', ['user_id', 'timestamp'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        'audit_logs', 'post_comments', 'post_likes', 'circle_posts', 'circle_members', 'circles',
        'live_streams', 'notifications', 'reviews',
        'prescriptions', 'appointments', 'patient_profiles', 'doctors', 'departments', 'users',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for name in ENUM_TYPES:
            postgresql.ENUM(name=name).drop(bind, checkfirst=True)
