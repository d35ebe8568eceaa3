"""
shared/models/models.py
All SQLAlchemy ORM models for the RahaSeva marketplace.
UUID primary keys throughout; coordinates stored as latitude/longitude
floats, mirrored into Redis GEO sets for distance search (shared/utils/geo.py).
"""

import math
import random
import string
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from config.database import Base
from config.settings import settings


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "user"
    HELPER = "helper"
    ADMIN = "admin"


class ServiceType(str, PyEnum):
    PLUMBER = "plumber"
    ELECTRICIAN = "electrician"
    CARPENTER = "carpenter"
    DOCTOR = "doctor"
    EMERGENCY = "emergency"
    CLEANING = "cleaning"
    PAINTING = "painting"
    MECHANIC = "mechanic"
    TUTOR = "tutor"
    GARDENER = "gardener"
    OTHER = "other"


class PriceUnit(str, PyEnum):
    HOUR = "hour"
    CONSULTATION = "consultation"
    SERVICE = "service"
    EMERGENCY = "emergency"


class BookingType(str, PyEnum):
    IN_PERSON = "In-Person Visit"
    VIDEO = "Video Consultation"
    EMERGENCY = "Emergency Call"


class BookingUrgency(str, PyEnum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EmergencyType(str, PyEnum):
    PLUMBER = "plumber"
    ELECTRICIAN = "electrician"
    DOCTOR = "doctor"
    AMBULANCE = "ambulance"
    FIRE = "fire"
    POLICE = "police"
    OTHER = "other"


class EmergencyStatus(str, PyEnum):
    REQUESTED = "requested"
    SEARCHING = "searching"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HelpRequestStatus(str, PyEnum):
    PENDING = "pending"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AvailabilityFrequency(str, PyEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ON_CALL = "on-call"


class RewardLevel(str, PyEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class TransactionType(str, PyEnum):
    CREDIT = "credit"
    DEBIT = "debit"
    POINT_EARNED = "point_earned"
    POINT_REDEEMED = "point_redeemed"
    REFERRAL_BONUS = "referral_bonus"
    BOOKING_PAYMENT = "booking_payment"
    EMERGENCY_SERVICE = "emergency_service"
    REFUND = "refund"


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ConsultationStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    READY = "ready"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class ArtifactType(str, PyEnum):
    IMAGE = "image"
    DOCUMENT = "document"
    RECORDING = "recording"
    AR_ANNOTATION = "ar_annotation"


# Human-readable labels shown by the frontend
BOOKING_STATUS_DISPLAY = {
    BookingStatus.PENDING: "Pending Confirmation",
    BookingStatus.CONFIRMED: "Confirmed",
    BookingStatus.IN_PROGRESS: "In Progress",
    BookingStatus.COMPLETED: "Completed",
    BookingStatus.CANCELLED: "Cancelled",
    BookingStatus.REFUNDED: "Refunded",
}

EMERGENCY_STATUS_DISPLAY = {
    EmergencyStatus.REQUESTED: "Help Requested",
    EmergencyStatus.SEARCHING: "Searching for Provider",
    EmergencyStatus.ASSIGNED: "Provider Assigned",
    EmergencyStatus.IN_PROGRESS: "Help is On the Way",
    EmergencyStatus.COMPLETED: "Service Completed",
    EmergencyStatus.CANCELLED: "Request Cancelled",
}

CONSULTATION_STATUS_DISPLAY = {
    ConsultationStatus.SCHEDULED: "Scheduled",
    ConsultationStatus.READY: "Ready to Join",
    ConsultationStatus.IN_PROGRESS: "In Progress",
    ConsultationStatus.COMPLETED: "Completed",
    ConsultationStatus.MISSED: "Missed",
    ConsultationStatus.CANCELLED: "Cancelled",
}

# Points thresholds, highest first
REWARD_THRESHOLDS = (
    (5000, RewardLevel.PLATINUM),
    (2000, RewardLevel.GOLD),
    (500, RewardLevel.SILVER),
    (0, RewardLevel.BRONZE),
)


def reward_level_for(points: int) -> RewardLevel:
    for threshold, level in REWARD_THRESHOLDS:
        if points >= threshold:
            return level
    return RewardLevel.BRONZE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def running_average(average: float, count: int, rating: int) -> float:
    """Fold one more rating into an average over `count` ratings."""
    return ((average or 0) * (count or 0) + rating) / ((count or 0) + 1)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class TrackingMixin:
    """Append-only JSON tracking log of status changes with a position."""
    tracking: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    def add_tracking(
        self,
        status: str,
        notes: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> dict:
        entry = {
            "status": status,
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": utcnow().isoformat(),
            "notes": notes,
        }
        # Reassign so the JSON column is flagged dirty
        self.tracking = [*(self.tracking or []), entry]
        return entry


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for users, helpers and admins. Email/password or Google sign-in."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    google_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LATITUDE)
    longitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LONGITUDE)
    coins_earned: Mapped[int] = mapped_column(Integer, default=settings.WELCOME_COINS)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    provider_profile: Mapped[Optional["ServiceProvider"]] = relationship(
        back_populates="user", uselist=False, lazy="select"
    )
    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")

    __table_args__ = (
        Index("ix_users_role", "role"),
    )

    @property
    def profile(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "email": self.email,
            "phone": self.phone or "",
            "location": self.address or "",
            "join_date": self.created_at.isoformat() if self.created_at else None,
            "coins_earned": self.coins_earned,
            "total_bookings": self.total_bookings,
            "completed_bookings": self.completed_bookings,
            "role": self.role.value,
        }

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class ServiceProvider(TimestampMixin, Base):
    """
    Helper's business profile. One-to-one with a helper User.
    Matched by service type and distance for search, bookings and emergencies.
    """
    __tablename__ = "service_providers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(Enum(ServiceType), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_unit: Mapped[PriceUnit] = mapped_column(Enum(PriceUnit), default=PriceUnit.HOUR)

    # Location
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    latitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LATITUDE)
    longitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LONGITUDE)

    # Availability, e.g. {"days": ["Mon", ...], "hours": {"start": "09:00", "end": "18:00"}}
    availability: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    emergency_24x7: Mapped[bool] = mapped_column(Boolean, default=False)

    experience_years: Mapped[int] = mapped_column(SmallInteger, default=0)
    specializations: Mapped[list] = mapped_column(JSON, default=list)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Rating (denormalized)
    rating_avg: Mapped[float] = mapped_column(Float, default=0.0)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)

    # Verification
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    kyc_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stats
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_bookings: Mapped[int] = mapped_column(Integer, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    user: Mapped["User"] = relationship(back_populates="provider_profile")

    __table_args__ = (
        CheckConstraint("base_price >= 100", name="ck_provider_base_price_min"),
        CheckConstraint("experience_years >= 0 AND experience_years <= 50", name="ck_provider_experience"),
        Index("ix_service_providers_type", "service_type", "is_active"),
        Index("ix_service_providers_location", "latitude", "longitude"),
    )

    @property
    def completion_rate(self) -> float:
        if not self.total_bookings:
            return 0.0
        return round(self.completed_bookings / self.total_bookings * 100, 1)

    def add_rating(self, rating: int) -> None:
        self.rating_avg = running_average(self.rating_avg, self.rating_count, rating)
        self.rating_count = (self.rating_count or 0) + 1


class Booking(TimestampMixin, Base):
    """
    A paid service booking between a user and a provider.
    Status is reassigned directly; every change is logged to BookingAuditLog.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_providers.id"), nullable=False
    )

    service_type: Mapped[str] = mapped_column(String(50), nullable=False)
    problem_description: Mapped[str] = mapped_column(Text, nullable=False)
    booking_type: Mapped[BookingType] = mapped_column(Enum(BookingType), nullable=False)
    urgency: Mapped[BookingUrgency] = mapped_column(
        Enum(BookingUrgency), default=BookingUrgency.NORMAL
    )

    # Where the service is performed: {"address": ..., "latitude": ..., "longitude": ...}
    location: Mapped[dict] = mapped_column(JSON, nullable=False)
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_time: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    base_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_booking_rating_range"),
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_provider_id", "provider_id"),
        Index("ix_bookings_status", "status"),
    )

    @property
    def status_display(self) -> str:
        return BOOKING_STATUS_DISPLAY.get(self.status, self.status.value)


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")


class EmergencyService(TimestampMixin, TrackingMixin, Base):
    """
    Unscheduled, high-priority help request with a live tracking log.
    A provider is assigned by the dispatcher (services/emergency/dispatch.py).
    """
    __tablename__ = "emergency_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("service_providers.id"), nullable=True
    )
    service_type: Mapped[EmergencyType] = mapped_column(Enum(EmergencyType), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[EmergencyStatus] = mapped_column(
        Enum(EmergencyStatus), nullable=False, default=EmergencyStatus.REQUESTED
    )
    priority: Mapped[Priority] = mapped_column(Enum(Priority), default=Priority.HIGH)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )

    __table_args__ = (
        Index("ix_emergency_user_id", "user_id"),
        Index("ix_emergency_provider_id", "provider_id"),
        Index("ix_emergency_status", "status"),
    )

    @property
    def tracking_link(self) -> str:
        return f"/emergency/track/{self.id}"

    @property
    def status_display(self) -> str:
        return EMERGENCY_STATUS_DISPLAY.get(self.status, self.status.value)


class CommunityVolunteer(TimestampMixin, Base):
    """A user offering unpaid help within a service radius."""
    __tablename__ = "community_volunteers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    skills: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LATITUDE)
    longitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LONGITUDE)
    service_radius_km: Mapped[float] = mapped_column(Float, default=10.0)
    availability_frequency: Mapped[AvailabilityFrequency] = mapped_column(
        Enum(AvailabilityFrequency), default=AvailabilityFrequency.WEEKLY
    )
    availability_days: Mapped[list] = mapped_column(JSON, default=list)

    # Stats
    total_help_requests: Mapped[int] = mapped_column(Integer, default=0)
    completed_requests: Mapped[int] = mapped_column(Integer, default=0)
    people_helped: Mapped[int] = mapped_column(Integer, default=0)
    hours_donated: Mapped[float] = mapped_column(Float, default=0.0)
    rating_avg: Mapped[float] = mapped_column(Float, default=5.0)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)

    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        CheckConstraint(
            "service_radius_km >= 1 AND service_radius_km <= 50", name="ck_volunteer_radius"
        ),
        Index("ix_volunteers_location", "latitude", "longitude"),
    )

    def has_skill(self, skill: str) -> bool:
        return skill in (self.skills or [])

    def add_rating(self, rating: int) -> None:
        self.rating_avg = running_average(self.rating_avg, self.rating_count, rating)
        self.rating_count = (self.rating_count or 0) + 1


class CommunityHelpRequest(TimestampMixin, TrackingMixin, Base):
    """Unpaid help request matched to a volunteer by skill and distance."""
    __tablename__ = "community_help_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    volunteer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("community_volunteers.id"), nullable=True
    )
    help_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LATITUDE)
    longitude: Mapped[float] = mapped_column(Float, default=settings.DEFAULT_LONGITUDE)

    requested_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    requested_time: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    confirmed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_time: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    estimated_hours: Mapped[float] = mapped_column(Float, default=1.0)

    urgency: Mapped[Priority] = mapped_column(Enum(Priority), default=Priority.MEDIUM)
    status: Mapped[HelpRequestStatus] = mapped_column(
        Enum(HelpRequestStatus), nullable=False, default=HelpRequestStatus.PENDING
    )
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)

    # {"rating": .., "comment": ..} from each side
    user_feedback: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    volunteer_feedback: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_help_requests_user_id", "user_id"),
        Index("ix_help_requests_volunteer_id", "volunteer_id"),
        Index("ix_help_requests_status", "status"),
    )


class Wallet(TimestampMixin, Base):
    """
    Money and reward points for a user. The reward level is re-derived
    from the points balance every time the balance changes.
    """
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    money_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    points_balance: Mapped[int] = mapped_column(Integer, default=0)
    money_earned: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    money_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    points_earned: Mapped[int] = mapped_column(Integer, default=0)
    points_spent: Mapped[int] = mapped_column(Integer, default=0)
    reward_level: Mapped[RewardLevel] = mapped_column(
        Enum(RewardLevel), default=RewardLevel.BRONZE
    )
    referral_code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    referred_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    transactions: Mapped[List["WalletTransaction"]] = relationship(
        back_populates="wallet", order_by="WalletTransaction.created_at.desc()"
    )

    @classmethod
    def for_user(cls, user_id: uuid.UUID) -> "Wallet":
        """New empty wallet with an id assigned up front so transactions can reference it."""
        prefix = "".join(random.choices(string.ascii_uppercase, k=4))
        return cls(
            id=uuid.uuid4(),
            user_id=user_id,
            money_balance=Decimal("0"),
            points_balance=0,
            money_earned=Decimal("0"),
            money_spent=Decimal("0"),
            points_earned=0,
            points_spent=0,
            referral_code=f"RH{prefix}{user_id.hex[-4:].upper()}",
        )

    @validates("points_balance")
    def _sync_reward_level(self, key, value):
        self.reward_level = reward_level_for(value or 0)
        return value

    def add_transaction(
        self,
        type: TransactionType,
        amount,
        is_money: bool,
        description: str,
        reference: Optional[str] = None,
        booking_id: Optional[uuid.UUID] = None,
        service_id: Optional[uuid.UUID] = None,
    ) -> "WalletTransaction":
        """
        Apply a transaction to the running balances and return the log row.
        The caller adds the returned row to the session.
        """
        if is_money:
            amount = Decimal(str(amount))
            if type in (TransactionType.CREDIT, TransactionType.REFUND):
                self.money_balance = (self.money_balance or 0) + amount
                self.money_earned = (self.money_earned or 0) + amount
            elif type in (TransactionType.DEBIT, TransactionType.BOOKING_PAYMENT,
                          TransactionType.EMERGENCY_SERVICE):
                self.money_balance = (self.money_balance or 0) - amount
                self.money_spent = (self.money_spent or 0) + amount
        else:
            amount = int(amount)
            if type in (TransactionType.POINT_EARNED, TransactionType.REFERRAL_BONUS):
                self.points_balance = (self.points_balance or 0) + amount
                self.points_earned = (self.points_earned or 0) + amount
            elif type == TransactionType.POINT_REDEEMED:
                self.points_balance = (self.points_balance or 0) - amount
                self.points_spent = (self.points_spent or 0) + amount

        return WalletTransaction(
            wallet_id=self.id,
            type=type,
            amount=amount,
            is_money=is_money,
            description=description,
            reference=reference,
            booking_id=booking_id,
            service_id=service_id,
            status=TransactionStatus.COMPLETED,
        )

    def redeem_points(self, points: int) -> tuple["WalletTransaction", "WalletTransaction"]:
        """Convert points to money at the configured rate. Returns both log rows."""
        money = Decimal(str(points)) * Decimal(str(settings.POINT_REDEMPTION_RATE))
        redeemed = self.add_transaction(
            TransactionType.POINT_REDEEMED, points, False,
            f"Redeemed {points} points for ₹{money:.2f}",
        )
        credited = self.add_transaction(
            TransactionType.CREDIT, money, True,
            f"Credit from redeeming {points} points",
        )
        return redeemed, credited


class WalletTransaction(Base):
    """Immutable ledger row for a wallet balance change."""
    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_money: Mapped[bool] = mapped_column(Boolean, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.COMPLETED
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    wallet: Mapped["Wallet"] = relationship(back_populates="transactions")

    __table_args__ = (Index("ix_wallet_transactions_wallet_created", "wallet_id", "created_at"),)


class VideoConsultation(TimestampMixin, Base):
    """Video session attached to one booking, with per-participant tokens."""
    __tablename__ = "video_consultations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_providers.id"), nullable=False
    )
    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_token: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_token: Mapped[str] = mapped_column(String(128), nullable=False)
    meeting_url: Mapped[str] = mapped_column(String(255), nullable=False)

    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    actual_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[ConsultationStatus] = mapped_column(
        Enum(ConsultationStatus), nullable=False, default=ConsultationStatus.SCHEDULED
    )
    # {"ar_enabled": bool, "recording_enabled": bool, "screen_sharing": bool, "chat": bool}
    features: Mapped[dict] = mapped_column(JSON, default=dict)
    artifacts: Mapped[list] = mapped_column(JSON, default=list)
    diagnosis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommendations: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user_rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    user_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    provider_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_video_user_id", "user_id"),
        Index("ix_video_provider_id", "provider_id"),
    )

    @property
    def status_display(self) -> str:
        return CONSULTATION_STATUS_DISPLAY.get(self.status, self.status.value)

    def add_artifact(self, type: ArtifactType, url: str, name: str, created_by: str,
                     description: str = "") -> dict:
        artifact = {
            "type": type.value,
            "url": url,
            "name": name,
            "description": description,
            "created_by": created_by,
            "created_at": utcnow().isoformat(),
        }
        self.artifacts = [*(self.artifacts or []), artifact]
        return artifact


class CostEstimation(TimestampMixin, Base):
    """Pricing template for one (service type, problem type) pair."""
    __tablename__ = "cost_estimations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    service_type: Mapped[str] = mapped_column(String(50), nullable=False)
    problem_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_range_low: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_range_high: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # [{"name", "description", "multiplier", "additional_cost"}]
    price_factors: Mapped[list] = mapped_column(JSON, default=list)
    estimated_hours: Mapped[int] = mapped_column(Integer, default=1)
    estimated_minutes: Mapped[int] = mapped_column(Integer, default=0)
    parts_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    transport_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    emergency_surcharge: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("service_type", "problem_type", name="uq_estimation_service_problem"),
    )

    @property
    def formatted_time(self) -> str:
        parts = []
        if self.estimated_hours:
            parts.append(f"{self.estimated_hours} hour{'s' if self.estimated_hours != 1 else ''}")
        if self.estimated_minutes:
            parts.append(f"{self.estimated_minutes} minutes")
        return " ".join(parts) or "Less than an hour"

    def calculate_price(self, conditions: Optional[dict] = None) -> dict:
        """
        Apply each price factor whose condition is truthy, in template order:
        total = total * multiplier + additional_cost. Parts, transport and
        the emergency surcharge are added last when requested.
        """
        conditions = conditions or {}
        total = float(self.base_price)
        applied = []

        for factor in self.price_factors or []:
            if conditions.get(factor["name"]):
                multiplier = float(factor.get("multiplier", 1))
                additional = float(factor.get("additional_cost", 0))
                total = total * multiplier + additional
                applied.append({
                    "name": factor["name"],
                    "description": factor.get("description", ""),
                    "multiplier": multiplier,
                    "additional_cost": additional,
                })

        if conditions.get("includes_parts"):
            total += float(self.parts_cost or 0)
        if conditions.get("includes_transport"):
            total += float(self.transport_cost or 0)
        if conditions.get("is_emergency"):
            total += float(self.emergency_surcharge or 0)

        return {
            "estimated_price": math.floor(total + 0.5),
            "applied_factors": applied,
            "time_estimate": self.formatted_time,
            "currency": self.currency,
        }


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
