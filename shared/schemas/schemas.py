"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import (
    ArtifactType,
    AvailabilityFrequency,
    BookingType,
    BookingUrgency,
    EmergencyType,
    HelpRequestStatus,
    PriceUnit,
    Priority,
    ServiceType,
    UserRole,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int


class GeoPoint(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    phone: Optional[str] = Field(None, max_length=20)
    role: UserRole = UserRole.USER
    address: Optional[str] = None

    # Helper-only fields, required when role == helper
    service: Optional[ServiceType] = None
    location: Optional[str] = None
    experience: Optional[int] = Field(None, ge=0, le=50)
    price_per_hour: Optional[float] = Field(None, ge=100, le=2000)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("role")
    @classmethod
    def no_self_service_admin(cls, v):
        if v == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class GoogleAuthRequest(BaseSchema):
    credential: str = Field(..., min_length=1)  # Google ID token (JWT)


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: Optional[str]
    role: str
    address: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    avatar_url: Optional[str]
    coins_earned: int
    total_bookings: int
    completed_bookings: int
    is_active: bool
    created_at: datetime


class AuthResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)
    location: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


# ── Providers ─────────────────────────────────────────────────

class ProviderLocation(GeoPoint):
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)


class ProviderRegisterRequest(BaseSchema):
    business_name: str = Field(..., min_length=1, max_length=255)
    service_type: ServiceType
    description: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=6, max_length=20)
    email: EmailStr
    address: str = Field(..., min_length=1)
    base_price: float = Field(..., ge=100)
    price_unit: PriceUnit = PriceUnit.HOUR
    location: ProviderLocation
    experience_years: int = Field(0, ge=0, le=50)
    specializations: List[str] = []
    availability: Optional[Dict[str, Any]] = None
    emergency_24x7: bool = False


class ProviderResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    business_name: str
    service_type: str
    description: Optional[str]
    base_price: float
    price_unit: str
    address: Optional[str]
    city: Optional[str]
    state: Optional[str]
    latitude: float
    longitude: float
    availability: Optional[Dict[str, Any]]
    emergency_24x7: bool
    experience_years: int
    specializations: List[str]
    contact_phone: Optional[str]
    contact_email: Optional[str]
    rating_avg: float
    rating_count: int
    is_verified: bool
    total_bookings: int
    completed_bookings: int
    completion_rate: float
    is_active: bool


class NearbyProviderResponse(BaseSchema):
    id: uuid.UUID
    name: str
    service_type: str
    rating: float
    distance: str
    distance_km: float
    price: str
    verified: bool
    phone: Optional[str]
    experience: str
    lat: float
    lng: float
    address: Optional[str]


# ── Bookings ──────────────────────────────────────────────────

class BookingLocation(BaseSchema):
    address: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class BookingCreateRequest(BaseSchema):
    provider_id: uuid.UUID
    service_type: str = Field(..., min_length=1, max_length=50)
    problem_description: str = Field(..., min_length=1)
    booking_type: BookingType
    urgency: BookingUrgency = BookingUrgency.NORMAL
    location: BookingLocation
    scheduled_date: Optional[datetime] = None
    scheduled_time: Optional[str] = Field(None, max_length=20)
    base_amount: Optional[float] = Field(None, gt=0)


class BookingStatusUpdateRequest(BaseSchema):
    status: str
    reason: Optional[str] = Field(None, max_length=500)


class FeedbackRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    user_id: uuid.UUID
    provider_id: uuid.UUID
    service_type: str
    problem_description: str
    booking_type: str
    urgency: str
    location: Dict[str, Any]
    scheduled_date: Optional[datetime]
    scheduled_time: Optional[str]
    base_amount: float
    total_amount: float
    is_paid: bool
    status: str
    status_display: str
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    completed_at: Optional[datetime]
    rating: Optional[int]
    feedback_comment: Optional[str]
    meeting_link: Optional[str]
    created_at: datetime


# ── Emergency ─────────────────────────────────────────────────

class EmergencyLocation(GeoPoint):
    address: Optional[str] = None


class EmergencyCreateRequest(BaseSchema):
    service_type: EmergencyType
    description: str = Field(..., min_length=1)
    location: EmergencyLocation
    priority: Priority = Priority.HIGH


class EmergencyStatusUpdateRequest(BaseSchema):
    status: str
    location: GeoPoint
    notes: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class EmergencyResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    provider_id: Optional[uuid.UUID]
    service_type: str
    description: str
    address: Optional[str]
    latitude: float
    longitude: float
    status: str
    status_display: str
    priority: str
    tracking: List[Dict[str, Any]]
    tracking_link: str
    requested_at: datetime
    assigned_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    estimated_arrival: Optional[datetime]
    rating: Optional[int]
    feedback_comment: Optional[str]
    booking_id: Optional[uuid.UUID]


# ── Wallet ────────────────────────────────────────────────────

class AddMoneyRequest(BaseSchema):
    amount: float
    payment_method: Optional[str] = Field(None, max_length=50)
    reference: Optional[str] = Field(None, max_length=100)


class RedeemPointsRequest(BaseSchema):
    points: int


class ReferralRequest(BaseSchema):
    referral_code: Optional[str] = Field(None, max_length=16)


class WalletPayRequest(BaseSchema):
    booking_id: Optional[uuid.UUID] = None
    amount: Optional[float] = None
    description: Optional[str] = Field(None, max_length=255)


class WalletTransactionResponse(BaseSchema):
    id: uuid.UUID
    type: str
    amount: float
    is_money: bool
    description: str
    reference: Optional[str]
    booking_id: Optional[uuid.UUID]
    service_id: Optional[uuid.UUID]
    status: str
    created_at: datetime


class WalletResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    money_balance: float
    points_balance: int
    money_earned: float
    money_spent: float
    points_earned: int
    points_spent: int
    reward_level: str
    referral_code: str
    recent_transactions: List[WalletTransactionResponse] = []


# ── Video Consultations ───────────────────────────────────────

class VideoConsultationCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    scheduled_start: datetime
    scheduled_end: datetime


class VideoConsultationEndRequest(BaseSchema):
    diagnosis: Optional[str] = None
    recommendations: Optional[str] = None


class ArtifactRequest(BaseSchema):
    type: ArtifactType
    url: str = Field(..., min_length=1, max_length=2000)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field("", max_length=1000)


class VideoConsultationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    provider_id: uuid.UUID
    session_id: str
    meeting_url: str
    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: Optional[datetime]
    actual_end: Optional[datetime]
    duration_minutes: Optional[int]
    status: str
    status_display: str
    features: Dict[str, Any]
    artifacts: List[Dict[str, Any]]
    diagnosis: Optional[str]
    recommendations: Optional[str]


class VideoConsultationSession(VideoConsultationResponse):
    token: str
    role: str


# ── Cost Estimator ────────────────────────────────────────────

class PriceFactor(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    multiplier: float = Field(1.0, ge=0)
    additional_cost: float = 0.0


class EstimateRequest(BaseSchema):
    service_type: str = Field(..., min_length=1, max_length=50)
    problem_type: str = Field(..., min_length=1, max_length=100)
    conditions: Dict[str, Any] = {}
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class EstimationTemplateCreateRequest(BaseSchema):
    service_type: str = Field(..., min_length=1, max_length=50)
    problem_type: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    base_price: float = Field(..., gt=0)
    price_range_low: float = Field(..., gt=0)
    price_range_high: float = Field(..., gt=0)
    price_factors: List[PriceFactor] = []
    estimated_hours: int = Field(1, ge=0)
    estimated_minutes: int = Field(0, ge=0, lt=60)
    parts_cost: float = Field(0, ge=0)
    transport_cost: float = Field(0, ge=0)
    emergency_surcharge: float = Field(0, ge=0)
    currency: str = Field("INR", min_length=3, max_length=3)


class EstimationTemplateResponse(BaseSchema):
    id: uuid.UUID
    service_type: str
    problem_type: str
    description: str
    base_price: float
    price_range_low: float
    price_range_high: float
    price_factors: List[Dict[str, Any]]
    estimated_hours: int
    estimated_minutes: int
    parts_cost: float
    transport_cost: float
    emergency_surcharge: float
    currency: str
    formatted_time: str


# ── Community ─────────────────────────────────────────────────

class VolunteerContact(BaseSchema):
    phone: str = Field(..., min_length=6, max_length=20)
    email: Optional[EmailStr] = None


class VolunteerLocation(BaseSchema):
    address: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class VolunteerRegisterRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    skills: List[str] = Field(..., min_length=1)
    bio: Optional[str] = Field(None, max_length=2000)
    contact: VolunteerContact
    location: VolunteerLocation
    service_radius_km: float = Field(10, ge=1, le=50)
    availability_frequency: AvailabilityFrequency = AvailabilityFrequency.WEEKLY
    availability_days: List[str] = []


class VolunteerUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    skills: Optional[List[str]] = Field(None, min_length=1)
    bio: Optional[str] = Field(None, max_length=2000)
    contact: Optional[VolunteerContact] = None
    location: Optional[VolunteerLocation] = None
    service_radius_km: Optional[float] = Field(None, ge=1, le=50)
    availability_frequency: Optional[AvailabilityFrequency] = None
    availability_days: Optional[List[str]] = None
    is_active: Optional[bool] = None


class VolunteerResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    skills: List[str]
    bio: Optional[str]
    contact_phone: str
    contact_email: Optional[str]
    address: str
    latitude: float
    longitude: float
    service_radius_km: float
    availability_frequency: str
    availability_days: List[str]
    total_help_requests: int
    completed_requests: int
    people_helped: int
    hours_donated: float
    rating_avg: float
    rating_count: int
    is_verified: bool
    is_active: bool


class HelpRequestLocation(BaseSchema):
    address: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class HelpRequestCreateRequest(BaseSchema):
    help_type: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    location: HelpRequestLocation
    requested_date: datetime
    requested_time: Optional[str] = Field(None, max_length=20)
    estimated_hours: float = Field(1, gt=0, le=24)
    urgency: Priority = Priority.MEDIUM
    is_public: bool = True


class HelpRequestStatusUpdateRequest(BaseSchema):
    status: HelpRequestStatus
    notes: Optional[str] = Field(None, max_length=500)


class HelpRequestResponse(BaseSchema):
    id: uuid.UUID
    request_number: str
    user_id: uuid.UUID
    volunteer_id: Optional[uuid.UUID]
    help_type: str
    description: str
    address: Optional[str]
    latitude: float
    longitude: float
    requested_date: datetime
    requested_time: Optional[str]
    confirmed_date: Optional[datetime]
    confirmed_time: Optional[str]
    estimated_hours: float
    urgency: str
    status: str
    is_public: bool
    tracking: List[Dict[str, Any]]
    user_feedback: Optional[Dict[str, Any]]
    volunteer_feedback: Optional[Dict[str, Any]]
    completed_at: Optional[datetime]
    created_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AdminVerifyRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=1000)


class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)
