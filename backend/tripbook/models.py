from datetime import date, datetime, time
from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

Vertical = Literal["guide", "stay"]

BookingStatus = Literal[
    "PENDING",
    "DISCUSSING",
    "APPROVED",
    "IN_PROGRESS",
    "CHECKED_IN",
    "COMPLETED",
    "REJECTED",
    "CANCELED_BY_PROVIDER",
    "CANCELED_BY_REQUESTER",
]

_CAPACITY_ALIASES = AliasChoices("max_capacity", "max_party_size", "max_guests")


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ProfileDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str = ""
    city: str = Field(min_length=1)
    neighborhood: Optional[str] = None
    address: Optional[Dict[str, str]] = None
    coordinates: Optional[Coordinates] = None
    languages: list[str] = Field(default_factory=list)
    service_categories: list[str] = Field(default_factory=list)
    max_capacity: int = Field(ge=1, validation_alias=_CAPACITY_ALIASES)
    minimum_stay_nights: Optional[int] = Field(default=None, ge=1)
    maximum_stay_nights: Optional[int] = Field(default=None, ge=1)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_stay_bounds(self) -> "ProfileDescriptor":
        if (
            self.minimum_stay_nights is not None
            and self.maximum_stay_nights is not None
            and self.minimum_stay_nights > self.maximum_stay_nights
        ):
            raise ValueError("minimum_stay_nights cannot exceed maximum_stay_nights")
        return self


class ProfilePatch(BaseModel):
    """Descriptor fields an owner may change. Rolling stats are not accepted."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    city: Optional[str] = Field(default=None, min_length=1)
    neighborhood: Optional[str] = None
    address: Optional[Dict[str, str]] = None
    coordinates: Optional[Coordinates] = None
    languages: Optional[list[str]] = None
    service_categories: Optional[list[str]] = None
    max_capacity: Optional[int] = Field(default=None, ge=1, validation_alias=_CAPACITY_ALIASES)
    minimum_stay_nights: Optional[int] = Field(default=None, ge=1)
    maximum_stay_nights: Optional[int] = Field(default=None, ge=1)
    attributes: Optional[Dict[str, Any]] = None


class PaymentOption(BaseModel):
    id: str
    vertical: Vertical
    owner_id: str
    payment_type: str
    details: str = ""
    is_active: bool = True
    created_at: datetime


class ProviderProfile(BaseModel):
    vertical: Vertical
    owner_id: str
    is_enabled: bool = False
    title: str
    description: str = ""
    city: str
    neighborhood: Optional[str] = None
    address: Optional[Dict[str, str]] = None
    coordinates: Optional[Coordinates] = None
    languages: list[str] = Field(default_factory=list)
    service_categories: list[str] = Field(default_factory=list)
    max_capacity: int
    minimum_stay_nights: Optional[int] = None
    maximum_stay_nights: Optional[int] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    response_rate: float = 0.0
    average_response_latency_hours: int = 0
    completed_engagements: int = 0
    total_party_served: int = 0
    rating: float = 0.0
    review_count: int = 0
    payment_options: list[PaymentOption] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    last_active_at: Optional[datetime] = None


class Reputation(BaseModel):
    user_id: str
    trust_score: int = 0
    trust_level: str = "starter"


class ParticipantSeed(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    trust_score: int = Field(default=0, ge=0)
    trust_level: str = "starter"
    password: Optional[str] = Field(default=None, min_length=8)


class TrustRequirement(BaseModel):
    min_score: int
    allowed_levels: list[str]
    current_score: int
    current_level: str
    meets_requirement: bool


class AgreedTerms(BaseModel):
    payment_type: Optional[str] = None
    payment_amount: Optional[float] = Field(default=None, ge=0)
    payment_details: Optional[str] = None
    instructions: Optional[str] = None


class Booking(BaseModel):
    id: str
    vertical: Vertical
    provider_id: str
    requester_id: str
    window_start: datetime
    window_end: datetime
    party_size: int
    status: BookingStatus
    note: str = ""
    payment_option_id: Optional[str] = None
    agreed_payment_type: Optional[str] = None
    agreed_payment_amount: Optional[float] = None
    agreed_payment_details: Optional[str] = None
    instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class BookingSummary(BaseModel):
    id: str
    provider_id: str
    requester_id: str
    window_start: datetime
    window_end: datetime
    party_size: int
    status: BookingStatus


class AvailabilityResult(BaseModel):
    available: bool
    conflicts: list[BookingSummary] = Field(default_factory=list)
    message: str


class BookingRequestCreate(BaseModel):
    requester_id: str
    provider_id: str
    party_size: int = Field(default=1, ge=1)
    note: str = ""
    payment_option_id: Optional[str] = None
    # Either an explicit window, a guide-style date + times, or a stay-style date range.
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    tour_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None


class BookingResponseRequest(BaseModel):
    actor_user_id: str
    decision: Literal["approve", "reject"]
    terms: Optional[AgreedTerms] = None
    reason: str = ""


class BookingActionRequest(BaseModel):
    actor_user_id: str
    reason: str = ""
    notes: str = ""


class EngagementSession(BaseModel):
    id: str
    booking_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    notes: str = ""


class ProviderStats(BaseModel):
    vertical: Vertical
    provider_id: str
    total_bookings: int = 0
    responded_bookings: int = 0
    response_rate: float = 0.0
    average_response_latency_hours: int = 0
    completed_engagements: int = 0
    total_party_served: int = 0


class RatingSummary(BaseModel):
    vertical: Vertical
    user_id: str
    rating: float = 0.0
    review_count: int = 0


class ReviewCreate(BaseModel):
    booking_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(ge=1, le=5)
    categories: Dict[str, int] = Field(default_factory=dict)
    comment: str = ""
    is_public: bool = True

    @model_validator(mode="after")
    def _check_category_scores(self) -> "ReviewCreate":
        for name, score in self.categories.items():
            if not 1 <= score <= 5:
                raise ValueError(f"Category score for {name} must be between 1 and 5")
        return self


class Review(BaseModel):
    id: str
    booking_id: str
    vertical: Vertical
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(ge=1, le=5)
    categories: Dict[str, int] = Field(default_factory=dict)
    comment: str = ""
    is_public: bool = True
    created_at: datetime


class ProviderDashboard(BaseModel):
    profile: Optional[ProviderProfile] = None
    pending_requests: list[Booking] = Field(default_factory=list)
    upcoming: list[Booking] = Field(default_factory=list)
    stats: Optional[ProviderStats] = None
    rating: float = 0.0
    review_count: int = 0
    can_enable: bool = False
    trust_requirement: TrustRequirement


class ProfileCreateRequest(BaseModel):
    user_id: str
    profile: ProfileDescriptor


class ProfileUpdateRequest(BaseModel):
    user_id: str
    patch: ProfilePatch


class ProfileEnableRequest(BaseModel):
    user_id: str
    is_enabled: bool


class PaymentOptionCreate(BaseModel):
    user_id: str
    payment_type: str = Field(min_length=1)
    details: str = ""


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    event_kind: str
    title: str
    body: str
    category: Literal["booking", "review", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
