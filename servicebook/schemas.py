import datetime as dt
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator

from .core.slots import normalize_working_hours, parse_hhmm
from .core.statuses import is_known_status, normalize_status


def _checked_status(value: str | None) -> str | None:
    if value is None:
        return None
    if not is_known_status(value):
        raise ValueError("Unknown status; expected active, suspended or closed")
    return normalize_status(value)


class PartnerCreate(BaseModel):
    email: EmailStr
    company_name: str = Field(min_length=1, max_length=255)
    contact_person: str | None = Field(default=None, max_length=255)
    phone: str = Field(min_length=3, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    status: str = "active"

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        return _checked_status(value)


class PartnerUpdate(BaseModel):
    company_name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_person: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, min_length=3, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    status: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        return _checked_status(value)


class PartnerOut(BaseModel):
    id: int
    user_id: int | None = None
    company_name: str
    contact_person: str | None = None
    phone: str | None = None
    address: str | None = None
    email: str | None = None
    status: str
    is_active: bool
    created_at: datetime


class ServicePostIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    service_time_minutes: int = Field(ge=5, le=480)
    start: str = "09:00"
    end: str = "18:00"

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, value: str) -> str:
        minutes = parse_hhmm(value)
        return f"{minutes // 60:02d}:{minutes % 60:02d}"


class ServiceComment(BaseModel):
    service_id: int
    comment: str | None = Field(default=None, max_length=500)


class _ServicePointFields(BaseModel):
    region: str | None = Field(default=None, max_length=120)
    city: str | None = Field(default=None, max_length=120)
    address: str | None = Field(default=None, max_length=255)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    description: str | None = None
    contact_info: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    num_posts: int | None = Field(default=None, ge=1, le=50)

    @field_validator("working_hours", check_fields=False)
    @classmethod
    def validate_working_hours(cls, value):
        if value is None:
            return None
        return normalize_working_hours(value)

    @field_validator("status", check_fields=False)
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        return _checked_status(value)


class ServicePointCreate(_ServicePointFields):
    partner_id: int
    name: str = Field(min_length=1, max_length=255)
    working_hours: dict | None = None
    service_posts: list[ServicePostIn] = Field(default_factory=list)
    services: list[ServiceComment] = Field(default_factory=list)
    status: str = "active"


class ServicePointUpdate(_ServicePointFields):
    partner_id: int | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    working_hours: dict | None = None
    service_posts: list[ServicePostIn] | None = None
    services: list[ServiceComment] | None = None
    status: str | None = None


class ServicePointStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        return _checked_status(value)


class ServicePointOut(BaseModel):
    id: int
    partner_id: int
    name: str
    region: str | None = None
    city: str | None = None
    address: str | None = None
    lat: float | None = None
    lng: float | None = None
    description: str | None = None
    contact_info: str | None = None
    notes: str | None = None
    working_hours: dict = Field(default_factory=dict)
    service_posts: list[dict] = Field(default_factory=list)
    num_posts: int | None = None
    status: str
    is_active: bool
    services: list[int] = Field(default_factory=list)
    service_comments: list[ServiceComment] = Field(default_factory=list)
    created_at: datetime


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None


class ServiceOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    is_active: bool
    comment: str | None = None


class ScheduleGenerate(BaseModel):
    date: dt.date
    post_number: int = Field(default=1, ge=1)
    slot_duration: int | None = None


class ScheduleCreate(BaseModel):
    service_point_id: int
    post_number: int = Field(default=1, ge=1)
    date: dt.date
    start_time: dt.time
    end_time: dt.time


class ScheduleUpdate(BaseModel):
    post_number: int | None = Field(default=None, ge=1)
    date: dt.date | None = None
    start_time: dt.time | None = None
    end_time: dt.time | None = None


class ScheduleOut(BaseModel):
    id: int
    service_point_id: int
    post_number: int
    date: dt.date
    start_time: str
    end_time: str
    status: str


class ScheduleGenerateOut(BaseModel):
    service_point_id: int
    date: dt.date
    post_number: int
    slot_duration: int
    created: list[ScheduleOut]
    skipped: int


class NextSlotOut(BaseModel):
    can_iterate: bool
    next_slot: str | None = None
    reason: str | None = None


class AvailableDayOut(BaseModel):
    date: dt.date
    day_name: str
    day_number: int
    month: int
    year: int


class SlotPreviewOut(BaseModel):
    service_point_id: int
    slots: dict[str, int]


class BookingCreate(BaseModel):
    schedule_id: int
    service_point_id: int | None = None
    client_id: int | None = None
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=3, max_length=20)
    car_number: str = Field(min_length=1, max_length=20)
    vehicle_brand: str | None = Field(default=None, max_length=50)
    vehicle_type: str | None = Field(default=None, max_length=20)
    notes: str | None = None
    status: str = "confirmed"


class BookingUpdate(BaseModel):
    schedule_id: int | None = None
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    phone: str | None = Field(default=None, min_length=3, max_length=20)
    car_number: str | None = Field(default=None, min_length=1, max_length=20)
    vehicle_brand: str | None = Field(default=None, max_length=50)
    vehicle_type: str | None = Field(default=None, max_length=20)
    notes: str | None = None
    status: str | None = None


class BookingOut(BaseModel):
    id: int
    schedule_id: int
    service_point_id: int
    client_id: int | None = None
    full_name: str
    phone: str
    car_number: str
    vehicle_brand: str | None = None
    vehicle_type: str
    notes: str | None = None
    status: str
    date: dt.date | None = None
    time: str | None = None
    time_slot: str | None = None
    schedule_status: str | None = None
    created_at: datetime
    updated_at: datetime


class BookingStatusEventOut(BaseModel):
    id: int
    booking_id: int
    from_status: str | None = None
    to_status: str
    action: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime
