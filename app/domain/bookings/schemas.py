from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class Participant(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    age: int | None = Field(None, ge=0, le=150)
    email: EmailStr | None = None


class BookingCreateRequest(BaseModel):
    tour_id: str
    date: date_type
    group_size: int = Field(1, ge=1, le=100)
    participants: list[Participant] = Field(default_factory=list)
    additional_services: dict[str, bool] = Field(default_factory=dict)
    meeting_point: str | None = None
    meeting_time: str | None = None
    notes: str | None = Field(None, max_length=4000)

    @model_validator(mode="after")
    def validate_participants(self) -> "BookingCreateRequest":
        if len(self.participants) > self.group_size:
            raise ValueError("More participants than group_size")
        return self


class BookingUpdateRequest(BaseModel):
    traveler_notes: str | None = Field(None, max_length=4000)
    owner_notes: str | None = Field(None, max_length=4000)
    fulfillment_status: Literal["confirmed", "cancelled"] | None = None
    cancellation_reason: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def validate_not_empty(self) -> "BookingUpdateRequest":
        if (
            self.traveler_notes is None
            and self.owner_notes is None
            and self.fulfillment_status is None
        ):
            raise ValueError("Nothing to update")
        return self


class BookingCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    tour_id: str
    traveler_id: str
    owner_id: str
    date: date_type | None
    group_size: int
    meeting_point: str | None = None
    meeting_time: str | None = None
    participants: list[dict] = Field(default_factory=list)
    additional_services: dict = Field(default_factory=dict)
    base_price: Decimal
    additional_services_price: Decimal
    total_price: Decimal
    currency: str
    fulfillment_status: str
    payment_status: str
    payment_verified: bool | None = None
    traveler_notes: str | None = None
    owner_notes: str | None = None
    checkout_session_id: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int


class CheckoutResponse(BaseModel):
    booking_id: str
    checkout_url: str
    checkout_session_id: str
