from datetime import date as date_type
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SlotSpec(BaseModel):
    date: date_type
    max_group_size: int | None = Field(None, ge=1)
    is_available: bool = True
    is_blocked: bool = False
    custom_price: Decimal | None = Field(None, ge=0)
    notes: str | None = None


class SlotUpsertRequest(BaseModel):
    slots: list[SlotSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique_dates(self) -> "SlotUpsertRequest":
        dates = [slot.date for slot in self.slots]
        if len(dates) != len(set(dates)):
            raise ValueError("Each date may appear only once")
        return self


class SlotBlockRequest(BaseModel):
    dates: list[date_type] = Field(min_length=1)
    blocked: bool = True


class SlotUpdateRequest(BaseModel):
    max_group_size: int | None = Field(None, ge=1)
    is_available: bool | None = None
    is_blocked: bool | None = None
    custom_price: Decimal | None = Field(None, ge=0)
    notes: str | None = None

    @field_validator("is_available", "is_blocked")
    @classmethod
    def reject_null_flags(cls, value: bool | None) -> bool:
        if value is None:
            raise ValueError("must be true or false")
        return value


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_id: str
    tour_id: str
    date: date_type
    max_group_size: int
    booked_spots: int
    available_spots: int
    is_available: bool
    is_blocked: bool
    is_bookable: bool
    custom_price: Decimal | None = None
    notes: str | None = None
    updated_at: datetime | None = None


class SlotListResponse(BaseModel):
    tour_id: str
    slots: list[SlotResponse]
