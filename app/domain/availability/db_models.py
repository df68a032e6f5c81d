import uuid
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.infra.db import Base


class AvailabilitySlot(Base):
    __tablename__ = "tour_availability_slots"
    __table_args__ = (
        UniqueConstraint("tour_id", "date", name="uq_tour_availability_slots_tour_date"),
        CheckConstraint(
            "booked_spots >= 0 AND booked_spots <= max_group_size",
            name="booked_within_capacity",
        ),
    )

    slot_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    tour_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    max_group_size: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    booked_spots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    custom_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def available_spots(self) -> int:
        return max(0, self.max_group_size - self.booked_spots)

    @property
    def is_bookable(self) -> bool:
        return self.is_available and not self.is_blocked and self.booked_spots < self.max_group_size
