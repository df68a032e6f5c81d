import uuid
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from app.domain.bookings import statuses
from app.infra.db import Base


class Booking(Base):
    __tablename__ = "tour_bookings"
    __table_args__ = (
        Index("ix_tour_bookings_tour_date", "tour_id", "date"),
        Index("ix_tour_bookings_owner_status", "owner_id", "fulfillment_status"),
    )

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    tour_id: Mapped[str] = mapped_column(String(36), nullable=False)
    traveler_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    group_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    meeting_point: Mapped[str | None] = mapped_column(Text)
    meeting_time: Mapped[str | None] = mapped_column(String(16))
    participants: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    additional_services: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    additional_services_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    fulfillment_status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PENDING)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PAYMENT_PENDING)
    payment_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    traveler_notes: Mapped[str | None] = mapped_column(Text)
    owner_notes: Mapped[str | None] = mapped_column(Text)
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    request_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
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
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def is_participant(self, actor_id: str) -> bool:
        return actor_id in {self.traveler_id, self.owner_id}


class BookingEvent(Base):
    __tablename__ = "tour_booking_events"

    event_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("tour_bookings.booking_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
