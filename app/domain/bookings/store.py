import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings import statuses
from app.domain.bookings.db_models import Booking, BookingEvent
from app.domain.errors import BookingNotFound, DuplicateCheckoutSession
from app.infra.db import dialect_name

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "fulfillment_status",
    "payment_status",
    "payment_verified",
    "traveler_notes",
    "owner_notes",
    "checkout_session_id",
    "payment_intent_id",
    "meeting_point",
    "meeting_time",
    "confirmed_at",
    "cancelled_at",
    "completed_at",
}


@dataclass
class BookingSpec:
    tour_id: str
    traveler_id: str
    owner_id: str
    date: date | None
    group_size: int
    base_price: Decimal
    additional_services_price: Decimal
    total_price: Decimal
    currency: str
    meeting_point: str | None = None
    meeting_time: str | None = None
    participants: list[dict] = field(default_factory=list)
    additional_services: dict = field(default_factory=dict)
    traveler_notes: str | None = None
    checkout_session_id: str | None = None
    request_key: str | None = None


@dataclass
class BookingFilters:
    tour_id: str | None = None
    fulfillment_status: str | None = None
    payment_status: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = 50
    offset: int = 0


async def create(session: AsyncSession, spec: BookingSpec) -> Booking:
    """Insert a pending/unpaid booking inside a savepoint.

    A clash on ``checkout_session_id`` or ``request_key`` surfaces as
    ``DuplicateCheckoutSession`` and leaves the outer transaction usable.
    """
    booking = Booking(
        tour_id=spec.tour_id,
        traveler_id=spec.traveler_id,
        owner_id=spec.owner_id,
        date=spec.date,
        group_size=spec.group_size,
        base_price=spec.base_price,
        additional_services_price=spec.additional_services_price,
        total_price=spec.total_price,
        currency=spec.currency,
        meeting_point=spec.meeting_point,
        meeting_time=spec.meeting_time,
        participants=spec.participants,
        additional_services=spec.additional_services,
        traveler_notes=spec.traveler_notes,
        checkout_session_id=spec.checkout_session_id,
        request_key=spec.request_key,
        fulfillment_status=statuses.PENDING,
        payment_status=statuses.PAYMENT_PENDING,
    )
    nested = await session.begin_nested()
    session.add(booking)
    try:
        await session.flush()
    except IntegrityError as exc:
        await nested.rollback()
        logger.info(
            "booking_duplicate_rejected",
            extra={
                "extra": {
                    "checkout_session_id": spec.checkout_session_id,
                    "has_request_key": spec.request_key is not None,
                }
            },
        )
        raise DuplicateCheckoutSession(
            checkout_session_id=spec.checkout_session_id,
            request_key=spec.request_key,
        ) from exc
    await nested.commit()
    return booking


async def get(session: AsyncSession, booking_id: str) -> Booking | None:
    return await session.get(Booking, booking_id)


async def get_by_checkout_session_id(session: AsyncSession, checkout_session_id: str) -> Booking | None:
    result = await session.execute(
        select(Booking).where(Booking.checkout_session_id == checkout_session_id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_payment_intent_id(session: AsyncSession, payment_intent_id: str) -> Booking | None:
    result = await session.execute(
        select(Booking).where(Booking.payment_intent_id == payment_intent_id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_request_key(session: AsyncSession, request_key: str) -> Booking | None:
    result = await session.execute(select(Booking).where(Booking.request_key == request_key).limit(1))
    return result.scalar_one_or_none()


async def lock(
    session: AsyncSession,
    booking_id: str | None = None,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
) -> Booking | None:
    """Load a booking for mutation, holding a row lock where the database has them."""
    conditions = []
    if booking_id:
        conditions.append(Booking.booking_id == booking_id)
    if checkout_session_id:
        conditions.append(Booking.checkout_session_id == checkout_session_id)
    if payment_intent_id:
        conditions.append(Booking.payment_intent_id == payment_intent_id)
    if not conditions:
        return None

    stmt = select(Booking).where(or_(*conditions)).limit(1).execution_options(populate_existing=True)
    if dialect_name(session) == "postgresql":
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def update(session: AsyncSession, booking_id: str, fields: dict) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound()
    for key, value in fields.items():
        if key not in UPDATABLE_FIELDS:
            raise ValueError(f"Field {key} is not updatable")
        setattr(booking, key, value)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise DuplicateCheckoutSession(checkout_session_id=fields.get("checkout_session_id")) from exc
    return booking


def _filtered(stmt, filters: BookingFilters):
    if filters.tour_id:
        stmt = stmt.where(Booking.tour_id == filters.tour_id)
    if filters.fulfillment_status:
        stmt = stmt.where(Booking.fulfillment_status == filters.fulfillment_status)
    if filters.payment_status:
        stmt = stmt.where(Booking.payment_status == filters.payment_status)
    if filters.date_from:
        stmt = stmt.where(Booking.date >= filters.date_from)
    if filters.date_to:
        stmt = stmt.where(Booking.date <= filters.date_to)
    return stmt


async def _list(session: AsyncSession, condition, filters: BookingFilters) -> tuple[list[Booking], int]:
    stmt = _filtered(select(Booking).where(condition), filters)
    count_stmt = _filtered(select(func.count()).select_from(Booking).where(condition), filters)
    total = (await session.execute(count_stmt)).scalar_one()
    stmt = stmt.order_by(Booking.created_at.desc(), Booking.booking_id).limit(filters.limit).offset(filters.offset)
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total)


async def list_by_owner(
    session: AsyncSession, owner_id: str, filters: BookingFilters | None = None
) -> tuple[list[Booking], int]:
    return await _list(session, Booking.owner_id == owner_id, filters or BookingFilters())


async def list_by_traveler(
    session: AsyncSession, traveler_id: str, filters: BookingFilters | None = None
) -> tuple[list[Booking], int]:
    return await _list(session, Booking.traveler_id == traveler_id, filters or BookingFilters())


async def list_by_participant(
    session: AsyncSession, actor_id: str, filters: BookingFilters | None = None
) -> tuple[list[Booking], int]:
    condition = or_(Booking.traveler_id == actor_id, Booking.owner_id == actor_id)
    return await _list(session, condition, filters or BookingFilters())


async def count_active_spots(session: AsyncSession, tour_id: str, slot_date: date) -> int:
    """Sum of group sizes of non-cancelled bookings for one slot."""
    result = await session.execute(
        select(func.coalesce(func.sum(Booking.group_size), 0)).where(
            Booking.tour_id == tour_id,
            Booking.date == slot_date,
            Booking.fulfillment_status != statuses.CANCELLED,
        )
    )
    return int(result.scalar_one())


def append_event(
    session: AsyncSession,
    booking: Booking,
    action: str,
    actor_id: str | None = None,
    details: dict | None = None,
) -> BookingEvent:
    event = BookingEvent(
        booking_id=booking.booking_id,
        action=action,
        actor_id=actor_id,
        details=details or {},
    )
    session.add(event)
    return event


async def list_events(session: AsyncSession, booking_id: str) -> list[BookingEvent]:
    result = await session.execute(
        select(BookingEvent)
        .where(BookingEvent.booking_id == booking_id)
        .order_by(BookingEvent.created_at, BookingEvent.event_id)
    )
    return list(result.scalars().all())
