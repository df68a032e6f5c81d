import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

import anyio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import service as availability_service
from app.domain.bookings import statuses
from app.domain.bookings import store as booking_store
from app.domain.bookings.db_models import Booking
from app.domain.errors import (
    BookingAlreadyCancelled,
    BookingNotFound,
    CapacityExceeded,
    DateNotAvailable,
    Forbidden,
    InvalidTransition,
    NoGuideAssigned,
    ReservationUnavailable,
)
from app.domain.notifications.service import EffectsDispatcher, NoopEffectsDispatcher
from app.domain.tours.service import TourForBooking, get_tour_for_booking
from app.domain.travelers.service import AuthenticatedActor
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
NOTE_FIELDS = {"traveler_notes", "owner_notes"}
UNVERIFIED_PAYMENT_REASON = "payment signature could not be verified"
CANCELLATION_NOTE_PREFIX = "Cancellation: "


@dataclass
class BookingRequest:
    tour_id: str
    date: date
    group_size: int
    traveler_notes: str | None = None
    participants: list[dict] = field(default_factory=list)
    additional_services: dict = field(default_factory=dict)
    meeting_point: str | None = None
    meeting_time: str | None = None


@dataclass(frozen=True)
class PriceSnapshot:
    unit_price: Decimal
    additional_services_price: Decimal
    total_price: Decimal
    currency: str


@dataclass(frozen=True)
class PaymentAttributes:
    payment_intent_id: str | None = None
    signature_verified: bool = True
    event_id: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def price_booking(
    tour: TourForBooking,
    custom_price: Decimal | None,
    group_size: int,
    additional_services: dict | None = None,
) -> PriceSnapshot:
    """Unit price from the slot override or the tour, times heads, plus flat add-ons."""
    unit_price = _money(custom_price if custom_price is not None else tour.guided_price)
    addons = Decimal("0.00")
    for code, selected in (additional_services or {}).items():
        if selected and code in tour.addon_prices:
            addons += tour.addon_prices[code]
    addons = _money(addons)
    return PriceSnapshot(
        unit_price=unit_price,
        additional_services_price=addons,
        total_price=_money(unit_price * group_size + addons),
        currency=tour.currency,
    )


def _append_note(existing: str | None, line: str) -> str:
    return f"{existing}\n{line}" if existing else line


def _effects(effects: EffectsDispatcher | None) -> EffectsDispatcher:
    return effects if effects is not None else NoopEffectsDispatcher()


async def _release_after_failure(session: AsyncSession, tour_id: str, slot_date: date, group_size: int) -> None:
    try:
        await availability_service.release(session, tour_id, slot_date, group_size)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        # the reservation was never committed; rolling back discards it
        logger.warning(
            "reservation_release_failed",
            extra={"extra": {"tour_id": tour_id, "date": slot_date.isoformat(), "reason": type(exc).__name__}},
        )
        await session.rollback()
    else:
        metrics.record_reservation("released")


async def _create_once(
    session: AsyncSession,
    actor: AuthenticatedActor,
    request: BookingRequest,
    checkout_session_id: str | None,
    request_key: str | None,
) -> Booking:
    tour = await get_tour_for_booking(session, request.tour_id)
    if not tour.owner_id:
        raise NoGuideAssigned(f"Tour {tour.tour_id} has no guide assigned")

    outcome = await availability_service.try_reserve(session, tour.tour_id, request.date, request.group_size)
    if isinstance(outcome, availability_service.NotBookable):
        metrics.record_reservation("not_bookable")
        await session.rollback()
        raise DateNotAvailable(f"{request.date.isoformat()} is not available for booking ({outcome.reason})")
    if isinstance(outcome, availability_service.InsufficientCapacity):
        metrics.record_reservation("insufficient_capacity")
        await session.rollback()
        raise CapacityExceeded(available=outcome.available)
    metrics.record_reservation("reserved")

    try:
        price = price_booking(tour, outcome.custom_price, request.group_size, request.additional_services)
        booking = await booking_store.create(
            session,
            booking_store.BookingSpec(
                tour_id=tour.tour_id,
                traveler_id=actor.id,
                owner_id=tour.owner_id,
                date=request.date,
                group_size=request.group_size,
                base_price=price.unit_price,
                additional_services_price=price.additional_services_price,
                total_price=price.total_price,
                currency=price.currency,
                meeting_point=request.meeting_point or tour.meeting_point,
                meeting_time=request.meeting_time or tour.meeting_time,
                participants=request.participants,
                additional_services=request.additional_services,
                traveler_notes=request.traveler_notes,
                checkout_session_id=checkout_session_id,
                request_key=request_key,
            ),
        )
        booking_store.append_event(
            session,
            booking,
            statuses.EVENT_CREATED,
            actor_id=actor.id,
            details={"group_size": request.group_size, "total_price": str(price.total_price)},
        )
        await session.commit()
    except Exception:
        await _release_after_failure(session, tour.tour_id, request.date, request.group_size)
        raise

    await session.refresh(booking)
    return booking


async def create_booking(
    session: AsyncSession,
    actor: AuthenticatedActor,
    request: BookingRequest,
    checkout_session_id: str | None = None,
    request_key: str | None = None,
) -> Booking:
    """Reserve capacity and record a pending/unpaid booking.

    Capacity is held only by a committed booking: any failure after the
    reservation gives the spots back before the error propagates. Transient
    storage errors are retried, then reported as ``ReservationUnavailable``.
    """
    if request.group_size < 1:
        raise ValueError("group_size must be positive")

    max_attempts = settings.reservation_max_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            booking = await _create_once(session, actor, request, checkout_session_id, request_key)
        except OperationalError as exc:
            await session.rollback()
            logger.warning(
                "reservation_retry",
                extra={
                    "extra": {
                        "tour_id": request.tour_id,
                        "attempt": attempt,
                        "reason": type(exc.orig).__name__ if exc.orig is not None else type(exc).__name__,
                    }
                },
            )
            if attempt == max_attempts:
                metrics.record_reservation("unavailable")
                raise ReservationUnavailable("Could not reserve capacity, please retry") from exc
            await anyio.sleep(settings.reservation_retry_backoff_seconds * attempt)
            continue

        metrics.record_booking("created")
        logger.info(
            "booking_created",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "tour_id": booking.tour_id,
                    "date": booking.date.isoformat() if booking.date else None,
                    "group_size": booking.group_size,
                }
            },
        )
        return booking
    raise ReservationUnavailable()


async def _load_for_update(session: AsyncSession, booking_id: str) -> Booking:
    booking = await booking_store.lock(session, booking_id=booking_id)
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


async def confirm_payment(
    session: AsyncSession,
    booking_id: str | None = None,
    checkout_session_id: str | None = None,
    payment: PaymentAttributes | None = None,
    effects: EffectsDispatcher | None = None,
) -> Booking:
    """Mark a booking paid, auto-confirming a pending fulfillment.

    Repeated confirmations return the booking untouched and emit nothing.
    Money arriving for a cancelled booking is recorded and reported to the
    owner, then rejected with ``BookingAlreadyCancelled``.
    """
    payment = payment or PaymentAttributes()
    dispatcher = _effects(effects)
    booking = await booking_store.lock(
        session,
        booking_id=booking_id,
        checkout_session_id=None if booking_id else checkout_session_id,
    )
    if booking is None:
        raise BookingNotFound("Booking not found for payment")

    if booking.payment_status == statuses.PAID:
        logger.info(
            "payment_already_confirmed",
            extra={"extra": {"booking_id": booking.booking_id, "event_id": payment.event_id}},
        )
        await session.commit()
        return booking

    if booking.fulfillment_status == statuses.CANCELLED:
        booking_store.append_event(
            session,
            booking,
            statuses.EVENT_PAYMENT_AFTER_CANCELLATION,
            details={
                "signature_verified": payment.signature_verified,
                "event_id": payment.event_id,
                "payment_intent_id": payment.payment_intent_id,
            },
        )
        await session.commit()
        logger.warning(
            "payment_after_cancellation",
            extra={"extra": {"booking_id": booking.booking_id, "event_id": payment.event_id}},
        )
        metrics.record_booking("payment_after_cancellation")
        await dispatcher.on_payment_anomaly(booking, "payment received after cancellation")
        raise BookingAlreadyCancelled(f"Booking {booking.booking_id} is cancelled")

    if not statuses.can_transition_payment(booking.payment_status, statuses.PAID):
        logger.info(
            "payment_confirmation_ignored",
            extra={"extra": {"booking_id": booking.booking_id, "payment_status": booking.payment_status}},
        )
        await session.commit()
        return booking

    booking.payment_status = statuses.PAID
    booking.payment_verified = payment.signature_verified
    if payment.payment_intent_id:
        booking.payment_intent_id = payment.payment_intent_id
    if checkout_session_id and not booking.checkout_session_id:
        booking.checkout_session_id = checkout_session_id
    booking_store.append_event(
        session,
        booking,
        statuses.EVENT_PAYMENT_CONFIRMED,
        details={"signature_verified": payment.signature_verified, "event_id": payment.event_id},
    )
    if not payment.signature_verified:
        booking_store.append_event(
            session, booking, statuses.EVENT_PAYMENT_UNVERIFIED, details={"event_id": payment.event_id}
        )
    if booking.fulfillment_status == statuses.PENDING:
        booking.fulfillment_status = statuses.CONFIRMED
        booking.confirmed_at = _now()
        booking_store.append_event(session, booking, statuses.EVENT_CONFIRMED, details={"source": "payment"})
    await session.commit()
    await session.refresh(booking)

    metrics.record_booking("paid")
    logger.info(
        "payment_confirmed",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "signature_verified": payment.signature_verified,
                "fulfillment_status": booking.fulfillment_status,
            }
        },
    )
    await dispatcher.on_confirmed(booking)
    if not payment.signature_verified:
        await dispatcher.on_payment_anomaly(booking, UNVERIFIED_PAYMENT_REASON)
    return booking


async def _cancel_locked(
    session: AsyncSession,
    booking: Booking,
    reason: str | None,
    actor_id: str | None,
) -> None:
    booking.fulfillment_status = statuses.CANCELLED
    booking.cancelled_at = _now()
    booking.owner_notes = _append_note(
        booking.owner_notes, f"{CANCELLATION_NOTE_PREFIX}{reason or 'no reason given'}"
    )
    await availability_service.release(session, booking.tour_id, booking.date, booking.group_size)
    booking_store.append_event(
        session,
        booking,
        statuses.EVENT_CANCELLED,
        actor_id=actor_id,
        details={"reason": reason},
    )


async def cancel_booking(
    session: AsyncSession,
    booking_id: str,
    actor: AuthenticatedActor,
    reason: str | None = None,
    effects: EffectsDispatcher | None = None,
) -> Booking:
    booking = await _load_for_update(session, booking_id)
    if not booking.is_participant(actor.id):
        raise Forbidden("Only the traveler or the tour owner can cancel this booking")

    if booking.fulfillment_status in statuses.FULFILLMENT_TERMINAL:
        # capacity already released, or the tour already happened
        await session.commit()
        return booking

    await _cancel_locked(session, booking, reason, actor.id)
    await session.commit()
    await session.refresh(booking)

    metrics.record_booking("cancelled")
    logger.info(
        "booking_cancelled",
        extra={"extra": {"booking_id": booking.booking_id, "by": "owner" if actor.id == booking.owner_id else "traveler"}},
    )
    await _effects(effects).on_cancelled(booking, actor.id)
    return booking


def _check_notes_editor(booking: Booking, actor: AuthenticatedActor, field_name: str) -> None:
    if field_name not in NOTE_FIELDS:
        raise ValueError(f"Unknown notes field {field_name}")
    if not booking.is_participant(actor.id):
        raise Forbidden("Not a participant of this booking")
    allowed_actor = booking.owner_id if field_name == "owner_notes" else booking.traveler_id
    if actor.id != allowed_actor:
        raise Forbidden(f"Only the {'owner' if field_name == 'owner_notes' else 'traveler'} can edit {field_name}")


def check_update_allowed(
    booking: Booking,
    actor: AuthenticatedActor,
    note_fields: Iterable[str] = (),
    fulfillment_status: str | None = None,
) -> None:
    """Raise unless the actor may apply every requested change.

    A combined edit is all-or-nothing, so callers check before mutating anything.
    """
    for field_name in note_fields:
        _check_notes_editor(booking, actor, field_name)
    if fulfillment_status is None:
        return
    if not booking.is_participant(actor.id):
        raise Forbidden("Not a participant of this booking")
    if fulfillment_status == statuses.CONFIRMED and actor.id != booking.owner_id:
        raise Forbidden("Only the tour owner can confirm a booking")
    if (
        fulfillment_status == statuses.CONFIRMED
        and booking.fulfillment_status != statuses.CONFIRMED
        and not statuses.can_transition(booking.fulfillment_status, statuses.CONFIRMED)
    ):
        raise InvalidTransition(f"Cannot confirm a {booking.fulfillment_status} booking")


def _keep_cancellation_log(existing: str | None, text: str | None) -> str | None:
    new_lines = (text or "").splitlines()
    kept = [
        line
        for line in (existing or "").splitlines()
        if line.startswith(CANCELLATION_NOTE_PREFIX) and line not in new_lines
    ]
    if not kept:
        return text
    return "\n".join(([text] if text else []) + kept)


async def update_notes(
    session: AsyncSession,
    booking_id: str,
    actor: AuthenticatedActor,
    field_name: str,
    text: str | None,
) -> Booking:
    booking = await _load_for_update(session, booking_id)
    _check_notes_editor(booking, actor, field_name)

    if field_name == "owner_notes":
        text = _keep_cancellation_log(booking.owner_notes, text)
    setattr(booking, field_name, text)
    booking_store.append_event(
        session, booking, statuses.EVENT_NOTES_UPDATED, actor_id=actor.id, details={"field": field_name}
    )
    await session.commit()
    await session.refresh(booking)
    return booking


async def confirm_booking(session: AsyncSession, booking_id: str, actor: AuthenticatedActor) -> Booking:
    booking = await _load_for_update(session, booking_id)
    if not booking.is_participant(actor.id):
        raise Forbidden("Not a participant of this booking")
    if actor.id != booking.owner_id:
        raise Forbidden("Only the tour owner can confirm a booking")
    if booking.fulfillment_status == statuses.CONFIRMED:
        return booking
    if not statuses.can_transition(booking.fulfillment_status, statuses.CONFIRMED):
        raise InvalidTransition(f"Cannot confirm a {booking.fulfillment_status} booking")

    booking.fulfillment_status = statuses.CONFIRMED
    booking.confirmed_at = _now()
    booking_store.append_event(session, booking, statuses.EVENT_CONFIRMED, actor_id=actor.id)
    await session.commit()
    await session.refresh(booking)
    metrics.record_booking("confirmed")
    logger.info("booking_confirmed", extra={"extra": {"booking_id": booking.booking_id}})
    return booking


async def complete_booking(session: AsyncSession, booking_id: str) -> Booking:
    booking = await _load_for_update(session, booking_id)
    if booking.fulfillment_status == statuses.COMPLETED:
        return booking
    if not statuses.can_transition(booking.fulfillment_status, statuses.COMPLETED):
        raise InvalidTransition(f"Cannot complete a {booking.fulfillment_status} booking")
    booking.fulfillment_status = statuses.COMPLETED
    booking.completed_at = _now()
    booking_store.append_event(session, booking, statuses.EVENT_COMPLETED)
    await session.commit()
    await session.refresh(booking)
    metrics.record_booking("completed")
    return booking


async def complete_past_bookings(session: AsyncSession, today: date) -> int:
    """Move confirmed bookings whose tour date is before ``today`` to completed."""
    result = await session.execute(
        select(Booking).where(
            Booking.fulfillment_status == statuses.CONFIRMED,
            Booking.date.is_not(None),
            Booking.date < today,
        )
    )
    bookings = list(result.scalars().all())
    completed_at = _now()
    for booking in bookings:
        booking.fulfillment_status = statuses.COMPLETED
        booking.completed_at = completed_at
        booking_store.append_event(session, booking, statuses.EVENT_COMPLETED, details={"source": "job"})
    if bookings:
        await session.commit()
        metrics.record_booking("completed", len(bookings))
    logger.info("bookings_completed", extra={"extra": {"count": len(bookings), "before": today.isoformat()}})
    return len(bookings)


async def mark_payment_failed(
    session: AsyncSession,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
    reason: str = "payment_failed",
    effects: EffectsDispatcher | None = None,
) -> Booking | None:
    booking = await booking_store.lock(
        session, checkout_session_id=checkout_session_id, payment_intent_id=payment_intent_id
    )
    if booking is None:
        return None
    if not statuses.can_transition_payment(booking.payment_status, statuses.FAILED):
        await session.commit()
        return booking

    booking.payment_status = statuses.FAILED
    booking_store.append_event(session, booking, statuses.EVENT_PAYMENT_FAILED, details={"reason": reason})
    cancelled = booking.fulfillment_status == statuses.PENDING
    if cancelled:
        await _cancel_locked(session, booking, f"payment {reason}", None)
    await session.commit()
    await session.refresh(booking)

    metrics.record_booking("payment_failed")
    logger.info(
        "payment_failed",
        extra={"extra": {"booking_id": booking.booking_id, "reason": reason, "cancelled": cancelled}},
    )
    if cancelled:
        await _effects(effects).on_cancelled(booking)
    return booking


async def refund_payment(
    session: AsyncSession,
    booking_id: str | None = None,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
    effects: EffectsDispatcher | None = None,
) -> Booking | None:
    booking = await booking_store.lock(
        session,
        booking_id=booking_id,
        checkout_session_id=checkout_session_id,
        payment_intent_id=payment_intent_id,
    )
    if booking is None:
        return None
    if not statuses.can_transition_payment(booking.payment_status, statuses.REFUNDED):
        await session.commit()
        return booking

    booking.payment_status = statuses.REFUNDED
    booking_store.append_event(session, booking, statuses.EVENT_REFUNDED)
    cancelled = booking.fulfillment_status in {statuses.PENDING, statuses.CONFIRMED}
    if cancelled:
        await _cancel_locked(session, booking, "payment refunded", None)
    await session.commit()
    await session.refresh(booking)

    metrics.record_booking("refunded")
    logger.info("payment_refunded", extra={"extra": {"booking_id": booking.booking_id, "cancelled": cancelled}})
    if cancelled:
        await _effects(effects).on_cancelled(booking)
    return booking


async def attach_checkout_session(
    session: AsyncSession,
    booking_id: str,
    checkout_session_id: str,
    payment_intent_id: str | None = None,
) -> Booking:
    booking = await _load_for_update(session, booking_id)
    if booking.checkout_session_id == checkout_session_id:
        return booking
    fields = {"checkout_session_id": checkout_session_id}
    if payment_intent_id:
        fields["payment_intent_id"] = payment_intent_id
    try:
        booking = await booking_store.update(session, booking.booking_id, fields)
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    await session.refresh(booking)
    return booking
