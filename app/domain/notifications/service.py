import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.bookings.db_models import Booking
from app.domain.notifications.db_models import Notification
from app.domain.tours.db_models import Tour
from app.domain.travelers.service import get_contact_email
from app.infra.db import get_session_factory
from app.infra.email import EmailAdapter, resolve_email_adapter
from app.settings import settings

logger = logging.getLogger(__name__)

KIND_BOOKING = "booking"
KIND_BOOKING_CANCELLED = "booking_cancelled"
KIND_PAYMENT_ANOMALY = "payment_anomaly"
RELATED_TYPE_BOOKING = "booking"


class EffectsDispatcher(Protocol):
    async def on_confirmed(self, booking: Booking) -> None: ...

    async def on_cancelled(self, booking: Booking, actor_id: str | None = None) -> None: ...

    async def on_payment_anomaly(self, booking: Booking, reason: str) -> None: ...


class NoopEffectsDispatcher:
    async def on_confirmed(self, booking: Booking) -> None:
        return None

    async def on_cancelled(self, booking: Booking, actor_id: str | None = None) -> None:
        return None

    async def on_payment_anomaly(self, booking: Booking, reason: str) -> None:
        return None


@dataclass(frozen=True)
class _BookingFacts:
    booking_id: str
    tour_id: str
    owner_id: str
    traveler_id: str
    date: date | None
    group_size: int

    @classmethod
    def of(cls, booking: Booking) -> "_BookingFacts":
        return cls(
            booking_id=booking.booking_id,
            tour_id=booking.tour_id,
            owner_id=booking.owner_id,
            traveler_id=booking.traveler_id,
            date=booking.date,
            group_size=booking.group_size,
        )

    @property
    def date_label(self) -> str:
        return self.date.isoformat() if self.date else "an open date"


class NotificationEffectsDispatcher:
    """Owner notification plus one email per confirmed transition.

    Runs in its own session after the booking transaction committed; every
    failure is logged and dropped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_adapter: EmailAdapter | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.email_adapter = email_adapter

    async def on_confirmed(self, booking: Booking) -> None:
        facts = _BookingFacts.of(booking)
        title = await self._tour_title(facts.tour_id)
        spots = "spot" if facts.group_size == 1 else "spots"
        message = f"{facts.group_size} {spots} booked for {title} on {facts.date_label}"
        await self._notify(facts, KIND_BOOKING, "New Booking", message)
        await self._email_owner(
            facts,
            subject=f"New Booking: {title}",
            body=(
                "You have a new confirmed booking.\n\n"
                f"Tour: {title}\n"
                f"Date: {facts.date_label}\n"
                f"Group size: {facts.group_size}\n"
                f"Booking reference: {facts.booking_id}\n"
            ),
        )

    async def on_cancelled(self, booking: Booking, actor_id: str | None = None) -> None:
        facts = _BookingFacts.of(booking)
        if actor_id is not None and actor_id == facts.owner_id:
            return
        title = await self._tour_title(facts.tour_id)
        message = f"Booking for {title} on {facts.date_label} was cancelled"
        await self._notify(facts, KIND_BOOKING_CANCELLED, "Booking Cancelled", message)

    async def on_payment_anomaly(self, booking: Booking, reason: str) -> None:
        facts = _BookingFacts.of(booking)
        title = await self._tour_title(facts.tour_id)
        message = f"Payment received for {title} on {facts.date_label} needs review: {reason}"
        await self._notify(facts, KIND_PAYMENT_ANOMALY, "Payment Needs Review", message)

    async def _tour_title(self, tour_id: str) -> str:
        try:
            async with self.session_factory() as session:
                tour = await session.get(Tour, tour_id)
                return tour.title if tour else "your tour"
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "effects_tour_lookup_failed",
                extra={"extra": {"tour_id": tour_id, "reason": type(exc).__name__}},
            )
            return "your tour"

    async def _notify(self, facts: _BookingFacts, kind: str, title: str, message: str) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    Notification(
                        user_id=facts.owner_id,
                        kind=kind,
                        title=title,
                        message=message,
                        related_id=facts.booking_id,
                        related_type=RELATED_TYPE_BOOKING,
                    )
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "effects_notification_failed",
                extra={"extra": {"booking_id": facts.booking_id, "kind": kind, "reason": type(exc).__name__}},
            )
            return
        logger.info(
            "effects_notification_created",
            extra={"extra": {"booking_id": facts.booking_id, "kind": kind}},
        )

    async def _email_owner(self, facts: _BookingFacts, subject: str, body: str) -> None:
        if self.email_adapter is None:
            return
        try:
            async with self.session_factory() as session:
                recipient = await get_contact_email(session, facts.owner_id)
            if not recipient:
                logger.info(
                    "effects_email_skipped",
                    extra={"extra": {"booking_id": facts.booking_id, "reason": "owner_email_missing"}},
                )
                return
            await self.email_adapter.send_email(recipient=recipient, subject=subject, body=body)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "effects_email_failed",
                extra={"extra": {"booking_id": facts.booking_id, "reason": type(exc).__name__}},
            )


def resolve_effects_dispatcher(app_state: Any) -> EffectsDispatcher:
    dispatcher = getattr(app_state, "effects_dispatcher", None)
    if dispatcher is not None:
        return dispatcher
    if not settings.effects_enabled:
        dispatcher = NoopEffectsDispatcher()
    else:
        session_factory = getattr(app_state, "db_session_factory", None) or get_session_factory()
        email_adapter = getattr(app_state, "email_adapter", None) or resolve_email_adapter(settings)
        dispatcher = NotificationEffectsDispatcher(session_factory, email_adapter)
    app_state.effects_dispatcher = dispatcher
    return dispatcher
