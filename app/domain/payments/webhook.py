from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings import service as reservation_service
from app.domain.bookings import statuses
from app.domain.bookings import store as booking_store
from app.domain.bookings.db_models import Booking
from app.domain.errors import BookingAlreadyCancelled, DomainError, DuplicateCheckoutSession
from app.domain.notifications.service import EffectsDispatcher
from app.domain.payments.db_models import StripeEvent
from app.domain.travelers.service import AuthenticatedActor, get_or_create_by_email
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_ID_PATTERN = re.compile(r"^cs_(test_|live_)?[A-Za-z0-9]+$")
GUIDED_TOUR_TYPE = "with-guide"

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
EVENT_CHECKOUT_EXPIRED = "checkout.session.expired"
EVENT_CHECKOUT_ASYNC_FAILED = "checkout.session.async_payment_failed"
EVENT_PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"

COMPLETION_EVENTS = {EVENT_CHECKOUT_COMPLETED, EVENT_CHECKOUT_ASYNC_SUCCEEDED}
SETTLED_SESSION_PAYMENT_STATUSES = {"paid", "no_payment_required"}


class UnparsableWebhook(Exception):
    """Payload cannot be turned into a recognizable gateway event."""


class UnverifiedWebhookRejected(Exception):
    """Signature check failed and unverified payloads are not accepted."""


@dataclass(frozen=True)
class ParsedEvent:
    event: Any
    signature_verified: bool
    payload_hash: str

    @property
    def event_type(self) -> str | None:
        return _safe_get(self.event, "type")

    @property
    def data_object(self) -> Any:
        data = _safe_get(self.event, "data", {}) or {}
        return _safe_get(data, "object", {}) or {}

    @property
    def event_id(self) -> str:
        event_id = _safe_get(self.event, "id")
        if event_id:
            return str(event_id)
        session_id = _safe_get(self.data_object, "id")
        if session_id:
            return f"session:{session_id}"
        return f"payload:{self.payload_hash[:40]}"


@dataclass
class WebhookResult:
    outcome: str
    event_id: str
    event_type: str | None
    signature_verified: bool
    booking_id: str | None = None

    def as_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "outcome": self.outcome}
        if self.booking_id:
            body["booking_id"] = self.booking_id
        return body


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _object_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    identifier = _safe_get(value, "id")
    return str(identifier) if identifier else None


def is_checkout_session_id(value: Any) -> bool:
    return isinstance(value, str) and CHECKOUT_SESSION_ID_PATTERN.match(value) is not None


def parse_unverified_payload(payload: bytes) -> dict[str, Any]:
    """Structural fallback for payloads whose signature could not be checked.

    Accepts a full event envelope (``type`` + ``data.object``) or a bare
    ``checkout.session`` object, which is treated as a completion event.
    """
    try:
        body = json.loads(payload or b"")
    except (TypeError, ValueError) as exc:
        raise UnparsableWebhook("Body is not JSON") from exc
    if not isinstance(body, dict):
        raise UnparsableWebhook("Body is not a JSON object")

    data = body.get("data")
    if isinstance(body.get("type"), str) and isinstance(data, dict) and isinstance(data.get("object"), dict):
        event = body
    elif body.get("object") == "checkout.session":
        event = {"id": None, "type": EVENT_CHECKOUT_COMPLETED, "data": {"object": body}}
    else:
        raise UnparsableWebhook("Unrecognized event structure")

    if event["type"] in COMPLETION_EVENTS and not is_checkout_session_id(event["data"]["object"].get("id")):
        raise UnparsableWebhook("Missing or malformed checkout session id")
    return event


@dataclass(frozen=True)
class CheckoutMetadata:
    email: str | None
    tour_id: str | None
    tour_type: str | None
    selected_date: str | None
    quantity: Any
    booking_id: str | None

    @classmethod
    def from_session(cls, checkout_session: Any) -> "CheckoutMetadata":
        metadata = _safe_get(checkout_session, "metadata", {}) or {}
        customer_details = _safe_get(checkout_session, "customer_details", {}) or {}
        email = (
            _safe_get(metadata, "email")
            or _safe_get(checkout_session, "customer_email")
            or _safe_get(customer_details, "email")
        )
        return cls(
            email=email,
            tour_id=_safe_get(metadata, "tourId"),
            tour_type=_safe_get(metadata, "tourType"),
            selected_date=_safe_get(metadata, "selectedDate"),
            quantity=_safe_get(metadata, "quantity"),
            booking_id=_safe_get(metadata, "bookingId"),
        )

    @property
    def is_guided(self) -> bool:
        return self.tour_type == GUIDED_TOUR_TYPE and bool(self.tour_id)

    def group_size(self) -> int:
        if self.quantity in (None, ""):
            return 1
        size = int(self.quantity)
        if size < 1:
            raise ValueError("quantity must be positive")
        return size

    def tour_date(self) -> date:
        if not self.selected_date:
            raise ValueError("selectedDate missing")
        return date.fromisoformat(str(self.selected_date)[:10])


class PaymentWebhookProcessor:
    """Turns gateway deliveries into reservation-service calls.

    Every delivery that parses is acknowledged, whatever the business
    outcome; the booking's unique checkout session id keeps redeliveries
    from creating or confirming anything twice.
    """

    def __init__(self, stripe_client: Any, effects: EffectsDispatcher, allow_unverified: bool = True) -> None:
        self.stripe_client = stripe_client
        self.effects = effects
        self.allow_unverified = allow_unverified

    def parse(self, payload: bytes, signature: str | None) -> ParsedEvent:
        payload_hash = hashlib.sha256(payload or b"").hexdigest()
        try:
            event = self.stripe_client.verify_webhook(payload=payload, signature=signature)
        except Exception as exc:  # noqa: BLE001
            if not self.allow_unverified:
                logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
                raise UnverifiedWebhookRejected("Invalid Stripe webhook signature") from exc
            event = parse_unverified_payload(payload)
            logger.warning(
                "stripe_webhook_unverified",
                extra={
                    "extra": {
                        "reason": type(exc).__name__,
                        "event_type": event.get("type"),
                        "checkout_session_id": _safe_get(event["data"]["object"], "id"),
                    }
                },
            )
            return ParsedEvent(event=event, signature_verified=False, payload_hash=payload_hash)
        if not _safe_get(event, "type"):
            raise UnparsableWebhook("Verified event has no type")
        return ParsedEvent(event=event, signature_verified=True, payload_hash=payload_hash)

    async def process(self, session: AsyncSession, payload: bytes, signature: str | None) -> WebhookResult:
        parsed = self.parse(payload, signature)
        result = WebhookResult(
            outcome="ignored",
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            signature_verified=parsed.signature_verified,
        )
        try:
            await self._dispatch(session, parsed, result)
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            result.outcome = "error"
            logger.exception(
                "stripe_webhook_error",
                extra={"extra": {"event_id": result.event_id, "reason": type(exc).__name__}},
            )

        await self._record_delivery(session, parsed, result)
        metrics.record_webhook(result.outcome, parsed.signature_verified)
        logger.info(
            "stripe_webhook_processed",
            extra={
                "extra": {
                    "event_id": result.event_id,
                    "event_type": result.event_type,
                    "outcome": result.outcome,
                    "signature_verified": result.signature_verified,
                    "booking_id": result.booking_id,
                }
            },
        )
        return result

    async def _dispatch(self, session: AsyncSession, parsed: ParsedEvent, result: WebhookResult) -> None:
        event_type = parsed.event_type
        data_object = parsed.data_object

        if event_type in COMPLETION_EVENTS:
            await self._handle_completed(session, parsed, data_object, result)
            return

        if not parsed.signature_verified:
            # the fallback only vouches for completion events
            result.outcome = "untrusted_ignored"
            return

        if event_type in {EVENT_CHECKOUT_EXPIRED, EVENT_CHECKOUT_ASYNC_FAILED}:
            reason = "expired" if event_type == EVENT_CHECKOUT_EXPIRED else "async_payment_failed"
            booking = await reservation_service.mark_payment_failed(
                session,
                checkout_session_id=_object_id(data_object),
                reason=reason,
                effects=self.effects,
            )
            self._set_booking_outcome(result, booking, "payment_failed")
            return

        if event_type == EVENT_PAYMENT_INTENT_FAILED:
            # checkout keeps the session open for another attempt; expiry is the terminal signal
            booking = await booking_store.get_by_payment_intent_id(session, _object_id(data_object) or "")
            result.booking_id = booking.booking_id if booking else None
            result.outcome = "payment_attempt_failed"
            logger.info(
                "stripe_payment_attempt_failed",
                extra={"extra": {"event_id": result.event_id, "booking_id": result.booking_id}},
            )
            return

        if event_type == EVENT_CHARGE_REFUNDED:
            if not _safe_get(data_object, "refunded", True):
                result.outcome = "partial_refund_ignored"
                return
            booking = await reservation_service.refund_payment(
                session,
                payment_intent_id=_object_id(_safe_get(data_object, "payment_intent")),
                effects=self.effects,
            )
            self._set_booking_outcome(result, booking, "refunded")
            return

        result.outcome = "ignored"

    @staticmethod
    def _set_booking_outcome(result: WebhookResult, booking: Booking | None, outcome: str) -> None:
        if booking is None:
            result.outcome = "booking_not_found"
            return
        result.booking_id = booking.booking_id
        result.outcome = outcome

    async def _handle_completed(
        self,
        session: AsyncSession,
        parsed: ParsedEvent,
        checkout_session: Any,
        result: WebhookResult,
    ) -> None:
        checkout_session_id = _safe_get(checkout_session, "id")
        if not is_checkout_session_id(checkout_session_id):
            result.outcome = "invalid_session_id"
            return
        session_payment_status = _safe_get(checkout_session, "payment_status")
        if session_payment_status and session_payment_status not in SETTLED_SESSION_PAYMENT_STATUSES:
            result.outcome = "awaiting_payment"
            return

        metadata = CheckoutMetadata.from_session(checkout_session)
        payment = reservation_service.PaymentAttributes(
            payment_intent_id=_object_id(_safe_get(checkout_session, "payment_intent")),
            signature_verified=parsed.signature_verified,
            event_id=_safe_get(parsed.event, "id"),
        )

        booking = await booking_store.get_by_checkout_session_id(session, checkout_session_id)
        if booking is None and metadata.booking_id:
            booking = await booking_store.get(session, metadata.booking_id)
            if booking is None:
                result.outcome = "booking_not_found"
                return
        if booking is None:
            if not metadata.is_guided:
                logger.info(
                    "stripe_webhook_non_guided_purchase",
                    extra={"extra": {"checkout_session_id": checkout_session_id, "tour_type": metadata.tour_type}},
                )
                result.outcome = "non_guided_acknowledged"
                return
            booking = await self._create_from_metadata(session, checkout_session_id, metadata, result)
            if booking is None:
                return

        await self._confirm(session, booking, checkout_session_id, payment, result)

    async def _create_from_metadata(
        self,
        session: AsyncSession,
        checkout_session_id: str,
        metadata: CheckoutMetadata,
        result: WebhookResult,
    ) -> Booking | None:
        if not metadata.email:
            result.outcome = "missing_email"
            return None
        try:
            slot_date = metadata.tour_date()
            group_size = metadata.group_size()
        except (TypeError, ValueError):
            result.outcome = "invalid_metadata"
            return None

        traveler = await get_or_create_by_email(session, metadata.email)
        await session.commit()
        actor = AuthenticatedActor(id=traveler.traveler_id, role=traveler.role, email=traveler.email)
        request = reservation_service.BookingRequest(tour_id=metadata.tour_id, date=slot_date, group_size=group_size)
        try:
            return await reservation_service.create_booking(
                session, actor, request, checkout_session_id=checkout_session_id
            )
        except DuplicateCheckoutSession:
            # a concurrent delivery won the insert
            booking = await booking_store.get_by_checkout_session_id(session, checkout_session_id)
            if booking is None:
                raise
            return booking
        except DomainError as exc:
            result.outcome = "booking_rejected"
            logger.warning(
                "stripe_webhook_booking_rejected",
                extra={
                    "extra": {
                        "checkout_session_id": checkout_session_id,
                        "tour_id": metadata.tour_id,
                        "reason": exc.code,
                    }
                },
            )
            return None

    async def _confirm(
        self,
        session: AsyncSession,
        booking: Booking,
        checkout_session_id: str,
        payment: reservation_service.PaymentAttributes,
        result: WebhookResult,
    ) -> None:
        result.booking_id = booking.booking_id
        already_paid = booking.payment_status == statuses.PAID
        try:
            await reservation_service.confirm_payment(
                session,
                booking_id=booking.booking_id,
                checkout_session_id=checkout_session_id,
                payment=payment,
                effects=self.effects,
            )
        except BookingAlreadyCancelled:
            result.outcome = "payment_after_cancellation"
            return
        result.outcome = "duplicate" if already_paid else "confirmed"

    async def _record_delivery(self, session: AsyncSession, parsed: ParsedEvent, result: WebhookResult) -> None:
        checkout_session_id = _safe_get(parsed.data_object, "id")
        if not is_checkout_session_id(checkout_session_id):
            checkout_session_id = None
        try:
            existing = await session.scalar(select(StripeEvent).where(StripeEvent.event_id == result.event_id))
            if existing is not None:
                if existing.payload_hash != parsed.payload_hash:
                    logger.warning(
                        "stripe_webhook_replayed_mismatch",
                        extra={"extra": {"event_id": result.event_id}},
                    )
                existing.deliveries += 1
                existing.outcome = result.outcome
                existing.signature_verified = existing.signature_verified or parsed.signature_verified
                existing.booking_id = existing.booking_id or result.booking_id
            else:
                session.add(
                    StripeEvent(
                        event_id=result.event_id,
                        event_type=result.event_type,
                        checkout_session_id=checkout_session_id,
                        signature_verified=parsed.signature_verified,
                        outcome=result.outcome,
                        payload_hash=parsed.payload_hash,
                        booking_id=result.booking_id,
                    )
                )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("stripe_event_record_raced", extra={"extra": {"event_id": result.event_id}})
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            logger.warning(
                "stripe_event_record_failed",
                extra={"extra": {"event_id": result.event_id, "reason": type(exc).__name__}},
            )
