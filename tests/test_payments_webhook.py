import asyncio
import json
from datetime import date, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from app.domain.availability import service as availability_service
from app.domain.bookings import service as reservation_service
from app.domain.bookings import statuses
from app.domain.bookings import store as booking_store
from app.domain.bookings.db_models import Booking
from app.domain.notifications.db_models import Notification
from app.domain.payments.db_models import StripeEvent
from app.domain.payments.webhook import UnparsableWebhook, parse_unverified_payload
from app.domain.travelers.service import get_by_email
from app.main import app
from app.settings import settings

TOUR_DATE = date.today() + timedelta(days=10)
WEBHOOK_URL = "/v1/payments/stripe/webhook"


class RecordingEmailAdapter:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_email(self, recipient: str, subject: str, body: str) -> bool:
        self.sent.append((recipient, subject))
        return True


def _checkout_session(session_id: str, metadata: dict, payment_status: str = "paid") -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "payment_intent": f"pi_{session_id[-6:]}",
        "metadata": metadata,
    }


def _event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


def _guided_metadata(tour_id: str, email: str = "guest@example.com", quantity: str = "2", **extra) -> dict:
    metadata = {
        "email": email,
        "tourId": tour_id,
        "tourType": "with-guide",
        "selectedDate": TOUR_DATE.isoformat(),
        "quantity": quantity,
    }
    metadata.update(extra)
    return metadata


def _verified_stripe(event: dict) -> SimpleNamespace:
    return SimpleNamespace(verify_webhook=lambda payload, signature: event)


def _unverifiable_stripe() -> SimpleNamespace:
    def _reject(payload, signature):
        raise ValueError("No signatures found matching the expected signature for payload")

    return SimpleNamespace(verify_webhook=_reject)


def _post(client, body: dict | bytes):
    content = body if isinstance(body, bytes) else json.dumps(body).encode()
    return client.post(WEBHOOK_URL, content=content, headers={"Stripe-Signature": "t=1,v1=test"})


def _count(async_session_maker, model, *conditions) -> int:
    async def _run():
        async with async_session_maker() as session:
            return int(await session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0)

    return asyncio.run(_run())


def _booking_by_session(async_session_maker, checkout_session_id: str) -> Booking | None:
    async def _run():
        async with async_session_maker() as session:
            return await session.scalar(select(Booking).where(Booking.checkout_session_id == checkout_session_id))

    return asyncio.run(_run())


def _booked_spots(async_session_maker, tour_id: str) -> int:
    async def _run():
        async with async_session_maker() as session:
            slot = await availability_service.get_slot(session, tour_id, TOUR_DATE)
            return slot.booked_spots

    return asyncio.run(_run())


def _guided_tour(seed_traveler, seed_tour, seed_slot, capacity: int = 6):
    owner = seed_traveler(email="guide@example.com", role="guide")
    tour_id = seed_tour(owner.id, title="Castle Hill")
    seed_slot(tour_id, TOUR_DATE, max_group_size=capacity)
    return owner, tour_id


def _seed_booking(async_session_maker, actor, tour_id, group_size=2, checkout_session_id=None):
    async def _run():
        async with async_session_maker() as session:
            return await reservation_service.create_booking(
                session,
                actor,
                reservation_service.BookingRequest(tour_id=tour_id, date=TOUR_DATE, group_size=group_size),
                checkout_session_id=checkout_session_id,
            )

    return asyncio.run(_run())


def test_verified_completion_creates_confirmed_booking_once(
    client, async_session_maker, monkeypatch, seed_traveler, seed_tour, seed_slot
):
    owner, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    email_adapter = RecordingEmailAdapter()
    monkeypatch.setattr(app.state, "email_adapter", email_adapter)
    event = _event("checkout.session.completed", _checkout_session("cs_test_a1b2c3", _guided_metadata(tour_id)))
    app.state.stripe_client = _verified_stripe(event)

    first = _post(client, b"{}")
    second = _post(client, b"{}")

    assert first.status_code == 200, first.text
    assert first.json()["outcome"] == "confirmed"
    assert second.status_code == 200
    assert second.json() == {"received": True, "outcome": "duplicate", "booking_id": first.json()["booking_id"]}

    booking = _booking_by_session(async_session_maker, "cs_test_a1b2c3")
    assert booking.payment_status == statuses.PAID
    assert booking.fulfillment_status == statuses.CONFIRMED
    assert booking.payment_verified is True
    assert booking.payment_intent_id == "pi_a1b2c3"
    assert booking.group_size == 2
    assert _count(async_session_maker, Booking) == 1
    assert _booked_spots(async_session_maker, tour_id) == 2

    async def _traveler():
        async with async_session_maker() as session:
            return await get_by_email(session, "guest@example.com")

    traveler = asyncio.run(_traveler())
    assert traveler is not None
    assert booking.traveler_id == traveler.traveler_id

    assert _count(async_session_maker, Notification, Notification.user_id == owner.id) == 1
    assert email_adapter.sent == [("guide@example.com", "New Booking: Castle Hill")]

    async def _delivery():
        async with async_session_maker() as session:
            return await session.get(StripeEvent, "evt_test_1")

    delivery = asyncio.run(_delivery())
    assert delivery.deliveries == 2
    assert delivery.outcome == "duplicate"
    assert delivery.booking_id == booking.booking_id


def test_unverified_bare_session_is_accepted_and_flagged(
    client, async_session_maker, seed_traveler, seed_tour, seed_slot, recording_effects
):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    app.state.stripe_client = _unverifiable_stripe()

    response = _post(client, _checkout_session("cs_live_Zx9", _guided_metadata(tour_id, quantity="3")))

    assert response.status_code == 200, response.text
    assert response.json()["outcome"] == "confirmed"
    booking = _booking_by_session(async_session_maker, "cs_live_Zx9")
    assert booking.payment_status == statuses.PAID
    assert booking.payment_verified is False
    assert _booked_spots(async_session_maker, tour_id) == 3
    assert recording_effects.confirmed == [booking.booking_id]
    assert recording_effects.anomalies == [(booking.booking_id, reservation_service.UNVERIFIED_PAYMENT_REASON)]


def test_unverified_payload_with_bad_session_id_is_rejected(client, async_session_maker):
    app.state.stripe_client = _unverifiable_stripe()

    response = _post(client, {"object": "checkout.session", "id": "sess_123", "metadata": {}})

    assert response.status_code == 400
    assert _count(async_session_maker, StripeEvent) == 0


def test_unverified_non_json_is_rejected(client):
    app.state.stripe_client = _unverifiable_stripe()

    response = _post(client, b"not json at all")

    assert response.status_code == 400


def test_unverified_payloads_rejected_when_fallback_disabled(
    client, async_session_maker, seed_traveler, seed_tour, seed_slot
):
    settings.stripe_webhook_allow_unverified = False
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    app.state.stripe_client = _unverifiable_stripe()

    response = _post(client, _checkout_session("cs_test_nofallback", _guided_metadata(tour_id)))

    assert response.status_code == 400
    assert _count(async_session_maker, Booking) == 0


def test_self_guided_purchase_is_acknowledged_without_booking(client, async_session_maker, seed_tour):
    tour_id = seed_tour(None)
    metadata = {"email": "solo@example.com", "tourId": tour_id, "tourType": "self-guided"}
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.completed", _checkout_session("cs_test_selfguided", metadata))
    )

    response = _post(client, b"{}")

    assert response.status_code == 200
    assert response.json()["outcome"] == "non_guided_acknowledged"
    assert _count(async_session_maker, Booking) == 0


def test_unsettled_session_waits_for_async_payment(client, async_session_maker, seed_traveler, seed_tour, seed_slot):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    app.state.stripe_client = _verified_stripe(
        _event(
            "checkout.session.completed",
            _checkout_session("cs_test_unpaid", _guided_metadata(tour_id), payment_status="unpaid"),
        )
    )

    response = _post(client, b"{}")

    assert response.json()["outcome"] == "awaiting_payment"
    assert _count(async_session_maker, Booking) == 0


def test_sold_out_date_is_acknowledged_as_rejected(client, async_session_maker, seed_traveler, seed_tour, seed_slot):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot, capacity=1)
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.completed", _checkout_session("cs_test_full", _guided_metadata(tour_id)))
    )

    response = _post(client, b"{}")

    assert response.status_code == 200
    assert response.json()["outcome"] == "booking_rejected"
    assert _booked_spots(async_session_maker, tour_id) == 0


def test_completion_confirms_existing_booking_by_metadata(
    client, async_session_maker, seed_traveler, seed_tour, seed_slot, recording_effects
):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    traveler = seed_traveler()
    booking = _seed_booking(async_session_maker, traveler, tour_id)
    metadata = _guided_metadata(tour_id, email=traveler.email, bookingId=booking.booking_id)
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.completed", _checkout_session("cs_test_existing", metadata))
    )

    response = _post(client, b"{}")

    assert response.json() == {"received": True, "outcome": "confirmed", "booking_id": booking.booking_id}
    stored = _booking_by_session(async_session_maker, "cs_test_existing")
    assert stored.booking_id == booking.booking_id
    assert stored.fulfillment_status == statuses.CONFIRMED
    assert _booked_spots(async_session_maker, tour_id) == 2
    assert _count(async_session_maker, Booking) == 1


def test_payment_for_cancelled_booking_is_acknowledged_and_flagged(
    client, async_session_maker, seed_traveler, seed_tour, seed_slot, recording_effects
):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    traveler = seed_traveler()
    booking = _seed_booking(async_session_maker, traveler, tour_id, checkout_session_id="cs_test_late")

    async def _cancel():
        async with async_session_maker() as session:
            await reservation_service.cancel_booking(session, booking.booking_id, traveler)

    asyncio.run(_cancel())
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.completed", _checkout_session("cs_test_late", _guided_metadata(tour_id)))
    )

    response = _post(client, b"{}")

    assert response.status_code == 200
    assert response.json()["outcome"] == "payment_after_cancellation"
    stored = _booking_by_session(async_session_maker, "cs_test_late")
    assert stored.fulfillment_status == statuses.CANCELLED
    assert stored.payment_status == statuses.PAYMENT_PENDING
    assert _booked_spots(async_session_maker, tour_id) == 0
    assert recording_effects.anomalies == [(booking.booking_id, "payment received after cancellation")]


def test_expired_session_fails_payment_and_releases(
    client, async_session_maker, seed_traveler, seed_tour, seed_slot, recording_effects
):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    booking = _seed_booking(async_session_maker, seed_traveler(), tour_id, checkout_session_id="cs_test_gone")
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.expired", {"id": "cs_test_gone", "object": "checkout.session"}, "evt_exp")
    )

    response = _post(client, b"{}")

    assert response.json() == {"received": True, "outcome": "payment_failed", "booking_id": booking.booking_id}
    stored = _booking_by_session(async_session_maker, "cs_test_gone")
    assert stored.payment_status == statuses.FAILED
    assert stored.fulfillment_status == statuses.CANCELLED
    assert _booked_spots(async_session_maker, tour_id) == 0


def test_unverified_expiry_is_not_trusted(client, async_session_maker, seed_traveler, seed_tour, seed_slot):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    _seed_booking(async_session_maker, seed_traveler(), tour_id, checkout_session_id="cs_test_spoof")
    app.state.stripe_client = _unverifiable_stripe()

    response = _post(client, _event("checkout.session.expired", {"id": "cs_test_spoof"}, "evt_spoof"))

    assert response.status_code == 200
    assert response.json()["outcome"] == "untrusted_ignored"
    assert _booking_by_session(async_session_maker, "cs_test_spoof").payment_status == statuses.PAYMENT_PENDING
    assert _booked_spots(async_session_maker, tour_id) == 2


def test_failed_payment_attempt_keeps_booking_open(client, async_session_maker, seed_traveler, seed_tour, seed_slot):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    _seed_booking(async_session_maker, seed_traveler(), tour_id, checkout_session_id="cs_test_retry")
    app.state.stripe_client = _verified_stripe(
        _event("payment_intent.payment_failed", {"id": "pi_declined", "object": "payment_intent"}, "evt_pf")
    )

    response = _post(client, b"{}")

    assert response.json()["outcome"] == "payment_attempt_failed"
    assert _booking_by_session(async_session_maker, "cs_test_retry").payment_status == statuses.PAYMENT_PENDING


def test_full_refund_cancels_booking(client, async_session_maker, seed_traveler, seed_tour, seed_slot):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    booking = _seed_booking(async_session_maker, seed_traveler(), tour_id, checkout_session_id="cs_test_refund")

    async def _pay():
        async with async_session_maker() as session:
            await reservation_service.confirm_payment(
                session,
                booking_id=booking.booking_id,
                payment=reservation_service.PaymentAttributes(payment_intent_id="pi_refund_me"),
            )

    asyncio.run(_pay())
    partial = {"id": "ch_1", "object": "charge", "payment_intent": "pi_refund_me", "refunded": False}
    app.state.stripe_client = _verified_stripe(_event("charge.refunded", partial, "evt_partial"))
    assert _post(client, b"{}").json()["outcome"] == "partial_refund_ignored"

    full = dict(partial, refunded=True)
    app.state.stripe_client = _verified_stripe(_event("charge.refunded", full, "evt_full"))
    response = _post(client, b"{}")

    assert response.json()["outcome"] == "refunded"
    stored = _booking_by_session(async_session_maker, "cs_test_refund")
    assert stored.payment_status == statuses.REFUNDED
    assert stored.fulfillment_status == statuses.CANCELLED
    assert _booked_spots(async_session_maker, tour_id) == 0


def test_unrelated_event_types_are_ignored(client, async_session_maker):
    app.state.stripe_client = _verified_stripe(_event("customer.created", {"id": "cus_1"}, "evt_cus"))

    response = _post(client, b"{}")

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "ignored"}
    assert _count(async_session_maker, StripeEvent, StripeEvent.outcome == "ignored") == 1


def test_parse_unverified_payload_shapes():
    envelope = parse_unverified_payload(
        json.dumps(_event("checkout.session.completed", {"id": "cs_test_ok"}, "evt_env")).encode()
    )
    bare = parse_unverified_payload(json.dumps({"object": "checkout.session", "id": "cs_test_bare"}).encode())

    assert envelope["id"] == "evt_env"
    assert bare["type"] == "checkout.session.completed"
    assert bare["data"]["object"]["id"] == "cs_test_bare"

    for payload in (b"[]", b"{}", json.dumps({"type": "checkout.session.completed", "data": {"object": {}}}).encode()):
        with pytest.raises(UnparsableWebhook):
            parse_unverified_payload(payload)


def test_completion_losing_the_insert_race_confirms_existing_booking(
    client, async_session_maker, monkeypatch, seed_traveler, seed_tour, seed_slot, recording_effects
):
    _, tour_id = _guided_tour(seed_traveler, seed_tour, seed_slot)
    # a concurrent delivery already inserted the booking for this checkout session
    booking = _seed_booking(async_session_maker, seed_traveler(), tour_id, checkout_session_id="cs_test_race01")
    original_lookup = booking_store.get_by_checkout_session_id
    lookups: list[str] = []

    async def _stale_first_lookup(session, checkout_session_id):
        lookups.append(checkout_session_id)
        if len(lookups) == 1:
            return None
        return await original_lookup(session, checkout_session_id)

    monkeypatch.setattr(booking_store, "get_by_checkout_session_id", _stale_first_lookup)
    app.state.stripe_client = _verified_stripe(
        _event("checkout.session.completed", _checkout_session("cs_test_race01", _guided_metadata(tour_id)))
    )

    response = _post(client, b"{}")

    assert response.status_code == 200, response.text
    assert response.json()["outcome"] == "confirmed"
    assert response.json()["booking_id"] == booking.booking_id
    assert len(lookups) == 2
    assert _count(async_session_maker, Booking) == 1
    assert _booked_spots(async_session_maker, tour_id) == 2
    assert recording_effects.confirmed == [booking.booking_id]
    stored = _booking_by_session(async_session_maker, "cs_test_race01")
    assert stored.payment_status == statuses.PAID
    assert stored.fulfillment_status == statuses.CONFIRMED
