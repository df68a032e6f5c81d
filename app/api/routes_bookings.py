import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.actor_auth import require_actor
from app.domain.bookings import schemas as booking_schemas
from app.domain.bookings import service as reservation_service
from app.domain.bookings import statuses
from app.domain.bookings import store as booking_store
from app.domain.bookings.db_models import Booking
from app.domain.errors import BookingAlreadyCancelled, BookingNotFound, DuplicateCheckoutSession, Forbidden
from app.domain.notifications.service import resolve_effects_dispatcher
from app.domain.tours.service import get_tour_for_booking
from app.domain.travelers.service import AuthenticatedActor, get_contact_email
from app.infra import stripe_client as stripe_infra
from app.infra.db import get_db_session
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(booking: Booking) -> booking_schemas.BookingResponse:
    return booking_schemas.BookingResponse.model_validate(booking)


async def _visible_booking(session: AsyncSession, booking_id: str, actor: AuthenticatedActor) -> Booking:
    booking = await booking_store.get(session, booking_id)
    if booking is None or not (actor.is_admin or booking.is_participant(actor.id)):
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    response: Response,
    actor: AuthenticatedActor = Depends(require_actor),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    request_key = f"{actor.id}:{idempotency_key}" if idempotency_key else None
    if request_key:
        existing = await booking_store.get_by_request_key(session, request_key)
        if existing is not None:
            response.status_code = status.HTTP_200_OK
            return _to_response(existing)

    booking_request = reservation_service.BookingRequest(
        tour_id=payload.tour_id,
        date=payload.date,
        group_size=payload.group_size,
        traveler_notes=payload.notes,
        participants=[participant.model_dump(mode="json") for participant in payload.participants],
        additional_services=payload.additional_services,
        meeting_point=payload.meeting_point,
        meeting_time=payload.meeting_time,
    )
    try:
        booking = await reservation_service.create_booking(
            session, actor, booking_request, request_key=request_key
        )
    except DuplicateCheckoutSession:
        if request_key is None:
            raise
        existing = await booking_store.get_by_request_key(session, request_key)
        if existing is None:
            raise
        response.status_code = status.HTTP_200_OK
        return _to_response(existing)
    return _to_response(booking)


@router.get("/v1/bookings", response_model=booking_schemas.BookingListResponse)
async def list_bookings(
    role: str | None = Query(None, alias="as", pattern="^(traveler|owner)$"),
    tour_id: str | None = Query(None),
    fulfillment_status: str | None = Query(None),
    payment_status: str | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingListResponse:
    try:
        filters = booking_store.BookingFilters(
            tour_id=tour_id,
            fulfillment_status=(
                statuses.normalize_fulfillment_status(fulfillment_status) if fulfillment_status else None
            ),
            payment_status=statuses.normalize_payment_status(payment_status) if payment_status else None,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    if role == "traveler":
        bookings, total = await booking_store.list_by_traveler(session, actor.id, filters)
    elif role == "owner":
        bookings, total = await booking_store.list_by_owner(session, actor.id, filters)
    else:
        bookings, total = await booking_store.list_by_participant(session, actor.id, filters)
    return booking_schemas.BookingListResponse(bookings=[_to_response(b) for b in bookings], total=total)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    return _to_response(await _visible_booking(session, booking_id, actor))


@router.patch("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def update_booking(
    booking_id: str,
    payload: booking_schemas.BookingUpdateRequest,
    http_request: Request,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await _visible_booking(session, booking_id, actor)
    note_fields = [name for name in ("traveler_notes", "owner_notes") if getattr(payload, name) is not None]
    reservation_service.check_update_allowed(booking, actor, note_fields, payload.fulfillment_status)
    if payload.traveler_notes is not None:
        booking = await reservation_service.update_notes(
            session, booking_id, actor, "traveler_notes", payload.traveler_notes
        )
    if payload.owner_notes is not None:
        booking = await reservation_service.update_notes(session, booking_id, actor, "owner_notes", payload.owner_notes)
    if payload.fulfillment_status == statuses.CONFIRMED:
        booking = await reservation_service.confirm_booking(session, booking_id, actor)
    elif payload.fulfillment_status == statuses.CANCELLED:
        booking = await reservation_service.cancel_booking(
            session,
            booking_id,
            actor,
            reason=payload.cancellation_reason,
            effects=resolve_effects_dispatcher(http_request.app.state),
        )
    return _to_response(booking)


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    http_request: Request,
    payload: booking_schemas.BookingCancelRequest | None = None,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    await _visible_booking(session, booking_id, actor)
    booking = await reservation_service.cancel_booking(
        session,
        booking_id,
        actor,
        reason=payload.reason if payload else None,
        effects=resolve_effects_dispatcher(http_request.app.state),
    )
    return _to_response(booking)


def _amount_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _session_field(checkout_session, key: str):
    if isinstance(checkout_session, dict):
        return checkout_session.get(key)
    return getattr(checkout_session, key, None)


@router.post(
    "/v1/bookings/{booking_id}/checkout",
    response_model=booking_schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    booking_id: str,
    http_request: Request,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.CheckoutResponse:
    booking = await _visible_booking(session, booking_id, actor)
    if booking.traveler_id != actor.id:
        raise Forbidden("Only the traveler can pay for this booking")
    if booking.fulfillment_status == statuses.CANCELLED:
        raise BookingAlreadyCancelled(f"Booking {booking_id} is cancelled")
    if booking.payment_status != statuses.PAYMENT_PENDING:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Booking is not awaiting payment")
    if not settings.stripe_secret_key and getattr(http_request.app.state, "stripe_client", None) is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured")

    tour = await get_tour_for_booking(session, booking.tour_id)
    customer_email = actor.email or await get_contact_email(session, booking.traveler_id)
    metadata = {
        "bookingId": booking.booking_id,
        "tourId": booking.tour_id,
        "tourType": "with-guide",
        "selectedDate": booking.date.isoformat() if booking.date else "",
        "quantity": str(booking.group_size),
    }
    if customer_email:
        metadata["email"] = customer_email

    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    try:
        checkout_session = stripe_client.create_checkout_session(
            amount_cents=_amount_cents(booking.total_price),
            currency=booking.currency,
            success_url=settings.stripe_success_url.replace("{BOOKING_ID}", booking.booking_id),
            cancel_url=settings.stripe_cancel_url.replace("{BOOKING_ID}", booking.booking_id),
            metadata=metadata,
            product_name=f"{tour.title} ({booking.group_size} guests)",
            customer_email=customer_email,
            idempotency_key=f"checkout-{booking.booking_id}",
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_checkout_creation_failed",
            extra={"extra": {"booking_id": booking.booking_id, "reason": type(exc).__name__}},
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe checkout unavailable") from exc

    checkout_session_id = _session_field(checkout_session, "id")
    checkout_url = _session_field(checkout_session, "url")
    payment_intent = _session_field(checkout_session, "payment_intent")
    await reservation_service.attach_checkout_session(
        session,
        booking.booking_id,
        checkout_session_id,
        payment_intent_id=payment_intent if isinstance(payment_intent, str) else None,
    )
    logger.info(
        "stripe_checkout_created",
        extra={"extra": {"booking_id": booking.booking_id, "checkout_session_id": checkout_session_id}},
    )
    return booking_schemas.CheckoutResponse(
        booking_id=booking.booking_id,
        checkout_url=checkout_url,
        checkout_session_id=checkout_session_id,
    )
