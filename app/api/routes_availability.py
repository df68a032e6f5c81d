from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.actor_auth import require_actor
from app.domain.availability import schemas as availability_schemas
from app.domain.availability import service as availability_service
from app.domain.errors import Forbidden
from app.domain.tours.service import TourForBooking, get_tour_for_booking
from app.domain.travelers.service import AuthenticatedActor
from app.infra.db import get_db_session

router = APIRouter()


async def _require_tour_owner(
    session: AsyncSession, tour_id: str, actor: AuthenticatedActor
) -> TourForBooking:
    tour = await get_tour_for_booking(session, tour_id)
    if not actor.is_admin and tour.owner_id != actor.id:
        raise Forbidden("Only the tour owner can manage availability")
    return tour


def _slot_list(tour_id: str, slots) -> availability_schemas.SlotListResponse:
    return availability_schemas.SlotListResponse(
        tour_id=tour_id,
        slots=[availability_schemas.SlotResponse.model_validate(slot) for slot in slots],
    )


@router.get(
    "/v1/tours/{tour_id}/availability",
    response_model=availability_schemas.SlotListResponse,
)
async def list_availability(
    tour_id: str,
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotListResponse:
    slots = await availability_service.list_slots(session, tour_id, date_from=date_from, date_to=date_to)
    return _slot_list(tour_id, slots)


@router.put(
    "/v1/tours/{tour_id}/availability",
    response_model=availability_schemas.SlotListResponse,
)
async def upsert_availability(
    tour_id: str,
    payload: availability_schemas.SlotUpsertRequest,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotListResponse:
    tour = await _require_tour_owner(session, tour_id, actor)
    slots = await availability_service.upsert_slots(
        session, tour_id, payload.slots, default_capacity=tour.default_capacity
    )
    return _slot_list(tour_id, slots)


@router.post(
    "/v1/tours/{tour_id}/availability/block",
    response_model=availability_schemas.SlotListResponse,
)
async def block_availability(
    tour_id: str,
    payload: availability_schemas.SlotBlockRequest,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotListResponse:
    tour = await _require_tour_owner(session, tour_id, actor)
    slots = await availability_service.bulk_block(
        session,
        tour_id,
        payload.dates,
        default_capacity=tour.default_capacity,
        blocked=payload.blocked,
    )
    return _slot_list(tour_id, slots)


@router.patch(
    "/v1/availability/{slot_id}",
    response_model=availability_schemas.SlotResponse,
)
async def update_availability_slot(
    slot_id: str,
    payload: availability_schemas.SlotUpdateRequest,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotResponse:
    slot = await availability_service.get_slot_by_id(session, slot_id)
    await _require_tour_owner(session, slot.tour_id, actor)
    updated = await availability_service.update_slot(session, slot_id, payload.model_dump(exclude_unset=True))
    return availability_schemas.SlotResponse.model_validate(updated)


@router.delete(
    "/v1/availability/{slot_id}",
    response_model=availability_schemas.SlotResponse,
    status_code=status.HTTP_200_OK,
)
async def block_availability_slot(
    slot_id: str,
    actor: AuthenticatedActor = Depends(require_actor),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotResponse:
    slot = await availability_service.get_slot_by_id(session, slot_id)
    await _require_tour_owner(session, slot.tour_id, actor)
    blocked = await availability_service.block_slot(session, slot_id)
    return availability_schemas.SlotResponse.model_validate(blocked)
