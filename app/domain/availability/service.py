import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability.db_models import AvailabilitySlot
from app.domain.availability.schemas import SlotSpec
from app.domain.errors import CapacityBelowBooked, SlotNotFound

logger = logging.getLogger(__name__)

SLOT_EDITABLE_FIELDS = {"max_group_size", "is_available", "is_blocked", "custom_price", "notes"}


@dataclass(frozen=True)
class Reserved:
    slot_id: str
    custom_price: Decimal | None
    booked_spots: int
    max_group_size: int


@dataclass(frozen=True)
class InsufficientCapacity:
    available: int


@dataclass(frozen=True)
class NotBookable:
    reason: str


ReservationOutcome = Union[Reserved, InsufficientCapacity, NotBookable]


def _slot_key(tour_id: str, slot_date: date):
    return select(AvailabilitySlot).where(
        AvailabilitySlot.tour_id == tour_id,
        AvailabilitySlot.date == slot_date,
    )


async def get_slot(session: AsyncSession, tour_id: str, slot_date: date) -> AvailabilitySlot | None:
    result = await session.execute(_slot_key(tour_id, slot_date).execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_slot_by_id(session: AsyncSession, slot_id: str) -> AvailabilitySlot:
    slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
    if slot is None:
        raise SlotNotFound(f"Slot {slot_id} not found")
    return slot


async def list_slots(
    session: AsyncSession,
    tour_id: str,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[AvailabilitySlot]:
    start = date_from or datetime.now(tz=timezone.utc).date()
    stmt = select(AvailabilitySlot).where(
        AvailabilitySlot.tour_id == tour_id,
        AvailabilitySlot.date >= start,
    )
    if date_to is not None:
        stmt = stmt.where(AvailabilitySlot.date <= date_to)
    result = await session.execute(stmt.order_by(AvailabilitySlot.date.asc()))
    return list(result.scalars().all())


def _apply_fields(slot: AvailabilitySlot, fields: dict) -> None:
    new_capacity = fields.get("max_group_size")
    if new_capacity is not None and new_capacity < slot.booked_spots:
        raise CapacityBelowBooked(
            f"max_group_size {new_capacity} is below {slot.booked_spots} booked spots for {slot.date}"
        )
    for key, value in fields.items():
        if key not in SLOT_EDITABLE_FIELDS:
            continue
        if key == "max_group_size" and value is None:
            continue
        setattr(slot, key, value)


async def _upsert_one(
    session: AsyncSession,
    tour_id: str,
    slot_date: date,
    fields: dict,
    default_capacity: int,
) -> AvailabilitySlot:
    slot = await get_slot(session, tour_id, slot_date)
    if slot is not None:
        _apply_fields(slot, fields)
        return slot

    slot = AvailabilitySlot(
        tour_id=tour_id,
        date=slot_date,
        max_group_size=fields.get("max_group_size") or default_capacity,
        booked_spots=0,
    )
    _apply_fields(slot, {key: value for key, value in fields.items() if key != "max_group_size"})
    nested = await session.begin_nested()
    session.add(slot)
    try:
        await session.flush()
    except IntegrityError:
        # another writer created the row first; apply ours on top of theirs
        await nested.rollback()
        slot = await get_slot(session, tour_id, slot_date)
        if slot is None:
            raise
        _apply_fields(slot, fields)
        return slot
    await nested.commit()
    return slot


async def upsert_slots(
    session: AsyncSession,
    tour_id: str,
    specs: Iterable[SlotSpec],
    default_capacity: int,
) -> list[AvailabilitySlot]:
    """Create or update slots keyed on (tour_id, date).

    ``booked_spots`` is never written here; only reservations move it.
    """
    slots: list[AvailabilitySlot] = []
    for spec in specs:
        fields = spec.model_dump(exclude={"date"})
        slots.append(await _upsert_one(session, tour_id, spec.date, fields, default_capacity))
    await session.commit()
    for slot in slots:
        await session.refresh(slot)
    logger.info(
        "availability_upserted",
        extra={"extra": {"tour_id": tour_id, "slots": len(slots)}},
    )
    return sorted(slots, key=lambda slot: slot.date)


async def bulk_block(
    session: AsyncSession,
    tour_id: str,
    dates: Iterable[date],
    default_capacity: int,
    blocked: bool = True,
) -> list[AvailabilitySlot]:
    fields = {"is_blocked": blocked, "is_available": not blocked}
    slots = [
        await _upsert_one(session, tour_id, slot_date, fields, default_capacity)
        for slot_date in sorted(set(dates))
    ]
    await session.commit()
    for slot in slots:
        await session.refresh(slot)
    logger.info(
        "availability_blocked" if blocked else "availability_unblocked",
        extra={"extra": {"tour_id": tour_id, "slots": len(slots)}},
    )
    return slots


async def update_slot(session: AsyncSession, slot_id: str, fields: dict) -> AvailabilitySlot:
    slot = await get_slot_by_id(session, slot_id)
    _apply_fields(slot, fields)
    await session.commit()
    await session.refresh(slot)
    return slot


async def block_slot(session: AsyncSession, slot_id: str) -> AvailabilitySlot:
    slot = await get_slot_by_id(session, slot_id)
    slot.is_blocked = True
    slot.is_available = False
    await session.commit()
    await session.refresh(slot)
    logger.info("availability_slot_blocked", extra={"extra": {"slot_id": slot_id, "tour_id": slot.tour_id}})
    return slot


async def try_reserve(
    session: AsyncSession,
    tour_id: str,
    slot_date: date,
    group_size: int,
) -> ReservationOutcome:
    """Atomically take ``group_size`` spots from the slot.

    The capacity check and the increment are one conditional UPDATE, so
    concurrent callers can never push ``booked_spots`` past
    ``max_group_size``. When no row matches, the slot is re-read to tell a
    closed date apart from a full one. The caller owns the transaction.
    """
    if group_size < 1:
        raise ValueError("group_size must be positive")

    stmt = (
        update(AvailabilitySlot)
        .where(
            AvailabilitySlot.tour_id == tour_id,
            AvailabilitySlot.date == slot_date,
            AvailabilitySlot.is_available.is_(True),
            AvailabilitySlot.is_blocked.is_(False),
            AvailabilitySlot.booked_spots + group_size <= AvailabilitySlot.max_group_size,
        )
        .values(booked_spots=AvailabilitySlot.booked_spots + group_size, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    slot = await get_slot(session, tour_id, slot_date)

    if result.rowcount == 1 and slot is not None:
        return Reserved(
            slot_id=slot.slot_id,
            custom_price=slot.custom_price,
            booked_spots=slot.booked_spots,
            max_group_size=slot.max_group_size,
        )
    if slot is None:
        return NotBookable(reason="no_slot")
    if slot.is_blocked:
        return NotBookable(reason="blocked")
    if not slot.is_available:
        return NotBookable(reason="unavailable")
    return InsufficientCapacity(available=slot.available_spots)


async def release(session: AsyncSession, tour_id: str, slot_date: date | None, group_size: int) -> int | None:
    """Give spots back, clamped at zero. Returns the new booked count, if the slot exists."""
    if slot_date is None or group_size <= 0:
        return None
    remaining = AvailabilitySlot.booked_spots - group_size
    stmt = (
        update(AvailabilitySlot)
        .where(
            AvailabilitySlot.tour_id == tour_id,
            AvailabilitySlot.date == slot_date,
        )
        .values(booked_spots=case((remaining < 0, 0), else_=remaining), updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        logger.warning(
            "availability_release_missing_slot",
            extra={"extra": {"tour_id": tour_id, "date": slot_date.isoformat(), "group_size": group_size}},
        )
        return None
    slot = await get_slot(session, tour_id, slot_date)
    return slot.booked_spots if slot is not None else None
