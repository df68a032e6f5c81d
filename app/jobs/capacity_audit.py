import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability.db_models import AvailabilitySlot
from app.domain.bookings import store as booking_store

logger = logging.getLogger(__name__)


async def audit_slot_capacity(session: AsyncSession) -> dict[str, int]:
    """Report slots whose booked count disagrees with their live bookings.

    Read-only: drift is logged for an operator to reconcile.
    """
    result = await session.execute(select(AvailabilitySlot).order_by(AvailabilitySlot.date))
    slots = list(result.scalars().all())
    checked = 0
    drifted = 0
    for slot in slots:
        checked += 1
        expected = await booking_store.count_active_spots(session, slot.tour_id, slot.date)
        if expected != slot.booked_spots:
            drifted += 1
            logger.warning(
                "slot_capacity_drift",
                extra={
                    "extra": {
                        "slot_id": slot.slot_id,
                        "tour_id": slot.tour_id,
                        "date": slot.date.isoformat(),
                        "booked_spots": slot.booked_spots,
                        "expected": expected,
                    }
                },
            )
    return {"checked": checked, "drifted": drifted}
