from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.errors import TourNotFound
from app.domain.tours.db_models import Tour
from app.settings import settings


@dataclass(frozen=True)
class TourForBooking:
    """Read-only view of the catalog fields a reservation snapshots."""

    tour_id: str
    title: str
    owner_id: str | None
    guided_price: Decimal
    currency: str
    default_capacity: int
    meeting_point: str | None = None
    meeting_time: str | None = None
    addon_prices: dict[str, Decimal] = field(default_factory=dict)


def _to_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


async def get_tour_for_booking(session: AsyncSession, tour_id: str) -> TourForBooking:
    tour = await session.get(Tour, tour_id)
    if tour is None:
        raise TourNotFound(f"Tour {tour_id} not found")
    addon_prices = {str(code): _to_decimal(price) for code, price in (tour.addon_prices or {}).items()}
    return TourForBooking(
        tour_id=tour.tour_id,
        title=tour.title,
        owner_id=tour.owner_id,
        guided_price=_to_decimal(tour.guided_price),
        currency=(tour.currency or settings.default_currency).upper(),
        default_capacity=tour.default_group_size or settings.default_group_size,
        meeting_point=tour.meeting_point,
        meeting_time=tour.meeting_time,
        addon_prices=addon_prices,
    )
