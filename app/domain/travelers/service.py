import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.travelers.db_models import Traveler

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_by_email(session: AsyncSession, email: str) -> Traveler | None:
    result = await session.execute(select(Traveler).where(Traveler.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_or_create_by_email(session: AsyncSession, email: str, name: str | None = None) -> Traveler:
    """Resolve a traveler account, creating one named after the mailbox when missing.

    A concurrent insert of the same address loses on the unique constraint and
    falls back to reading the winner's row.
    """
    normalized = normalize_email(email)
    existing = await get_by_email(session, normalized)
    if existing is not None:
        return existing

    traveler = Traveler(email=normalized, name=name or normalized.split("@", 1)[0], role="traveler")
    nested = await session.begin_nested()
    session.add(traveler)
    try:
        await session.flush()
    except IntegrityError:
        await nested.rollback()
        winner = await get_by_email(session, normalized)
        if winner is None:
            raise
        return winner
    await nested.commit()
    logger.info("traveler_created", extra={"extra": {"traveler_id": traveler.traveler_id}})
    return traveler


async def get_contact_email(session: AsyncSession, traveler_id: str | None) -> str | None:
    if not traveler_id:
        return None
    traveler = await session.get(Traveler, traveler_id)
    return traveler.email if traveler else None


@dataclass(frozen=True)
class AuthenticatedActor:
    id: str
    role: str = "traveler"
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
