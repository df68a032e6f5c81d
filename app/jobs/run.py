import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.domain.bookings import service as reservation_service
from app.infra.db import get_session_factory
from app.infra.logging import configure_logging
from app.jobs.capacity_audit import audit_slot_capacity
from app.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_JOBS = ["complete-past-bookings", "capacity-audit"]


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[object], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    async with session_factory() as session:
        result = await runner(session)
    logger.info("job_complete", extra={"extra": {"job": name, **result}})
    return result


async def _complete_past_bookings(session) -> dict[str, int]:
    today = datetime.now(tz=timezone.utc).date()
    completed = await reservation_service.complete_past_bookings(session, today)
    return {"completed": completed}


def _job_runner(name: str) -> Callable:
    if name == "complete-past-bookings":
        return _complete_past_bookings
    if name == "capacity-audit":
        return audit_slot_capacity
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled reservation jobs")
    parser.add_argument("--job", action="append", dest="jobs", help="Job name to run")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    session_factory = get_session_factory()
    job_names = args.jobs or DEFAULT_JOBS
    runners = [_job_runner(name) for name in job_names]

    while True:
        for name, runner in zip(job_names, runners):
            try:
                await _run_job(name, session_factory, runner)
            except Exception as exc:  # noqa: BLE001
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
