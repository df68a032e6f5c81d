from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from app.infra.db import Base
from app.settings import settings

# register every table on Base.metadata
from app.domain.availability.db_models import AvailabilitySlot  # noqa: F401
from app.domain.bookings.db_models import Booking, BookingEvent  # noqa: F401
from app.domain.notifications.db_models import Notification  # noqa: F401
from app.domain.payments.db_models import StripeEvent  # noqa: F401
from app.domain.tours.db_models import Tour  # noqa: F401
from app.domain.travelers.db_models import Traveler  # noqa: F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    # psycopg serves both the async app engine and this sync migration engine
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
