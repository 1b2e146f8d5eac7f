import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    # Import models to register them with SQLAlchemy
    from backend.app.models import printer  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        # Run migrations for new columns (SQLite doesn't auto-add columns)
        await run_migrations(conn)

    # Seed the printer configured through the environment
    await seed_printer_from_settings()


async def run_migrations(conn):
    """Add new columns to existing tables if they don't exist."""
    from sqlalchemy import text

    # Migration: Add update_interval column to printers
    try:
        await conn.execute(text("ALTER TABLE printers ADD COLUMN update_interval REAL"))
    except Exception:
        # Column already exists
        pass


async def seed_printer_from_settings():
    """Create or update the printer described by PRINTER_ID/PRINTER_CODE/PRINTER_IP."""
    from backend.app.models.printer import Printer

    if not (settings.printer_id and settings.printer_code and settings.printer_ip):
        logger.debug("No printer configured in environment, skipping seed")
        return

    serial = settings.printer_id.upper()
    async with async_session() as db:
        result = await db.execute(select(Printer).where(Printer.serial_number == serial))
        printer = result.scalar_one_or_none()
        if printer is None:
            printer = Printer(
                name=settings.printer_name or serial,
                serial_number=serial,
                ip_address=settings.printer_ip,
                access_code=settings.printer_code,
                is_active=True,
            )
            db.add(printer)
            logger.info("Seeded printer %s (%s) from environment", serial, settings.printer_ip)
        else:
            printer.ip_address = settings.printer_ip
            printer.access_code = settings.printer_code
            if settings.printer_name:
                printer.name = settings.printer_name
            logger.info("Updated printer %s from environment", serial)
        await db.commit()
