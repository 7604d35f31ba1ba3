#!/usr/bin/env python3
"""Setup script for the salon slot allocation API."""

import asyncio
import logging
import sys
from datetime import time
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from app.core.database import async_session_factory, close_db
from app.models import Employee, EmployeeBreak, OpeningHours, Salon, Service, Shift, WaitlistPolicy

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def setup_database():
    """Bring the database schema to the latest migration."""
    logger.info("Running database migrations...")

    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))
    command.upgrade(alembic_cfg, "head")

    logger.info("Database migrations completed")


async def create_sample_data():
    """Create one salon with two stylists, weekday opening hours and a waitlist policy."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        try:
            existing = await db.execute(select(func.count()).select_from(Salon))
            if existing.scalar_one() > 0:
                logger.info("Sample data already exists, skipping...")
                return

            salon = Salon(name="Studio Nord", slug="studio-nord", timezone="Europe/Oslo")
            db.add(salon)
            await db.flush()

            haircut = Service(salon_id=salon.id, name="Haircut", duration_minutes=30, cleanup_minutes=10)
            colour = Service(
                salon_id=salon.id,
                name="Colour",
                duration_minutes=90,
                prep_minutes=15,
                cleanup_minutes=15,
            )
            alice = Employee(salon_id=salon.id, full_name="Alice Berg")
            jonas = Employee(salon_id=salon.id, full_name="Jonas Lind")
            alice.services.extend([haircut, colour])
            jonas.services.append(haircut)
            db.add_all([haircut, colour, alice, jonas])
            await db.flush()

            # Monday to Saturday
            for weekday in range(6):
                db.add(OpeningHours(salon_id=salon.id, weekday=weekday, opens_at=time(9), closes_at=time(19)))
                db.add(Shift(employee_id=alice.id, weekday=weekday, starts_at=time(9), ends_at=time(17)))
                db.add(Shift(employee_id=jonas.id, weekday=weekday, starts_at=time(11), ends_at=time(19)))

            db.add(EmployeeBreak(employee_id=alice.id, starts_at=time(12, 30), ends_at=time(13), label="Lunch"))
            db.add(EmployeeBreak(employee_id=jonas.id, starts_at=time(15), ends_at=time(15, 30), label="Lunch"))
            db.add(WaitlistPolicy(salon_id=salon.id, claim_expiry_minutes=20, requeue_on_decline=True))

            await db.commit()
            logger.info("Sample data created successfully!", extra={"salon_id": str(salon.id)})

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create sample data: {e}")
            raise


async def seed():
    try:
        await create_sample_data()
    finally:
        await close_db()


def main():
    """Main setup function."""
    logger.info("Starting salon slot allocation API setup...")

    setup_database()
    asyncio.run(seed())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn app.main:app --reload")


if __name__ == "__main__":
    main()
