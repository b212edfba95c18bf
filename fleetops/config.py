"""
This module contains the runtime configuration for the booking service.
Values are read from the environment, with a `.env` file loaded first when present.
"""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///fleetops.db")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "db+sqlite:///fleetops.db")

# Minimum idle time between two bookings of the same car
BOOKING_GAP_MINUTES = int(os.getenv("BOOKING_GAP_MINUTES", "60"))
TENTATIVE_HOLD_HOURS = int(os.getenv("TENTATIVE_HOLD_HOURS", "2"))
HOLD_SWEEP_SECONDS = int(os.getenv("HOLD_SWEEP_SECONDS", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
