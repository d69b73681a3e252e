"""
Configuration for the ETS dispatch backend.

Values come from the environment (optionally a .env file) and are read once
at import time. Matching tunables are grouped into DispatchSettings so they
can be passed explicitly into the engine components.
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ets_dispatch")
DATABASE_BACKEND = os.getenv("DATABASE_BACKEND", "mongo" if DATABASE_URL else "memory").lower()

# Push notifications
PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL")
PUSH_GATEWAY_KEY = os.getenv("PUSH_GATEWAY_KEY")
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

# Matching tunables
LOCATION_FRESHNESS_MINUTES = int(os.getenv("LOCATION_FRESHNESS_MINUTES", "15"))
LOCATION_REFRESH_WAIT_SECONDS = float(os.getenv("LOCATION_REFRESH_WAIT_SECONDS", "2.0"))
TIER1_CANDIDATE_LIMIT = int(os.getenv("TIER1_CANDIDATE_LIMIT", "7"))
FINAL_CANDIDATE_LIMIT = int(os.getenv("FINAL_CANDIDATE_LIMIT", "5"))
EMERGENT_TIE_WINDOW_MINUTES = float(os.getenv("EMERGENT_TIE_WINDOW_MINUTES", "3"))
HOSPITAL_GRACE_MINUTES = float(os.getenv("HOSPITAL_GRACE_MINUTES", "30"))

# Service
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
PORT = int(os.getenv("PORT", "8000"))


@dataclass(frozen=True)
class DispatchSettings:
    freshness_window_minutes: int = 15
    refresh_wait_seconds: float = 2.0
    tier1_limit: int = 7
    final_limit: int = 5
    tie_window_minutes: float = 3.0
    hospital_grace_minutes: float = 30.0


def load_settings() -> DispatchSettings:
    """Build settings from the environment-backed constants above."""
    return DispatchSettings(
        freshness_window_minutes=LOCATION_FRESHNESS_MINUTES,
        refresh_wait_seconds=LOCATION_REFRESH_WAIT_SECONDS,
        tier1_limit=TIER1_CANDIDATE_LIMIT,
        final_limit=FINAL_CANDIDATE_LIMIT,
        tie_window_minutes=EMERGENT_TIE_WINDOW_MINUTES,
        hospital_grace_minutes=HOSPITAL_GRACE_MINUTES,
    )
