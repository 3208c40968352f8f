"""
Configuration management for the attendance verification pipeline.

This module handles all configuration loading from environment variables
and .env files, so that a deployment can pin its geofence, duplicate-day
policy and timeouts without code changes.
"""

import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .constants import (
    DEFAULT_RECORD_FILE,
    LIVENESS_TIMEOUT_SECONDS as DEFAULT_LIVENESS_TIMEOUT,
    LOCATION_TIMEOUT_SECONDS as DEFAULT_LOCATION_TIMEOUT,
    STORE_TIMEOUT_SECONDS as DEFAULT_STORE_TIMEOUT,
)
from .data_models import GeoPosition

# Load environment variables from .env file if it exists
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


# =============================================================================
# Base Paths
# =============================================================================
# Define the base directory for the project
BASE_DIR: Path = Path(__file__).resolve().parent.parent

# Project root directory (parent of src/)
PROJECT_ROOT: Path = BASE_DIR.parent

# =============================================================================
# Geofence Configuration
# =============================================================================
# Anchor of the approved zone; both coordinates or neither
GEOFENCE_ANCHOR_LATITUDE: Optional[float] = _env_float("GEOFENCE_ANCHOR_LATITUDE")
GEOFENCE_ANCHOR_LONGITUDE: Optional[float] = _env_float("GEOFENCE_ANCHOR_LONGITUDE")

# Single fixed radius of the approved zone in kilometres
GEOFENCE_RADIUS_KM: float = float(os.getenv("GEOFENCE_RADIUS_KM", "0.5"))

# =============================================================================
# Attendance Policy Configuration
# =============================================================================
# Reject a second check-in on the same calendar day for the same identity
ENFORCE_SINGLE_DAILY_CHECKIN: bool = _env_flag("ENFORCE_SINGLE_DAILY_CHECKIN", "true")

# Timezone that decides where a calendar day starts and ends
ATTENDANCE_TIMEZONE: str = os.getenv("ATTENDANCE_TIMEZONE", "UTC")

# =============================================================================
# Timeout Configuration
# =============================================================================
LOCATION_TIMEOUT_SECONDS: float = float(
    os.getenv("LOCATION_TIMEOUT_SECONDS", str(DEFAULT_LOCATION_TIMEOUT))
)

LIVENESS_TIMEOUT_SECONDS: float = float(
    os.getenv("LIVENESS_TIMEOUT_SECONDS", str(DEFAULT_LIVENESS_TIMEOUT))
)

# Identity lookup and record commit
STORE_TIMEOUT_SECONDS: float = float(
    os.getenv("STORE_TIMEOUT_SECONDS", str(DEFAULT_STORE_TIMEOUT))
)

# =============================================================================
# Storage Configuration
# =============================================================================
RECORD_STORE_PATH: Path = Path(
    os.getenv(
        "RECORD_STORE_PATH", str(PROJECT_ROOT / "data" / DEFAULT_RECORD_FILE)
    )
)

# =============================================================================
# Kiosk Configuration
# =============================================================================
# Camera index or video path/URL read by the check-in command
CAMERA_SOURCE: str = os.getenv("CAMERA_SOURCE", "0")

# Fixed position of a stationary kiosk; unset reports no location signal
KIOSK_LATITUDE: Optional[float] = _env_float("KIOSK_LATITUDE")
KIOSK_LONGITUDE: Optional[float] = _env_float("KIOSK_LONGITUDE")

# =============================================================================
# Logging Configuration
# =============================================================================
# Log files directory
OUTPUT_LOG_PATH: Path = Path(os.getenv("OUTPUT_LOG_PATH", str(PROJECT_ROOT / "logs")))

# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Enable structured (JSON) logging output
STRUCTURED_LOGGING: bool = _env_flag("STRUCTURED_LOGGING", "true")

# Log to file in addition to console
LOG_TO_FILE: bool = _env_flag("LOG_TO_FILE", "false")

# Maximum log file size in MB
MAX_LOG_SIZE_MB: int = int(os.getenv("MAX_LOG_SIZE_MB", "100"))

# Number of log files to retain
LOG_BACKUP_COUNT: int = int(os.getenv("LOG_BACKUP_COUNT", "5"))

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Enable debug mode (skips validation on import)
DEBUG_MODE: bool = _env_flag("DEBUG_MODE", "false")


def get_geofence_anchor() -> Optional[GeoPosition]:
    """
    Build the configured geofence anchor.

    Returns
    -------
    Optional[GeoPosition]
        The anchor position, or None when no anchor is configured.
    """
    if GEOFENCE_ANCHOR_LATITUDE is None or GEOFENCE_ANCHOR_LONGITUDE is None:
        return None
    return GeoPosition(
        latitude=GEOFENCE_ANCHOR_LATITUDE,
        longitude=GEOFENCE_ANCHOR_LONGITUDE,
        accuracy=0.0,
    )


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ValueError
        If any configuration parameter is invalid.
    """
    errors = []

    # Anchor must be complete and on the globe
    anchor_parts = [GEOFENCE_ANCHOR_LATITUDE, GEOFENCE_ANCHOR_LONGITUDE]
    if any(part is None for part in anchor_parts) and any(
        part is not None for part in anchor_parts
    ):
        errors.append(
            "GEOFENCE_ANCHOR_LATITUDE and GEOFENCE_ANCHOR_LONGITUDE must be set together"
        )
    if GEOFENCE_ANCHOR_LATITUDE is not None and not -90.0 <= GEOFENCE_ANCHOR_LATITUDE <= 90.0:
        errors.append("GEOFENCE_ANCHOR_LATITUDE must be between -90 and 90")
    if GEOFENCE_ANCHOR_LONGITUDE is not None and not -180.0 <= GEOFENCE_ANCHOR_LONGITUDE <= 180.0:
        errors.append("GEOFENCE_ANCHOR_LONGITUDE must be between -180 and 180")

    if GEOFENCE_RADIUS_KM <= 0:
        errors.append("GEOFENCE_RADIUS_KM must be positive")

    # Validate timeouts
    for name, value in [
        ("LOCATION_TIMEOUT_SECONDS", LOCATION_TIMEOUT_SECONDS),
        ("LIVENESS_TIMEOUT_SECONDS", LIVENESS_TIMEOUT_SECONDS),
        ("STORE_TIMEOUT_SECONDS", STORE_TIMEOUT_SECONDS),
    ]:
        if value <= 0:
            errors.append(f"{name} must be positive")

    try:
        ZoneInfo(ATTENDANCE_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"ATTENDANCE_TIMEZONE is not a known timezone: {ATTENDANCE_TIMEZONE}")

    # Validate log settings
    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if MAX_LOG_SIZE_MB < 1:
        errors.append("MAX_LOG_SIZE_MB must be at least 1")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "geofence": {
            "anchor_latitude": GEOFENCE_ANCHOR_LATITUDE,
            "anchor_longitude": GEOFENCE_ANCHOR_LONGITUDE,
            "radius_km": GEOFENCE_RADIUS_KM,
        },
        "policy": {
            "enforce_single_daily_checkin": ENFORCE_SINGLE_DAILY_CHECKIN,
            "attendance_timezone": ATTENDANCE_TIMEZONE,
        },
        "timeouts": {
            "location_seconds": LOCATION_TIMEOUT_SECONDS,
            "liveness_seconds": LIVENESS_TIMEOUT_SECONDS,
            "store_seconds": STORE_TIMEOUT_SECONDS,
        },
        "storage": {
            "record_store_path": str(RECORD_STORE_PATH),
        },
        "kiosk": {
            "camera_source": CAMERA_SOURCE,
            "latitude": KIOSK_LATITUDE,
            "longitude": KIOSK_LONGITUDE,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
            "to_file": LOG_TO_FILE,
            "directory": str(OUTPUT_LOG_PATH),
        },
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
