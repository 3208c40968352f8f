"""
Constants and tuning parameters for the attendance verification pipeline.

This module centralizes every fixed threshold used by the pipeline stages so
that the decision boundaries live in one place. Deployment-specific values
(geofence anchor, radius, timeouts) live in ``config`` instead.
"""

from typing import Final

# =============================================================================
# Identity
# =============================================================================

# Identity keys are alphanumeric, 3 to 20 characters, compared upper-cased
IDENTITY_KEY_PATTERN: Final[str] = r"^[A-Z0-9]{3,20}$"

# =============================================================================
# Rate Limiting
# =============================================================================

# Maximum verification attempts per identity within one window
RATE_LIMIT_MAX_ATTEMPTS: Final[int] = 20

# Length of the rolling attempt window in seconds
RATE_LIMIT_WINDOW_SECONDS: Final[float] = 300.0

# =============================================================================
# Liveness (blink detection)
# =============================================================================

# Number of face frames used to calibrate the open-eye baseline
CALIBRATION_FRAMES: Final[int] = 30

# Lowest accepted baseline openness; poor camera angles calibrate too low
OPENNESS_FLOOR: Final[float] = 0.25

# Fraction of the baseline below which the eyes count as closed
CLOSE_RATIO: Final[float] = 0.70

# Fraction of the baseline above which closed eyes count as reopened
REOPEN_RATIO: Final[float] = 0.90

# Full close/reopen cycles required to pass
TARGET_BLINKS: Final[int] = 2

# Seconds allowed for calibration plus blinking
LIVENESS_TIMEOUT_SECONDS: Final[float] = 45.0

# Landmark points per eye contour (corner, 2 upper, corner, 2 lower)
EYE_LANDMARK_POINTS: Final[int] = 6

# =============================================================================
# Descriptor Matching
# =============================================================================

# Face descriptor dimension (face_recognition library standard)
FACE_DESCRIPTOR_DIM: Final[int] = 128

# Minimum similarity score (0-100) to accept a match
MATCH_THRESHOLD: Final[float] = 60.0

# Padding around the tracked face box for the first extraction attempt
TIGHT_CROP_PADDING: Final[float] = 0.20

# Padding and scale factor for the higher-resolution retry
UPSAMPLED_CROP_PADDING: Final[float] = 0.40
UPSAMPLED_CROP_SCALE: Final[float] = 2.0

# Minimum crop edge in pixels before extraction is attempted on a crop
MIN_CROP_EDGE: Final[int] = 100

# =============================================================================
# Geofence and Fraud Heuristics
# =============================================================================

# Mean Earth radius used by the haversine formula
EARTH_RADIUS_KM: Final[float] = 6371.0

# Implied travel speed above which consecutive check-ins are flagged
MAX_PLAUSIBLE_SPEED_KMH: Final[float] = 600.0

# Floor for elapsed hours between check-ins (about 3.6 ms)
MIN_ELAPSED_HOURS: Final[float] = 1e-6

# =============================================================================
# Timeouts and Scheduling
# =============================================================================

# Default location acquisition timeout in seconds
LOCATION_TIMEOUT_SECONDS: Final[float] = 10.0

# Default identity lookup / record commit timeout in seconds
STORE_TIMEOUT_SECONDS: Final[float] = 15.0

# Interval between tracked frames (one display refresh at 30 Hz)
FRAME_INTERVAL_SECONDS: Final[float] = 1.0 / 30.0

# =============================================================================
# Records
# =============================================================================

# Name of the verification pipeline stored on every record
VERIFICATION_METHOD: Final[str] = "blink-liveness+face-descriptor+geofence"

# Default record store and log file names
DEFAULT_RECORD_FILE: Final[str] = "attendance_records.jsonl"
DEFAULT_LOG_FILE: Final[str] = "geoface_attendance.log"
