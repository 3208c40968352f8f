"""
Custom exception classes for the attendance verification pipeline.

Every stage of the pipeline fails with its own exception type so that the
caller can tell a rejected face from a rejected location without parsing
messages. Each exception carries a stable ``reason`` slug, an ``error_code``
and a context dictionary for structured logging.
"""

from typing import Any, Dict, List, Optional


class AttendanceError(Exception):
    """
    Base exception class for all attendance pipeline errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    reason: str = "attendance_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "reason": self.reason,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ValidationError(AttendanceError):
    """Exception raised for malformed input such as an invalid identity key."""

    reason = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        context = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = value
        super().__init__(message, context=context, error_code="INPUT_001")


class NotFoundError(AttendanceError):
    """Exception raised for an unknown identity or one without enrollment data."""

    reason = "not_found"

    def __init__(self, message: str, identity_key: Optional[str] = None) -> None:
        context = {"identity_key": identity_key} if identity_key else {}
        super().__init__(message, context=context, error_code="IDENTITY_001")


class RateLimitExceeded(AttendanceError):
    """
    Exception raised when an identity exhausts its attempts for the window.

    Parameters
    ----------
    identity_key : str
        Identity that was throttled.
    wait_seconds : float
        Remaining lockout before the window resets.
    """

    reason = "rate_limit_exceeded"

    def __init__(self, identity_key: str, wait_seconds: float, max_attempts: int) -> None:
        self.identity_key = identity_key
        self.wait_seconds = wait_seconds
        message = (
            f"Too many attempts for {identity_key}. "
            f"Please wait {wait_seconds:.0f} seconds"
        )
        context = {
            "identity_key": identity_key,
            "wait_seconds": round(wait_seconds, 3),
            "max_attempts": max_attempts,
        }
        super().__init__(message, context=context, error_code="RATE_001")


class CaptureError(AttendanceError):
    """Exception raised when the capture device is unavailable or denied."""

    reason = "capture_error"

    def __init__(self, message: str, device: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if device:
            context["device"] = device
        super().__init__(message, context, kwargs.get("error_code", "CAPTURE_001"))


class BiometricError(AttendanceError):
    """
    Parent of errors raised while analysing a face.

    This includes descriptor extraction, liveness and matching failures.
    """

    reason = "biometric_error"

    def __init__(self, message: str, processing_stage: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if processing_stage:
            context["processing_stage"] = processing_stage
        super().__init__(message, context, kwargs.get("error_code"))


class FeatureExtractionError(BiometricError):
    """
    Exception raised when a single image or strategy yields no descriptor.

    This is retried locally with another strategy or skipped for legacy
    photo samples; the workflow never surfaces it directly.
    """

    reason = "feature_extraction_error"

    def __init__(self, message: str, extraction_method: str, **kwargs) -> None:
        context = {"extraction_method": extraction_method}
        context.update(kwargs.get("context", {}))
        super().__init__(
            message,
            processing_stage="feature_extraction",
            context=context,
            error_code="BIOMETRIC_001",
        )


class CaptureExtractionFailed(BiometricError):
    """Exception raised when every extraction strategy failed on a capture."""

    reason = "capture_extraction_failed"

    def __init__(self, strategies: List[str]) -> None:
        self.strategies = strategies
        super().__init__(
            "No face descriptor could be extracted from the capture. "
            "Please face the camera in good light",
            processing_stage="descriptor_extraction",
            context={"strategies_tried": strategies},
            error_code="BIOMETRIC_002",
        )


class LivenessTimeout(BiometricError):
    """Exception raised when the blink target is not reached in time."""

    reason = "liveness_timeout"

    def __init__(self, blinks: int, target_blinks: int, timeout_seconds: float) -> None:
        self.blinks = blinks
        super().__init__(
            f"Liveness check timed out after {timeout_seconds:.0f} seconds "
            f"({blinks}/{target_blinks} blinks). Please blink naturally",
            processing_stage="liveness",
            context={
                "blinks": blinks,
                "target_blinks": target_blinks,
                "timeout_seconds": timeout_seconds,
            },
            error_code="BIOMETRIC_003",
        )


class LivenessFailed(BiometricError):
    """Exception raised when no qualifying face was seen during liveness."""

    reason = "liveness_failed"

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message,
            processing_stage="liveness",
            context=kwargs.get("context", {}),
            error_code="BIOMETRIC_004",
        )


class MatchRejected(BiometricError):
    """Exception raised when the best similarity score is below threshold."""

    reason = "match_rejected"

    def __init__(self, identity_key: str, score: float, threshold: float) -> None:
        self.score = score
        self.threshold = threshold
        super().__init__(
            f"Face does not match identity {identity_key} "
            f"({score:.1f}% similarity, {threshold:.0f}% required)",
            processing_stage="matching",
            context={
                "identity_key": identity_key,
                "score": round(score, 2),
                "threshold": threshold,
            },
            error_code="BIOMETRIC_005",
        )


class LocationError(AttendanceError):
    """Parent of errors raised while establishing the subject's position."""

    reason = "location_error"

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(message, kwargs.get("context", {}), kwargs.get("error_code"))


class LocationUnavailable(LocationError):
    """Exception raised on position timeout, denied permission or no signal."""

    reason = "location_unavailable"

    def __init__(self, message: str, cause: Optional[str] = None) -> None:
        context = {"cause": cause} if cause else {}
        super().__init__(message, context=context, error_code="LOCATION_001")


class GeofenceRejected(LocationError):
    """Exception raised when the position lies outside the approved radius."""

    reason = "geofence_rejected"

    def __init__(self, distance_km: float, radius_km: float) -> None:
        self.distance_km = distance_km
        self.radius_km = radius_km
        super().__init__(
            f"Outside the approved zone: {distance_km:.3f} km from the anchor "
            f"(maximum {radius_km:.3f} km)",
            context={"distance_km": round(distance_km, 6), "radius_km": radius_km},
            error_code="LOCATION_002",
        )


class WorkflowError(AttendanceError):
    """Parent of errors raised by the orchestrating workflow itself."""

    reason = "workflow_error"

    def __init__(self, message: str, identity_key: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if identity_key:
            context["identity_key"] = identity_key
        super().__init__(message, context, kwargs.get("error_code"))


class WorkflowStateError(WorkflowError):
    """Exception raised when an operation is invoked without an active session."""

    reason = "workflow_state_error"

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="WORKFLOW_001")


class AlreadyMarkedError(WorkflowError):
    """Exception raised on a second run of an already committed session."""

    reason = "already_marked"

    def __init__(self, identity_key: str) -> None:
        super().__init__(
            "Attendance already marked for this session",
            identity_key=identity_key,
            error_code="WORKFLOW_002",
        )


class DuplicateCheckInError(WorkflowError):
    """Exception raised when the identity already checked in on the same day."""

    reason = "duplicate_check_in"

    def __init__(self, identity_key: str, day: str) -> None:
        super().__init__(
            f"Attendance already marked for {identity_key} on {day}",
            identity_key=identity_key,
            context={"day": day},
            error_code="WORKFLOW_003",
        )


class PersistenceError(AttendanceError):
    """Exception raised when a record store read or append fails."""

    reason = "persistence_error"

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["operation"] = operation
        super().__init__(message, context, kwargs.get("error_code", "STORE_001"))
