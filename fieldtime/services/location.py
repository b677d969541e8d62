"""
GPS acquisition.

Position fixes come from the worker's device. Acquisition is fallible and
bounded: every failure surfaces as LocationUnavailable with a typed reason.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Tuple

import structlog

from ..config import settings
from ..errors import LocationUnavailable, ValidationError

logger = structlog.get_logger(__name__)


class LocationFailure(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy_m: Optional[float] = None

    def __post_init__(self):
        if not -90.0 <= float(self.lat) <= 90.0:
            raise ValidationError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= float(self.lng) <= 180.0:
            raise ValidationError(f"Longitude out of range: {self.lng}")
        if self.accuracy_m is not None and float(self.accuracy_m) < 0:
            raise ValidationError("accuracy_m must be non-negative")


class LocationProvider(Protocol):
    async def get_current_position(self, timeout_ms: int, high_accuracy: bool) -> Position:
        """Return a fix or raise LocationUnavailable."""
        ...


class ReportedLocationProvider:
    """
    Serves the fix (or the failure) the device reported with its request.
    """

    def __init__(self, position: Optional[Position] = None, failure: Optional[LocationFailure] = None):
        self._position = position
        self._failure = failure

    async def get_current_position(self, timeout_ms: int, high_accuracy: bool) -> Position:
        if self._failure is not None:
            raise LocationUnavailable(self._failure)
        if self._position is None:
            raise LocationUnavailable(LocationFailure.POSITION_UNAVAILABLE)
        return self._position


async def acquire_position(
    provider: Optional[LocationProvider],
    timeout_s: Optional[float] = None,
    high_accuracy: Optional[bool] = None,
) -> Position:
    """
    Acquire a position with a hard timeout.

    Args:
        provider: Location collaborator (None means the device has no GPS)
        timeout_s: Hard timeout in seconds (default from settings)
        high_accuracy: Request a high-accuracy fix (default from settings)

    Returns:
        Position

    Raises:
        LocationUnavailable: with the typed failure reason
    """
    if provider is None:
        raise LocationUnavailable(LocationFailure.UNSUPPORTED)
    if timeout_s is None:
        timeout_s = settings.gps_timeout_s
    if high_accuracy is None:
        high_accuracy = settings.gps_high_accuracy

    try:
        return await asyncio.wait_for(
            provider.get_current_position(int(timeout_s * 1000), high_accuracy),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        raise LocationUnavailable(LocationFailure.TIMEOUT)


async def capture_position(
    provider: Optional[LocationProvider],
    timeout_s: Optional[float] = None,
    **log_context,
) -> Tuple[Optional[Position], Optional[LocationFailure]]:
    """
    Best-effort acquisition: a failure is logged and returned, never raised.

    Returns:
        Tuple of (position, failure); exactly one of them is None
    """
    try:
        position = await acquire_position(provider, timeout_s)
    except LocationUnavailable as e:
        logger.warning("gps_capture_failed", reason=e.reason.value, **log_context)
        return None, e.reason
    return position, None
