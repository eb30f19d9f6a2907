import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import settings
from ..core.exceptions import BookingServiceError

logger = logging.getLogger(__name__)

ACTIVE_BOOKING_STATUSES = ("PENDING", "CONFIRMED")


class BookingClient:
    """
    Client for the booking service's appointment lookups.

    Used as an existence check only: a subscriber with a pending or confirmed
    visit in the future may not pause. If the booking service can't answer we
    raise rather than assume there are no appointments.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.BOOKING_SERVICE_URL).rstrip("/")
        self.timeout = timeout or settings.BOOKING_SERVICE_TIMEOUT_SECONDS

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True
    )
    async def _fetch_bookings(self, subscriber_id: str) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.base_url}/api/v1/bookings",
                params={
                    "subscriber_id": subscriber_id,
                    "status": ",".join(ACTIVE_BOOKING_STATUSES),
                    "upcoming": "true",
                },
            )
            response.raise_for_status()
            return response.json().get("bookings", [])

    async def get_active_appointments(
        self, subscriber_id: str, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Pending or confirmed appointments scheduled after `now`"""
        now = now or datetime.now(timezone.utc)

        try:
            bookings = await self._fetch_bookings(subscriber_id)
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Booking service returned {e.response.status_code}",
                extra={"subscriber_id": subscriber_id}
            )
            raise BookingServiceError(
                "Unable to verify scheduled appointments right now. Please try again later."
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Error contacting booking service: {e}", extra={"subscriber_id": subscriber_id})
            raise BookingServiceError(
                "Unable to verify scheduled appointments right now. Please try again later."
            ) from e

        active = []
        for booking in bookings:
            if booking.get("status") not in ACTIVE_BOOKING_STATUSES:
                continue
            scheduled_at = _parse_timestamp(booking.get("scheduled_at"))
            if scheduled_at is None or scheduled_at > now:
                active.append(booking)
        return active

    async def has_active_appointments(self, subscriber_id: str, now: Optional[datetime] = None) -> bool:
        return bool(await self.get_active_appointments(subscriber_id, now=now))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


booking_client = BookingClient()
