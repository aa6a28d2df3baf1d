"""Duve API client for fetching due reservations and annotating them."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lock_reconciler.config import ConfigKey
from lock_reconciler.core.config_cache import ConfigCache
from lock_reconciler.errors import ReservationSourceError

logger = logging.getLogger(__name__)

BASE_URL = "https://frontdesk.duve.com/api"


class DuveProperty(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    name: str = ""
    street: Optional[str] = None
    street_number: Optional[str] = Field(default=None, alias="streetNumber")
    city: Optional[str] = None
    status: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _blank_name(cls, value):
        return value or ""


class DuveReservation(BaseModel):
    """A reservation as returned by the Duve listing endpoint."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(alias="_id")
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    email: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    status: Optional[str] = None
    booking_status: Optional[str] = Field(default=None, alias="bookingStatus")
    booking_source: Optional[str] = Field(default=None, alias="bookingSourceLabel")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    property: DuveProperty

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _blank_names(cls, value):
        return value or ""

    @property
    def guest_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class DuvePagination(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    has_more: bool = Field(alias="hasMore")
    page: Optional[int] = None
    pages: Optional[int] = None
    total: Optional[int] = None
    page_size: Optional[int] = Field(default=None, alias="pageSize")


class ReservationPage(BaseModel):
    """One page of the reservation listing."""

    model_config = ConfigDict(extra="ignore")

    # Raw items, validated one at a time with DuveReservation
    reservations: list[dict[str, Any]]
    pagination: DuvePagination


class DuveClient:
    """Client for the Duve front desk API."""

    def __init__(
        self,
        config: ConfigCache,
        base_url: str = BASE_URL,
        page_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"accept": "application/json"},
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        headers = {}
        csrf = await self._config.get(ConfigKey.DUVE_CSRF_TOKEN)
        cookie = await self._config.get(ConfigKey.DUVE_COOKIE)
        if not cookie:
            session_id = await self._config.get(ConfigKey.DUVE_SESSION_ID)
            if session_id:
                cookie = f"sessionId={session_id}"
                if csrf:
                    cookie += f"; csrftoken={csrf}"
        if csrf:
            headers["x-csrftoken"] = csrf
        if cookie:
            headers["cookie"] = cookie
        return headers

    async def fetch_page(self, page: int, cutoff: datetime) -> ReservationPage:
        """Fetch one page of reservations checking in from ``cutoff`` onwards.

        Args:
            page: 1-based page number
            cutoff: Earliest check-in instant (UTC)

        Returns:
            The validated page.

        Raises:
            ReservationSourceError: On a non-2xx status or a malformed body.
        """
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        cutoff_iso = cutoff.astimezone(timezone.utc).isoformat(timespec="milliseconds")
        params = [
            ("page", str(page)),
            ("pageSize", str(self._page_size)),
            ("sort[]", json.dumps({"id": "checkInDate", "desc": True})),
            ("filter[]", json.dumps({
                "id": "checkInDate",
                "value": {
                    "from": cutoff_iso.replace("+00:00", "Z"),
                    "to": None,
                    "operator": "eq",
                },
            })),
        ]

        client = await self._get_client()
        response = await client.get(
            f"{self._base_url}/reservations",
            params=params,
            headers=await self._auth_headers(),
        )
        if response.is_error:
            raise ReservationSourceError(
                f"Reservation listing failed with status {response.status_code}",
                http_status=response.status_code,
            )

        try:
            return ReservationPage.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ReservationSourceError(
                f"Invalid reservation listing response: {e}",
                http_status=response.status_code,
            ) from e

    async def patch_reservation(self, reservation_id: str, code: str) -> None:
        """Write the new lock code onto the reservation.

        Raises:
            ReservationSourceError: If Duve rejects the update.
        """
        client = await self._get_client()
        response = await client.put(
            f"{self._base_url}/reservations/{reservation_id}",
            json={"mode": True, "aptC": f"{code}#"},
            headers=await self._auth_headers(),
        )
        if response.is_error:
            raise ReservationSourceError(
                f"Failed to update reservation {reservation_id}: "
                f"{response.status_code} {response.text[:200]}",
                http_status=response.status_code,
            )
        logger.debug("Updated reservation %s with code %s#", reservation_id, code)

    async def health_check(self) -> bool:
        """Check whether credentials are configured."""
        return bool(await self._config.get(ConfigKey.DUVE_CSRF_TOKEN))

