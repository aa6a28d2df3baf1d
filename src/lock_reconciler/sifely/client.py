"""Sifely lock vendor API client."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lock_reconciler.config import ConfigKey
from lock_reconciler.core.config_cache import ConfigCache
from lock_reconciler.errors import LockDirectoryError

logger = logging.getLogger(__name__)

BASE_URL = "https://pro-server.sifely.com"

# Vendor top-level success code
SUCCESS_CODE = 200

# changeType=2 changes the passcode through the gateway
CHANGE_TYPE_GATEWAY = "2"


class VendorLock(BaseModel):
    """A lock as listed by the vendor."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    lock_id: int = Field(alias="lockId")
    lock_alias: str = Field(default="", alias="lockAlias")
    lock_name: Optional[str] = Field(default=None, alias="lockName")
    group_name: Optional[str] = Field(default=None, alias="groupName")
    no_key_pwd: Optional[str] = Field(default=None, alias="noKeyPwd")
    electric_quantity: Optional[int] = Field(default=None, alias="electricQuantity")


class VendorPasscode(BaseModel):
    """A keyboard passcode slot as listed by the vendor."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    passcode_id: int = Field(alias="keyboardPwdId")
    name: str = Field(default="", alias="keyboardPwdName")
    code: Optional[str] = Field(default=None, alias="keyboardPwd")
    passcode_type: Optional[int] = Field(default=None, alias="keyboardPwdType")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    status: int = 0
    is_custom: int = Field(default=0, alias="isCustom")

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _zero_is_unset(cls, value: Any) -> Any:
        # The vendor sends 0 for slots without a window
        return value or None


class LockPage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    total: int = 0
    pages: int = 0
    page_no: int = Field(default=1, alias="pageNo")
    items: list[VendorLock] = Field(default_factory=list, alias="list")


class PasscodePage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    total: int = 0
    pages: int = 0
    page_no: int = Field(default=1, alias="pageNo")
    items: list[VendorPasscode] = Field(default_factory=list, alias="list")


class ChangeResultData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    errcode: Optional[int] = None
    errmsg: Optional[str] = None
    description: Optional[str] = None


class PasscodeChangeResponse(BaseModel):
    """Response of the passcode change endpoint.

    The vendor can report ``code == 200`` while the nested ``data.errcode``
    signals that the operation itself failed, so both are checked.
    """

    model_config = ConfigDict(extra="ignore")

    code: int
    msg: Optional[str] = None
    data: Optional[ChangeResultData] = None
    http_status: int = 200
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def top_level_ok(self) -> bool:
        return self.code == SUCCESS_CODE

    @property
    def nested_ok(self) -> bool:
        return self.data is None or not self.data.errcode

    @property
    def ok(self) -> bool:
        return self.top_level_ok and self.nested_ok

    @property
    def error_message(self) -> str:
        if not self.top_level_ok:
            return f"API request failed with code {self.code}: {self.msg or 'no message'}"
        if not self.nested_ok and self.data is not None:
            return self.data.errmsg or self.data.description or "Lock operation failed"
        return ""


def to_millis(value: datetime) -> int:
    """Epoch milliseconds for a datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class SifelyClient:
    """Client for the Sifely lock management API."""

    def __init__(
        self,
        config: ConfigCache,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            config: Credential cache holding the Sifely auth token
            base_url: API base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._config = config
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Accept": "application/json, text/plain, */*",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, form: dict[str, str]) -> tuple[int, dict[str, Any]]:
        """POST a form to the vendor API.

        Returns:
            Tuple of (http_status, decoded JSON body)

        Raises:
            LockDirectoryError: If the body is not a JSON object.
            httpx.TransportError: On connection-level failures.
        """
        token = await self._config.get(ConfigKey.SIFELY_AUTH_TOKEN)
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}{path}",
            data=form,
            headers={"Authorization": token or ""},
        )
        try:
            body = response.json()
        except ValueError:
            raise LockDirectoryError(
                f"Non-JSON response from {path} (HTTP {response.status_code})",
                http_status=response.status_code,
                raw=response.text[:500],
            ) from None
        if not isinstance(body, dict):
            raise LockDirectoryError(
                f"Unexpected response shape from {path}",
                http_status=response.status_code,
                raw=body,
            )
        return response.status_code, body

    async def _list(self, path: str, form: dict[str, str], model: type[BaseModel]):
        status, body = await self._post(path, form)
        if body.get("code") != SUCCESS_CODE:
            raise LockDirectoryError(
                f"API error: {body.get('msg') or body.get('code')}",
                http_status=status,
                raw=body,
            )
        try:
            return model.model_validate(body.get("data") or {})
        except ValidationError as e:
            raise LockDirectoryError(
                f"Invalid response from {path}: {e}", http_status=status, raw=body
            ) from e

    async def list_locks(self, page: int, page_size: int = 10) -> LockPage:
        """List locks (and their aliases) visible to this account."""
        return await self._list(
            "/v3/key/list",
            {
                "keyRight": "1",
                "groupId": "0",
                "pageNo": str(page),
                "pageSize": str(page_size),
            },
            LockPage,
        )

    async def list_passcodes(self, lock_id: str, page: int, page_size: int = 10) -> PasscodePage:
        """List the keyboard passcode slots of a lock."""
        return await self._list(
            "/v3/lock/listKeyboardPwd",
            {
                "lockId": lock_id,
                "pageNo": str(page),
                "pageSize": str(page_size),
                "orderBy": "1",
                "date": str(int(time.time() * 1000)),
            },
            PasscodePage,
        )

    async def change_passcode(
        self,
        lock_id: str,
        passcode_id: int,
        passcode_name: str,
        new_code: str,
        start: datetime,
        end: datetime,
    ) -> PasscodeChangeResponse:
        """Change the value and validity window of a passcode slot.

        The returned response may still describe a failure; check ``ok``.

        Raises:
            LockDirectoryError: If the response cannot be parsed.
            httpx.TransportError: On connection-level failures.
        """
        status, body = await self._post(
            "/v3/keyboardPwd/change",
            {
                "changeType": CHANGE_TYPE_GATEWAY,
                "keyboardPwdName": passcode_name,
                "newKeyboardPwd": new_code,
                "lockId": lock_id,
                "keyboardPwdId": str(passcode_id),
                "date": str(int(time.time() * 1000)),
                "startDate": str(to_millis(start)),
                "endDate": str(to_millis(end)),
            },
        )
        try:
            return PasscodeChangeResponse.model_validate(
                {**body, "http_status": status, "raw": body}
            )
        except ValidationError as e:
            raise LockDirectoryError(
                f"Invalid passcode change response: {e}", http_status=status, raw=body
            ) from e

    async def health_check(self) -> bool:
        """Check whether a Sifely token is configured."""
        return bool(await self._config.get(ConfigKey.SIFELY_AUTH_TOKEN))
