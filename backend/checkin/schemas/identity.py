from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from checkin.models.identity import Cookie, IdentitySnapshot, IdentityStatus


class CookieItem(BaseModel):
    key: str = Field(..., min_length=1, max_length=256)
    value: str = Field("", max_length=4096)

    @field_validator("key", "value")
    @classmethod
    def printable_ascii(cls, v: str) -> str:
        if any(not (32 <= ord(ch) < 127) for ch in v):
            raise ValueError("cookies may only contain printable ASCII characters")
        return v

    def to_cookie(self) -> Cookie:
        return Cookie(key=self.key, value=self.value)


class IdentityResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: str = Field(..., alias="userId")
    name: str
    status: IdentityStatus
    has_cookies: bool = Field(..., alias="hasCookies")
    cookie_count: int = Field(0, alias="cookieCount")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_snapshot(cls, identity: IdentitySnapshot) -> "IdentityResponse":
        return cls(
            id=identity.id,
            user_id=identity.external_user_id,
            name=identity.display_name,
            status=identity.status,
            has_cookies=identity.has_cookies,
            cookie_count=len(identity.cookies or ()),
            created_at=identity.created_at,
        )


class ManualIdentityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., max_length=100)
    cookies: List[CookieItem] = Field(..., min_length=1)
    user_id: Optional[str] = Field(None, alias="userId", max_length=100)

    @field_validator("cookies", mode="before")
    @classmethod
    def accept_cookie_mapping(cls, v):
        """Accept ``{"name": "value"}`` as well as a list of ``{key, value}``."""
        if isinstance(v, dict):
            return [{"key": key, "value": value} for key, value in v.items()]
        if isinstance(v, list):
            return [
                {"key": item.get("key") or item.get("name"), "value": item.get("value", "")}
                if isinstance(item, dict) else item
                for item in v
            ]
        return v


class DeleteIdentityRequest(BaseModel):
    password: Optional[str] = None


class CheckStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: int = Field(..., alias="accountId")


class ApiResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class CheckAllStatusResponse(BaseModel):
    success: bool = True
    message: str
    results: List[Dict[str, Any]]
