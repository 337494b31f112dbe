import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import JSON, Column, Integer, String, UniqueConstraint

from checkin.core.exceptions import InternalError
from checkin.models.base import Base
from checkin.models.mixins import TimestampMixin


class IdentityStatus(str, enum.Enum):
    """Login status of a stored identity."""

    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class Cookie:
    key: str
    value: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cookie":
        key = data.get("key", data.get("name"))
        if not key:
            raise ValueError("cookie entries need a key")
        return cls(key=str(key), value=str(data.get("value", "")))

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "value": self.value}


def cookies_to_json(cookies: Optional[Iterable[Cookie]]) -> Optional[List[Dict[str, str]]]:
    if cookies is None:
        return None
    return [cookie.to_dict() for cookie in cookies]


def cookies_from_json(raw: Optional[List[Dict[str, Any]]]) -> Optional[Tuple[Cookie, ...]]:
    if raw is None:
        return None
    return tuple(Cookie.from_dict(item) for item in raw)


@dataclass(frozen=True)
class IdentitySnapshot:
    """Detached, read-only copy of an identity row."""

    id: int
    external_user_id: str
    display_name: str
    status: IdentityStatus
    cookies: Optional[Tuple[Cookie, ...]]
    created_at: Optional[datetime]

    @property
    def has_cookies(self) -> bool:
        return bool(self.cookies)


class Identity(Base, TimestampMixin):
    """Stored platform account whose cookies are replayed on dispatch."""

    __tablename__ = "identities"
    __table_args__ = (UniqueConstraint("external_user_id", name="uq_identities_external_user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_user_id = Column(String(100), nullable=False)
    display_name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=IdentityStatus.LOGGED_OUT.value)
    # JSON list of {"key", "value"}; NULL means never authenticated or cleared
    cookies = Column(JSON(none_as_null=True), nullable=True)

    def to_snapshot(self) -> IdentitySnapshot:
        try:
            status = IdentityStatus(self.status)
            cookies = cookies_from_json(self.cookies)
        except ValueError as exc:
            raise InternalError(f"Stored identity {self.id} is corrupt: {exc}") from exc
        return IdentitySnapshot(
            id=self.id,
            external_user_id=self.external_user_id,
            display_name=self.display_name,
            status=status,
            cookies=cookies,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<Identity id={self.id} external_user_id={self.external_user_id!r} status={self.status}>"
