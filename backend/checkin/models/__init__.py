# Import base classes
from checkin.models.base import Base
from checkin.models.mixins import TimestampMixin

from checkin.models.identity import (
    Cookie,
    Identity,
    IdentitySnapshot,
    IdentityStatus,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Cookie",
    "Identity",
    "IdentitySnapshot",
    "IdentityStatus",
]
