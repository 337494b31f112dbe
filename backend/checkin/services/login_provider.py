"""
Boundary types for the external QR login provider.

A provider issues challenges synchronously but reports approvals later by
putting ``ApprovalEvent`` objects on a queue owned by the orchestrator.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from checkin.models.identity import Cookie


@dataclass(frozen=True)
class Challenge:
    challenge_id: str
    scannable_token: str
    qrcode: Optional[str] = None
    expiry_seconds: Optional[int] = None


@dataclass(frozen=True)
class PendingIdentity:
    external_user_id: str
    display_name: Optional[str]
    cookies: Tuple[Cookie, ...]
    school: Optional[str] = None
    department: Optional[str] = None


@dataclass(frozen=True)
class ApprovalEvent:
    challenge_id: str
    identity: PendingIdentity


class LoginProvider(ABC):
    """Issues QR challenges and reports approvals asynchronously."""

    @abstractmethod
    async def initiate_challenge(self, events: "asyncio.Queue[ApprovalEvent]") -> Challenge:
        """Open a challenge; its approval, if any, is put on ``events``.

        Raises ``ProviderUnavailableError`` when no challenge can be issued.
        """

    @abstractmethod
    async def release(self, challenge_id: str) -> None:
        """Free provider-side resources for a challenge. Must be idempotent."""

    async def aclose(self) -> None:
        """Release every outstanding challenge."""
        return None
