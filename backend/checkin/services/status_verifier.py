"""Who-am-I probing of stored identities."""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from checkin.core.exceptions import NotFoundError
from checkin.models.identity import IdentitySnapshot, IdentityStatus
from checkin.services.concurrency import run_in_batches
from checkin.services.identity_store import IdentityStore
from checkin.services.platform_client import PlatformClient, describe_transport_error

logger = structlog.get_logger()

USERINFO_PATH = "/v2/api/web/userinfo"


@dataclass(frozen=True)
class VerificationOutcome:
    identity_id: int
    display_name: str
    status: IdentityStatus
    message: str
    user_info: Optional[Dict[str, Any]] = None

    @property
    def logged_in(self) -> bool:
        return self.status is IdentityStatus.LOGGED_IN

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "accountId": self.identity_id,
            "name": self.display_name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.user_info is not None:
            payload["userInfo"] = self.user_info
        return payload


def parse_user_info(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """The logged-in user described by a userinfo response, or None."""
    if response.status_code != 200:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or data.get("id") in (None, ""):
        return None
    return {
        "userId": data.get("id"),
        "name": data.get("name"),
        "school": data.get("school_name"),
        "department": data.get("department_name"),
    }


class StatusVerifier:
    def __init__(
        self,
        client: PlatformClient,
        store: IdentityStore,
        *,
        probe_url: str,
        timeout: float = 10.0,
        concurrency: int = 5,
        batch_delay: float = 0.5,
    ) -> None:
        self._client = client
        self._store = store
        self._probe_url = probe_url
        self._timeout = timeout
        self._concurrency = concurrency
        self._batch_delay = batch_delay

    async def verify_one(self, identity: IdentitySnapshot) -> VerificationOutcome:
        """Probe one identity and record the resulting status."""
        user_info = None
        if not identity.has_cookies:
            message = "No cookies stored"
        else:
            try:
                response = await self._client.fetch(
                    self._probe_url,
                    identity.cookies,
                    timeout=self._timeout,
                    headers={
                        "Accept": "application/json, text/plain, */*",
                        "X-Requested-With": "XMLHttpRequest",
                    },
                )
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                message = f"Check failed: {describe_transport_error(exc)}"
            except Exception as exc:
                logger.warning(
                    "Status check could not be sent",
                    identity_id=identity.id,
                    error=str(exc),
                    exception_type=type(exc).__name__,
                )
                message = f"Check failed: {str(exc) or type(exc).__name__}"
            else:
                user_info = parse_user_info(response)
                message = "Logged in" if user_info else "Cookies have expired"

        status = IdentityStatus.LOGGED_IN if user_info else IdentityStatus.LOGGED_OUT
        try:
            await self._store.update_status(identity.id, status)
        except NotFoundError:
            logger.warning("Identity vanished during verification", identity_id=identity.id)
        logger.info("Identity verified", identity_id=identity.id, status=status.value)
        return VerificationOutcome(
            identity_id=identity.id,
            display_name=identity.display_name,
            status=status,
            message=message,
            user_info=user_info,
        )

    async def verify_all(self, identities: Sequence[IdentitySnapshot]) -> List[VerificationOutcome]:
        outcomes = await run_in_batches(
            list(identities),
            self.verify_one,
            batch_size=self._concurrency,
            delay=self._batch_delay,
        )
        logger.info(
            "Bulk verification finished",
            total=len(outcomes),
            logged_in=sum(1 for outcome in outcomes if outcome.logged_in),
        )
        return outcomes
