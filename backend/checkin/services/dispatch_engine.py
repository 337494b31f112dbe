"""
Fan-out of one target URL across every stored identity.

A dispatch never raises for a single identity's failure: each outcome is
captured in that identity's ``DispatchResult``. Responses of any HTTP status
count as delivered, since the platform reports check-in success in the body.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx
import structlog

from checkin.core.exceptions import NotFoundError, ValidationError
from checkin.models.identity import IdentitySnapshot
from checkin.services.concurrency import gather_in_order
from checkin.services.identity_store import IdentityStore
from checkin.services.platform_client import (
    PlatformClient,
    describe_transport_error,
    error_response,
    extract_text,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class DispatchResult:
    identity_id: int
    display_name: str
    succeeded: bool
    status_code: Optional[int] = None
    body_excerpt: Optional[str] = None
    error_message: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "accountId": self.identity_id,
            "name": self.display_name,
            "success": self.succeeded,
            "statusCode": self.status_code,
            "responseText": self.body_excerpt,
            "error": self.error_message,
        }


@dataclass(frozen=True)
class DispatchReport:
    results: List[DispatchResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.succeeded)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.succeeded > 0,
            "totalCount": self.total,
            "successCount": self.succeeded,
            "results": [result.to_payload() for result in self.results],
        }


def validate_target_url(target_url: Optional[str]) -> str:
    if not target_url or not str(target_url).strip():
        raise ValidationError("URL must not be empty")
    url = str(target_url).strip()
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise ValidationError(f"URL is malformed: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("URL must be an absolute http(s) URL")
    return url


class DispatchEngine:
    """Replays a target URL once per identity, concurrently."""

    def __init__(
        self,
        client: PlatformClient,
        store: IdentityStore,
        *,
        timeout: float = 15.0,
        max_redirects: int = 5,
        excerpt_limit: int = 1000,
        concurrency_limit: int = 0,
    ) -> None:
        self._client = client
        self._store = store
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._excerpt_limit = excerpt_limit
        self._concurrency_limit = concurrency_limit

    async def probe(self, target_url: str, identity: IdentitySnapshot) -> DispatchResult:
        """One authenticated GET for one identity; never raises for transport failures."""
        try:
            response = await self._client.fetch(
                target_url,
                identity.cookies,
                timeout=self._timeout,
                max_redirects=self._max_redirects,
                headers={"Referer": target_url},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            carried = error_response(exc)
            result = DispatchResult(
                identity_id=identity.id,
                display_name=identity.display_name,
                succeeded=False,
                status_code=carried.status_code if carried is not None else None,
                body_excerpt=extract_text(carried.text, self._excerpt_limit) if carried is not None else None,
                error_message=describe_transport_error(exc),
            )
            logger.warning(
                "Dispatch request failed",
                identity_id=identity.id,
                status_code=result.status_code,
                error=result.error_message,
            )
            return result
        except Exception as exc:
            # e.g. cookie values the HTTP layer cannot encode
            logger.warning(
                "Dispatch request could not be sent",
                identity_id=identity.id,
                error=str(exc),
                exception_type=type(exc).__name__,
            )
            return DispatchResult(
                identity_id=identity.id,
                display_name=identity.display_name,
                succeeded=False,
                error_message=f"Request could not be sent: {exc}" if str(exc) else type(exc).__name__,
            )

        excerpt = extract_text(response.text, self._excerpt_limit)
        logger.info(
            "Dispatch request completed",
            identity_id=identity.id,
            status_code=response.status_code,
            excerpt_length=len(excerpt),
        )
        return DispatchResult(
            identity_id=identity.id,
            display_name=identity.display_name,
            succeeded=True,
            status_code=response.status_code,
            body_excerpt=excerpt,
        )

    async def dispatch(self, target_url: str, identities: Sequence[IdentitySnapshot]) -> DispatchReport:
        url = validate_target_url(target_url)
        snapshot = list(identities)
        logger.info("Dispatch started", identity_count=len(snapshot), target=url[:50])

        async def _probe(identity: IdentitySnapshot) -> DispatchResult:
            return await self.probe(url, identity)

        results = await gather_in_order(snapshot, _probe, limit=self._concurrency_limit or None)
        report = DispatchReport(results=results)
        logger.info("Dispatch finished", succeeded=report.succeeded, total=report.total)
        return report

    async def run_signin(self, target_url: Optional[str]) -> DispatchReport:
        """Dispatch against every identity that currently holds cookies."""
        url = validate_target_url(target_url)
        identities = await self._store.list_with_cookies()
        if not identities:
            raise NotFoundError("No identities with cookies are available")
        return await self.dispatch(url, identities)
