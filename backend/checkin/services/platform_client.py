"""
Authenticated request primitive shared by dispatch and status verification.

Each call gets its own short-lived ``httpx.AsyncClient`` whose cookie jar holds
only that identity's cookies, so cookies set by one identity's responses or
redirects can never leak into another identity's request.
"""
import re
from typing import Dict, Iterable, Optional

import httpx
from bs4 import BeautifulSoup

from checkin.models.identity import Cookie

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"

_WHITESPACE = re.compile(r"\s+")


def build_cookie_jar(cookies: Optional[Iterable[Cookie]]) -> httpx.Cookies:
    jar = httpx.Cookies()
    for cookie in cookies or ():
        # Empty domain: the jar sends the cookie to whatever host the request targets
        jar.set(cookie.key, cookie.value)
    return jar


def cookie_header(cookies: Optional[Iterable[Cookie]]) -> str:
    return "; ".join(f"{cookie.key}={cookie.value}" for cookie in cookies or ())


def extract_text(body: Optional[str], limit: int = 1000) -> str:
    """Strip scripts, styles and markup from a response body and collapse whitespace."""
    if not body:
        return ""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = _WHITESPACE.sub(" ", soup.get_text(" ")).strip()
    return text[:limit]


def describe_transport_error(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.TooManyRedirects):
        return "too many redirects"
    return str(exc) or type(exc).__name__


def error_response(exc: Exception) -> Optional[httpx.Response]:
    """The response carried by a transport-level failure, if there is one."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response
    return None


class PlatformClient:
    """Issues cookie-authenticated GETs on behalf of one identity at a time."""

    def __init__(
        self,
        *,
        user_agent: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._user_agent = user_agent
        self._transport = transport

    async def fetch(
        self,
        url: str,
        cookies: Optional[Iterable[Cookie]],
        *,
        timeout: float,
        max_redirects: int = 5,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """GET ``url`` with the given cookies; httpx errors propagate to the caller."""
        request_headers = {
            "User-Agent": self._user_agent,
            "Accept": DEFAULT_ACCEPT,
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        }
        request_headers.update(headers or {})
        async with httpx.AsyncClient(
            cookies=build_cookie_jar(cookies),
            headers=request_headers,
            timeout=timeout,
            follow_redirects=True,
            max_redirects=max_redirects,
            transport=self._transport,
        ) as client:
            return await client.get(url)
