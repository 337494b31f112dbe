import asyncio
from datetime import datetime

import httpx
import pytest

from checkin.core.exceptions import NotFoundError, ValidationError
from checkin.models import Cookie, IdentitySnapshot, IdentityStatus
from checkin.services.dispatch_engine import DispatchEngine, validate_target_url
from checkin.services.platform_client import PlatformClient, extract_text

TARGET = "https://platform.test/checkin?lesson=42"


def snapshot(identity_id, name, session):
    return IdentitySnapshot(
        id=identity_id,
        external_user_id=f"u{identity_id}",
        display_name=name,
        status=IdentityStatus.LOGGED_IN,
        cookies=(Cookie(key="sessionid", value=session),),
        created_at=datetime(2024, 1, 1),
    )


def make_engine(handler, store=None, **kwargs):
    client = PlatformClient(user_agent="test-agent", transport=httpx.MockTransport(handler))
    return DispatchEngine(client, store, **kwargs)


@pytest.mark.asyncio
async def test_mixed_outcomes_are_reported_per_identity():
    async def handler(request):
        if "sessionid=A" in request.headers.get("cookie", ""):
            return httpx.Response(200, text="<html><script>var x=1;</script><body> OK </body></html>")
        raise httpx.ReadTimeout("timed out", request=request)

    engine = make_engine(handler)
    report = await engine.dispatch(TARGET, [snapshot(1, "A", "A"), snapshot(2, "B", "B")])

    assert report.total == 2
    assert report.succeeded == 1
    first, second = report.results
    assert (first.display_name, first.succeeded, first.status_code, first.body_excerpt) == ("A", True, 200, "OK")
    assert (second.display_name, second.succeeded, second.error_message) == ("B", False, "timeout")
    assert report.to_payload()["success"] is True
    assert report.to_payload()["successCount"] == 1


@pytest.mark.asyncio
async def test_unencodable_cookie_fails_only_its_own_identity():
    async def handler(request):
        return httpx.Response(200, text="signed")

    engine = make_engine(handler)
    identities = [snapshot(1, "good", "ok"), snapshot(2, "bad", "值\n"), snapshot(3, "good2", "ok2")]

    report = await engine.dispatch(TARGET, identities)

    assert [result.succeeded for result in report.results] == [True, False, True]
    bad = report.results[1]
    assert bad.display_name == "bad"
    assert bad.status_code is None
    assert bad.error_message


@pytest.mark.asyncio
async def test_results_follow_input_order_not_completion_order():
    async def handler(request):
        if "sessionid=slow" in request.headers.get("cookie", ""):
            await asyncio.sleep(0.05)
        return httpx.Response(200, text="done")

    engine = make_engine(handler)
    identities = [snapshot(1, "slow", "slow"), snapshot(2, "fast", "fast"), snapshot(3, "fast2", "fast2")]

    report = await engine.dispatch(TARGET, identities)

    assert [result.identity_id for result in report.results] == [1, 2, 3]


@pytest.mark.asyncio
async def test_cookies_never_cross_identities():
    landed = []

    async def handler(request):
        cookie = request.headers.get("cookie", "")
        if request.url.path == "/checkin":
            owner = "A" if "sessionid=A" in cookie else "B"
            return httpx.Response(
                302,
                headers={"Location": "/landing", "Set-Cookie": f"issued={owner}; Path=/"},
            )
        landed.append(cookie)
        return httpx.Response(200, text="landed")

    engine = make_engine(handler)
    report = await engine.dispatch(TARGET, [snapshot(1, "A", "A"), snapshot(2, "B", "B")])

    assert report.succeeded == 2
    assert len(landed) == 2
    for header in landed:
        owner = "A" if "sessionid=A" in header else "B"
        other = "B" if owner == "A" else "A"
        assert f"issued={owner}" in header
        assert f"sessionid={other}" not in header
        assert f"issued={other}" not in header


@pytest.mark.asyncio
async def test_request_carries_browser_headers():
    captured = []

    async def handler(request):
        captured.append(request)
        return httpx.Response(200, text="ok")

    engine = make_engine(handler)
    await engine.dispatch(TARGET, [snapshot(1, "A", "A")])

    request = captured[0]
    assert request.headers["user-agent"] == "test-agent"
    assert request.headers["referer"] == TARGET
    assert request.headers["cookie"] == "sessionid=A"


@pytest.mark.asyncio
async def test_error_status_still_counts_as_delivered():
    engine = make_engine(lambda request: httpx.Response(500, text="<p>server error</p>"))

    report = await engine.dispatch(TARGET, [snapshot(1, "A", "A")])

    assert report.results[0].succeeded is True
    assert report.results[0].status_code == 500
    assert report.results[0].body_excerpt == "server error"


@pytest.mark.asyncio
async def test_redirect_limit_is_a_per_identity_failure():
    engine = make_engine(
        lambda request: httpx.Response(302, headers={"Location": str(request.url)}),
        max_redirects=2,
    )

    report = await engine.dispatch(TARGET, [snapshot(1, "A", "A")])

    assert report.results[0].succeeded is False
    assert report.results[0].error_message == "too many redirects"
    assert report.to_payload()["success"] is False


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_requests():
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, text="ok")

    engine = make_engine(handler, concurrency_limit=2)
    report = await engine.dispatch(TARGET, [snapshot(i, f"n{i}", f"s{i}") for i in range(1, 6)])

    assert report.succeeded == 5
    assert peak <= 2


@pytest.mark.parametrize(
    "url", ["", "   ", "ftp://platform.test/x", "not a url", None, "http://[::1/x"]
)
def test_invalid_target_urls_are_rejected(url):
    with pytest.raises(ValidationError):
        validate_target_url(url)


@pytest.mark.asyncio
async def test_run_signin_without_identities_raises(store):
    engine = make_engine(lambda request: httpx.Response(200), store=store)

    with pytest.raises(NotFoundError):
        await engine.run_signin(TARGET)


@pytest.mark.asyncio
async def test_run_signin_uses_only_identities_with_cookies(store):
    await store.create("u1", "Alice", [Cookie(key="sessionid", value="A")])
    bob = await store.create("u2", "Bob", [Cookie(key="sessionid", value="B")])
    await store.update_cookies(bob.id, None)
    engine = make_engine(lambda request: httpx.Response(200, text="ok"), store=store)

    report = await engine.run_signin(TARGET)

    assert [result.display_name for result in report.results] == ["Alice"]


def test_extract_text_strips_markup_and_truncates():
    body = "<html><head><style>p{}</style></head><body><p>Hello</p>\n\n<p>world</p></body></html>"

    assert extract_text(body) == "Hello world"
    assert extract_text("x" * 2000, limit=1000) == "x" * 1000
    assert extract_text("") == ""
