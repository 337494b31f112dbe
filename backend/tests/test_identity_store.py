import pytest

from checkin.core.exceptions import DuplicateIdentityError, InternalError, NotFoundError
from checkin.models import Cookie, Identity, IdentityStatus

COOKIES = [Cookie(key="sessionid", value="abc"), Cookie(key="csrftoken", value="xyz")]


@pytest.mark.asyncio
async def test_create_and_fetch_round_trip(store):
    created = await store.create("u1", "Alice", COOKIES)

    fetched = await store.get_by_id(created.id)
    assert fetched.external_user_id == "u1"
    assert fetched.display_name == "Alice"
    assert fetched.status is IdentityStatus.LOGGED_IN
    assert fetched.cookies == tuple(COOKIES)
    assert fetched.created_at is not None


@pytest.mark.asyncio
async def test_duplicate_external_user_id_is_rejected(store):
    await store.create("u1", "Alice", COOKIES)

    with pytest.raises(DuplicateIdentityError):
        await store.create("u1", "Someone else", COOKIES)

    assert len(await store.list_all()) == 1


@pytest.mark.asyncio
async def test_lookup_helpers_return_none_when_missing(store):
    assert await store.get_by_external_user_id("nobody") is None
    assert await store.get_by_display_name("Nobody") is None

    await store.create("u1", "Alice", COOKIES)
    assert (await store.get_by_external_user_id("u1")).display_name == "Alice"
    assert (await store.get_by_display_name("Alice")).external_user_id == "u1"


@pytest.mark.asyncio
async def test_list_with_cookies_skips_cleared_and_empty(store):
    alice = await store.create("u1", "Alice", COOKIES)
    bob = await store.create("u2", "Bob", COOKIES)
    await store.create("u3", "Carol", [])
    await store.update_cookies(bob.id, None)

    eligible = await store.list_with_cookies()

    assert [identity.id for identity in eligible] == [alice.id]


@pytest.mark.asyncio
async def test_clearing_cookies_logs_identity_out(store):
    identity = await store.create("u1", "Alice", COOKIES)

    await store.update_cookies(identity.id, None)

    cleared = await store.get_by_id(identity.id)
    assert cleared.cookies is None
    assert cleared.status is IdentityStatus.LOGGED_OUT
    assert not cleared.has_cookies


@pytest.mark.asyncio
async def test_replacing_cookies_keeps_status(store):
    identity = await store.create("u1", "Alice", COOKIES)

    await store.update_cookies(identity.id, [Cookie(key="sessionid", value="new")])

    updated = await store.get_by_id(identity.id)
    assert updated.cookies == (Cookie(key="sessionid", value="new"),)
    assert updated.status is IdentityStatus.LOGGED_IN


@pytest.mark.asyncio
async def test_update_status_round_trip(store):
    identity = await store.create("u1", "Alice", COOKIES)

    await store.update_status(identity.id, IdentityStatus.LOGGED_OUT)
    assert (await store.get_by_id(identity.id)).status is IdentityStatus.LOGGED_OUT

    await store.update_status(identity.id, IdentityStatus.LOGGED_IN)
    assert (await store.get_by_id(identity.id)).status is IdentityStatus.LOGGED_IN


@pytest.mark.asyncio
async def test_mutations_on_unknown_identity_raise_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get_by_id(999)
    with pytest.raises(NotFoundError):
        await store.update_status(999, IdentityStatus.LOGGED_IN)
    with pytest.raises(NotFoundError):
        await store.update_cookies(999, None)
    with pytest.raises(NotFoundError):
        await store.delete(999)


@pytest.mark.asyncio
async def test_delete_removes_identity(store):
    identity = await store.create("u1", "Alice", COOKIES)

    await store.delete(identity.id)

    assert await store.list_all() == []
    with pytest.raises(NotFoundError):
        await store.delete(identity.id)


@pytest.mark.parametrize(
    "cookies, status",
    [([{"value": "keyless"}], "logged_in"), ([{"key": "sid", "value": "v"}], "half_logged_in")],
)
def test_corrupt_row_surfaces_as_internal_error(cookies, status):
    row = Identity(id=9, external_user_id="u9", display_name="Broken", status=status, cookies=cookies)

    with pytest.raises(InternalError) as excinfo:
        row.to_snapshot()

    assert excinfo.value.status_code == 500
    assert excinfo.value.code == "internal_error"
