import asyncio

import httpx
import pytest

from portal_resolver.config import STB_USER_AGENT
from portal_resolver.errors import (AuthRejected, EmptyCatalog, HandshakeFailed,
                                    SessionStateError, StreamLinkUnavailable, TokenMissing)
from portal_resolver.models import Credential, StreamKind
from portal_resolver.session import PortalSession, State, clean_stream_link

ENDPOINT = "http://portal.test/portal.php"
MAC = "00:1A:79:00:00:01"


@pytest.fixture
def session(portal, make_client):
    return PortalSession(make_client(portal), ENDPOINT, Credential.from_mac(MAC))


def test_open_authenticates_with_handshake_token(session):
    asyncio.run(session.open())
    assert session.state is State.PROFILE_FETCHED
    assert session.token == "abc123"
    assert session.session.issued_at is not None
    assert session.profile == {"id": 7, "phone": "2031-01-01"}


def test_authenticated_after_token(session):
    async def steps():
        await session.handshake()
        assert session.state is State.HANDSHAKED
        return await session.authenticate()

    assert asyncio.run(steps()) == "abc123"
    assert session.state is State.AUTHENTICATED


def test_every_request_carries_mac_and_stb_agent(portal, session):
    async def run():
        await session.open()
        await session.fetch_channels()

    asyncio.run(run())
    assert portal.requests
    for r in portal.requests:
        assert r.headers["MAC"] == MAC
        assert r.headers["User-Agent"] == STB_USER_AGENT
        assert "mac=00:1A:79:00:00:01" in r.headers["Cookie"]
        assert r.url.params["JsHttpRequest"] == "1-xml"
    assert portal.requests[-1].headers["Authorization"] == "Bearer abc123"


def test_empty_envelope_is_token_missing(portal, session):
    portal.answers["handshake"] = {"js": {}}
    with pytest.raises(TokenMissing) as err:
        asyncio.run(session.open())
    assert err.value.step == "authenticate"
    assert session.state is State.FAILED


@pytest.mark.parametrize("answer", [
    httpx.Response(200, text="<html>not a portal</html>"),
    httpx.Response(500, text="oops"),
])
def test_handshake_failure(portal, session, answer):
    portal.answers["handshake"] = answer
    with pytest.raises(HandshakeFailed) as err:
        asyncio.run(session.handshake())
    assert err.value.step == "handshake"
    assert session.state is State.FAILED


def test_handshake_network_error(make_client):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    s = PortalSession(make_client(handler), ENDPOINT, Credential.from_mac(MAC))
    with pytest.raises(HandshakeFailed):
        asyncio.run(s.handshake())
    assert s.state is State.FAILED


def test_login_uses_do_auth(portal, make_client):
    s = PortalSession(make_client(portal), ENDPOINT, Credential.from_login("bob", "secret"))
    asyncio.run(s.open())
    auth = [r for r in portal.requests if r.url.params.get("action") == "do_auth"]
    assert len(auth) == 1
    assert auth[0].url.params["login"] == "bob"
    assert s.token == "abc123"


def test_login_refused(portal, make_client):
    portal.answers["do_auth"] = {"js": False}
    s = PortalSession(make_client(portal), ENDPOINT, Credential.from_login("bob", "bad"))
    with pytest.raises(AuthRejected):
        asyncio.run(s.open())
    assert s.state is State.FAILED


def test_catalog_fetch(session):
    async def run():
        await session.open()
        return await session.fetch_channels()

    chs = asyncio.run(run())
    assert [c.name for c in chs] == ["BBC One", "CNN"]
    assert [c.group for c in chs] == ["UK", "News"]
    assert all(c.stream.kind is StreamKind.COMMAND for c in chs)
    assert session.state is State.CATALOG_FETCHED


def test_rejection_reauthenticates_once(portal, session):
    async def run():
        await session.open()
        portal.reject["get_all_channels"] = 1
        return await session.fetch_channels()

    chs = asyncio.run(run())
    assert len(chs) == 2
    assert portal.calls["get_all_channels"] == 2
    assert portal.calls["handshake"] == 4
    assert session.state is State.CATALOG_FETCHED


def test_second_rejection_fails_session(portal, session):
    async def run():
        await session.open()
        portal.reject["get_all_channels"] = 2
        await session.fetch_channels()

    with pytest.raises(AuthRejected):
        asyncio.run(run())
    assert portal.calls["get_all_channels"] == 2
    assert session.state is State.FAILED
    with pytest.raises(SessionStateError):
        asyncio.run(session.fetch_channels())


def test_invalid_token_body_counts_as_rejection(portal, session):
    async def run():
        await session.open()
        portal.answers["get_all_channels"] = httpx.Response(200, text="Authorization failed.")
        try:
            await session.fetch_channels()
        finally:
            del portal.answers["get_all_channels"]

    with pytest.raises(AuthRejected):
        asyncio.run(run())
    assert portal.calls["get_all_channels"] == 2


def test_profile_failure_is_not_fatal(portal, session):
    portal.answers["get_profile"] = httpx.Response(500, text="boom")
    asyncio.run(session.open())
    assert session.state is State.PROFILE_FETCHED
    assert session.profile is None


def test_empty_list_is_empty_catalog(portal, session):
    portal.answers["get_all_channels"] = {"js": {"total_items": 0, "data": []}}

    async def run():
        await session.open()
        await session.fetch_channels()

    with pytest.raises(EmptyCatalog) as err:
        asyncio.run(run())
    assert err.value.step == "fetch_channels"
    assert session.state is State.PROFILE_FETCHED


def test_steps_out_of_order(session):
    with pytest.raises(SessionStateError):
        asyncio.run(session.fetch_channels())
    with pytest.raises(SessionStateError):
        asyncio.run(session.authenticate())
    assert session.state is State.NEW


def test_create_link(portal, session):
    async def run():
        await session.open()
        return await session.resolve_stream_link("ffrt http://localhost/ch/1")

    assert asyncio.run(run()) == "http://cdn.test/live/1.ts?t=x"
    [link] = [r for r in portal.requests if r.url.params.get("action") == "create_link"]
    assert link.url.params["cmd"] == "ffrt http://localhost/ch/1"


def test_create_link_without_url(portal, session):
    portal.answers["create_link"] = {"js": {"cmd": ""}}

    async def run():
        await session.open()
        await session.resolve_stream_link("ffrt http://localhost/ch/1")

    with pytest.raises(StreamLinkUnavailable) as err:
        asyncio.run(run())
    assert err.value.step == "create_link"


def test_cancellation_fails_session(portal, session):
    portal.hang.add("get_all_channels")

    async def run():
        await session.open()
        await asyncio.wait_for(session.fetch_channels(), 0.05)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run())
    assert session.state is State.FAILED
    assert session.failure.step == "fetch_channels"


@pytest.mark.parametrize("raw, expected", [
    ("ffmpeg http://h/x.ts", "http://h/x.ts"),
    ("ffrt  https://h/a.m3u8?t=1", "https://h/a.m3u8?t=1"),
    ("auto ://h/x.ts", "http://h/x.ts"),
    ("//h/x.ts", "http://h/x.ts"),
    ("ffmpeg http%3A%2F%2Fh%2Fx.ts", "http://h/x.ts"),
    ("rtmp://h/live", "rtmp://h/live"),
    ("ffmpeg", None),
    ("", None),
    (None, None),
])
def test_clean_stream_link(raw, expected):
    assert clean_stream_link(raw) == expected


def test_concurrent_rejections_share_one_relogin(portal, session):
    async def run():
        await session.open()
        portal.reject["create_link"] = 2
        gate = portal.gates["create_link"] = asyncio.Event()
        both = asyncio.gather(session.resolve_stream_link("ffrt http://localhost/ch/1"),
                              session.resolve_stream_link("ffrt http://localhost/ch/2"))
        while portal.calls["create_link"] < 2:
            await asyncio.sleep(0)
        gate.set()
        return await both

    links = asyncio.run(run())
    assert links == ["http://cdn.test/live/1.ts?t=x", "http://cdn.test/live/2.ts?t=x"]
    assert portal.calls["handshake"] == 4
    assert portal.calls["create_link"] == 4
    assert session.state is State.PROFILE_FETCHED
    assert session.token == "abc123"


def test_one_relogin_per_step_across_its_requests(portal, session):
    async def run():
        await session.open()
        portal.reject["get_all_channels"] = 1
        portal.reject["get_genres"] = 1
        await session.fetch_channels()

    with pytest.raises(AuthRejected) as err:
        asyncio.run(run())
    assert err.value.step == "fetch_genres"
    assert portal.calls["handshake"] == 4
    assert portal.calls["get_genres"] == 1
    assert session.state is State.FAILED
