import asyncio

import httpx
import pytest

from portal_resolver.errors import NoReachableEndpoint
from portal_resolver.prober import CONVENTIONS, EndpointProber


def _prober(make_client, handler):
    return EndpointProber(make_client(handler))


def test_stops_at_first_answering_path(make_client):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path == CONVENTIONS[2].path:
            return httpx.Response(200, text="ok")
        return httpx.Response(404)

    result = asyncio.run(_prober(make_client, handler).probe("portal.test"))
    assert result.convention == CONVENTIONS[2]
    assert result.endpoint == "http://portal.test" + CONVENTIONS[2].path
    assert seen == [c.path for c in CONVENTIONS[:3]]
    assert [a.status for a in result.attempts] == [404, 404, 200]


def test_network_errors_are_recorded_and_skipped(make_client):
    def handler(request):
        if request.url.path == CONVENTIONS[0].path:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == CONVENTIONS[1].path:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200)

    result = asyncio.run(_prober(make_client, handler).probe("http://portal.test"))
    assert result.convention == CONVENTIONS[2]
    first, second, third = result.attempts
    assert "refused" in first.error and first.status is None
    assert second.error
    assert third.status == 200 and third.error is None


def test_no_content_is_not_an_answer(make_client):
    def handler(request):
        if request.url.path == CONVENTIONS[0].path:
            return httpx.Response(204)
        return httpx.Response(200)

    result = asyncio.run(_prober(make_client, handler).probe("http://portal.test"))
    assert result.convention == CONVENTIONS[1]


def test_nothing_answers(make_client):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(503)

    with pytest.raises(NoReachableEndpoint) as err:
        asyncio.run(_prober(make_client, handler).probe("http://portal.test"))
    assert len(err.value.attempts) == len(CONVENTIONS)
    assert seen == [c.path for c in CONVENTIONS]
    assert err.value.step == "probe"


def test_pasted_api_path_is_stripped(make_client):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200)

    result = asyncio.run(_prober(make_client, handler).probe("portal.test:8080/stalker_portal/c/"))
    assert seen == ["http://portal.test:8080/portal.php"]
    assert result.base_url == "http://portal.test:8080"
