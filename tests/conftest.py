import asyncio
from collections import Counter

import httpx
import pytest

GET_ALL_CHANNELS = {"js": {"total_items": 2, "data": [
    {"id": "1", "name": "BBC One", "number": "1", "cmd": "ffrt http://localhost/ch/1",
     "tv_genre_id": "10", "logo": "http://logo.test/bbc.png"},
    {"id": "2", "name": "CNN", "number": "2", "cmd": "ffrt http://localhost/ch/2",
     "tv_genre_id": "20"},
]}}

GENRES = {"js": [{"id": "10", "title": "UK"}, {"id": "20", "title": "News"}]}


def _json(data, status=200):
    return httpx.Response(status, json=data)


class FakePortal:
    """Stalker portal on ``/portal.php`` routed by the ``action`` query parameter.

    ``reject[action] = n`` answers the next n calls of that action with 401;
    ``answers[action]`` overrides the canned JSON for an action;
    ``hang`` is a set of actions that never answer;
    ``gates[action]`` holds that action until the event is set.
    """

    def __init__(self, token="abc123"):
        self.token = token
        self.requests = []
        self.reject = {}
        self.answers = {}
        self.hang = set()
        self.gates = {}

    @property
    def calls(self):
        return Counter(r.url.params.get("action") for r in self.requests)

    async def __call__(self, request):
        self.requests.append(request)
        action = request.url.params.get("action")
        if action in self.hang:
            await asyncio.sleep(30)
        if action in self.gates:
            await self.gates[action].wait()
        if self.reject.get(action):
            self.reject[action] -= 1
            return httpx.Response(401, text="Unauthorized")
        if action in self.answers:
            answer = self.answers[action]
            if isinstance(answer, httpx.Response):
                return httpx.Response(answer.status_code, content=answer.content,
                                      headers=answer.headers)
            return _json(answer)
        if action == "handshake":
            return _json({"js": {"token": self.token}})
        if action == "do_auth":
            return _json({"js": True})
        if action == "get_profile":
            return _json({"js": {"id": 7, "phone": "2031-01-01"}})
        if action == "get_all_channels":
            return _json(GET_ALL_CHANNELS)
        if action == "get_genres":
            return _json(GENRES)
        if action == "create_link":
            cmd = request.url.params.get("cmd", "")
            return _json({"js": {"cmd": "ffmpeg http://cdn.test/live/%s.ts?t=x" % cmd.rsplit("/", 1)[-1]}})
        return httpx.Response(404)


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
def make_client():
    def make(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return make


