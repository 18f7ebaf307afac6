import asyncio
import functools
import logging
import os
import unittest
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Optional, ParamSpec, TypeVar, cast

from aiohttp import web
from aiohttp.test_utils import TestServer
from multidict import CIMultiDict, CIMultiDictProxy

from aiowhip.configuration import WhipConfiguration
from aiowhip.events import (
    CandidateGathered,
    IceGatheringStateChanged,
    NegotiationNeeded,
    OfferReady,
)
from aiowhip.media import MediaEngine
from aiowhip.transport import WhipResponse

P = ParamSpec("P")
T = TypeVar("T")


def lf2crlf(x: str) -> str:
    return x.replace("\n", "\r\n")


OFFER = lf2crlf(
    """v=0
o=- 3846431616 3846431616 IN IP4 0.0.0.0
s=-
t=0 0
a=group:BUNDLE 0 1
a=msid-semantic:WMS *
m=audio 9 UDP/TLS/RTP/SAVPF 96 0 8
c=IN IP4 0.0.0.0
a=sendrecv
a=mid:0
a=msid:aa bb
a=rtcp:9 IN IP4 0.0.0.0
a=rtcp-mux
a=rtpmap:96 opus/48000/2
a=ice-ufrag:Ufrag
a=ice-pwd:SomeIcePassword
a=fingerprint:sha-256 AA:BB:CC
a=setup:actpass
m=video 9 UDP/TLS/RTP/SAVPF 97
c=IN IP4 0.0.0.0
a=sendrecv
a=mid:1
a=rtcp:9 IN IP4 0.0.0.0
a=rtcp-mux
a=rtpmap:97 VP8/90000
a=ice-ufrag:Ufrag
a=ice-pwd:SomeIcePassword
a=fingerprint:sha-256 AA:BB:CC
a=setup:actpass
"""
)

ANSWER = lf2crlf(
    """v=0
o=- 1 1 IN IP4 10.0.0.1
s=-
t=0 0
a=group:BUNDLE 0 1
m=audio 9 UDP/TLS/RTP/SAVPF 96
c=IN IP4 0.0.0.0
a=recvonly
a=mid:0
a=ice-ufrag:Remote
a=ice-pwd:RemotePassword
a=candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host
a=candidate:2 1 udp 1694498815 192.0.2.1 5000 typ srflx raddr 10.0.0.1 rport 5000
m=video 9 UDP/TLS/RTP/SAVPF 97
c=IN IP4 0.0.0.0
a=recvonly
a=mid:1
a=candidate:3 1 udp 2130706431 10.0.0.1 5002 typ host
"""
)

CANDIDATE_HOST = "candidate:0 1 UDP 2122252543 192.168.1.2 50000 typ host"
CANDIDATE_HOST_RTCP = "candidate:0 2 UDP 2122252542 192.168.1.2 50001 typ host"
CANDIDATE_SRFLX = (
    "candidate:1 1 UDP 1686052863 198.51.100.7 50000 typ srflx "
    "raddr 192.168.1.2 rport 50000"
)


class TestCase(unittest.TestCase):
    def ensureIsInstance(self, obj: object, cls: type[T]) -> T:
        self.assertIsInstance(obj, cls)
        return cast(T, obj)


def asynctest(
    coro: Callable[P, Coroutine[None, None, None]],
) -> Callable[P, None]:
    @functools.wraps(coro)
    def wrap(*args: P.args, **kwargs: P.kwargs) -> None:
        asyncio.run(coro(*args, **kwargs))

    return wrap


async def wait_until(predicate: Callable[[], bool], timeout: float = 5) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def make_configuration(url: str, **kwargs: object) -> WhipConfiguration:
    kwargs.setdefault("video", "test")
    kwargs.setdefault("trickle_interval", 0.01)
    configuration = WhipConfiguration(url=url, **kwargs)  # type: ignore
    configuration.validate()
    return configuration


def make_response(
    status: int, body: str = "", headers: Optional[dict[str, str]] = None
) -> WhipResponse:
    return WhipResponse(
        status=status,
        reason="",
        headers=CIMultiDictProxy(CIMultiDict(headers or {})),
        body=body,
    )


def answer_response(**headers: str) -> WhipResponse:
    values = {
        "Content-Type": "application/sdp",
        "Location": "/resource/42",
        "ETag": '"abc"',
    }
    values.update(headers)
    return make_response(
        201, ANSWER, {k: v for k, v in values.items() if v is not None}
    )


@dataclass
class SentRequest:
    method: str
    url: str
    payload: Optional[str]
    content_type: Optional[str]
    etag: Optional[str]


class DummyTransport:
    """
    Stands in for :class:`aiowhip.transport.WhipTransport`, answering with
    canned responses per method and recording what is sent.
    """

    def __init__(
        self,
        server_url: str,
        responses: Optional[dict[str, WhipResponse]] = None,
    ) -> None:
        self.closed = False
        self.etag: Optional[str] = None
        self.requests: list[SentRequest] = []
        self.server_url = server_url
        self.responses = {
            "OPTIONS": make_response(204),
            "POST": answer_response(),
            "PATCH": make_response(204),
            "DELETE": make_response(200),
        }
        self.responses.update(responses or {})

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    async def close(self) -> None:
        self.closed = True

    async def send(
        self,
        method: str,
        url: str,
        payload: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> WhipResponse:
        self.requests.append(
            SentRequest(method, url, payload, content_type, self.etag)
        )
        return self.responses[method]


class DummyMediaEngine(MediaEngine):
    """
    A media engine which records the commands it receives and reports a
    fixed offer and set of candidates.
    """

    def __init__(
        self,
        offer: str = OFFER,
        candidates: Optional[list[tuple[int, str]]] = None,
        gather: bool = True,
    ) -> None:
        super().__init__()
        self.candidates = (
            [(0, CANDIDATE_HOST), (0, CANDIDATE_HOST_RTCP), (1, CANDIDATE_HOST)]
            if candidates is None
            else candidates
        )
        self.commands: list[tuple] = []
        self.gather = gather
        self.local_sdp: Optional[str] = None
        self.offer = offer
        self.remote_candidates: list[tuple[int, str]] = []
        self.remote_sdp: Optional[str] = None

    def command_names(self) -> list[str]:
        return [c[0] for c in self.commands]

    async def start(self) -> None:
        self.commands.append(("start",))
        self._emit_event(NegotiationNeeded())

    async def create_offer(self) -> None:
        self.commands.append(("create_offer",))
        self._emit_event(OfferReady(self.offer))

    async def set_local_description(self, sdp: str) -> None:
        self.commands.append(("set_local_description", sdp))
        self.local_sdp = sdp
        if self.gather:
            self._emit_event(IceGatheringStateChanged("gathering"))
            for mline_index, candidate in self.candidates:
                self._emit_event(CandidateGathered(mline_index, candidate))
            self._emit_event(IceGatheringStateChanged("complete"))

    async def set_remote_description(self, sdp: str) -> None:
        self.commands.append(("set_remote_description", sdp))
        self.remote_sdp = sdp

    async def add_ice_candidate(self, mline_index: int, candidate: str) -> None:
        self.commands.append(("add_ice_candidate", mline_index, candidate))
        self.remote_candidates.append((mline_index, candidate))

    async def close(self) -> None:
        self.commands.append(("close",))


@dataclass
class ReceivedRequest:
    method: str
    path: str
    headers: CIMultiDictProxy
    body: str


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class DummyWhipServer:
    """
    A local WHIP endpoint recording the requests it receives.

    Handlers can be replaced per method through :attr:`handlers`.
    """

    def __init__(
        self,
        location: str = "/resource/42",
        etag: Optional[str] = '"abc"',
        links: Optional[list[str]] = None,
    ) -> None:
        self.etag = etag
        self.links = links or []
        self.location = location
        self.requests: list[ReceivedRequest] = []
        self.handlers: dict[str, Handler] = {
            "OPTIONS": self.handle_options,
            "POST": self.handle_post,
            "PATCH": self.handle_patch,
            "DELETE": self.handle_delete,
        }

        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        self.server = TestServer(app)

    async def __aenter__(self) -> "DummyWhipServer":
        await self.server.start_server()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.server.close()

    def url(self, path: str = "/whip/endpoint") -> str:
        return str(self.server.make_url(path))

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    def requests_for(self, method: str) -> list[ReceivedRequest]:
        return [r for r in self.requests if r.method == method]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.text()
        self.requests.append(
            ReceivedRequest(request.method, request.path, request.headers, body)
        )
        return await self.handlers[request.method](request)

    async def handle_options(self, request: web.Request) -> web.StreamResponse:
        headers: CIMultiDict[str] = CIMultiDict()
        for link in self.links:
            headers.add("Link", link)
        return web.Response(status=204, headers=headers)

    async def handle_post(self, request: web.Request) -> web.StreamResponse:
        headers = {"Location": self.location}
        if self.etag is not None:
            headers["ETag"] = self.etag
        return web.Response(
            status=201,
            body=ANSWER.encode("utf8"),
            content_type="application/sdp",
            headers=headers,
        )

    async def handle_patch(self, request: web.Request) -> web.StreamResponse:
        return web.Response(status=204)

    async def handle_delete(self, request: web.Request) -> web.StreamResponse:
        return web.Response(status=200)


if os.environ.get("AIOWHIP_DEBUG"):
    logging.basicConfig(level=logging.DEBUG)
