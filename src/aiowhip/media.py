import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import unquote, urlsplit

from aiortc import (
    AudioStreamTrack,
    MediaStreamTrack,
    RTCBundlePolicy,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .configuration import is_stun_uri, is_turn_uri
from .events import (
    CandidateGathered,
    ConnectionStateChanged,
    IceGatheringStateChanged,
    MediaEnded,
    MediaEngineEvent,
    NegotiationNeeded,
    OfferReady,
)
from .exceptions import ConfigurationError, InvalidStateError
from .sdp import media_candidates

TEST_SOURCE = "test"

logger = logging.getLogger(__name__)


def ice_server_from_uri(uri: str) -> RTCIceServer:
    """
    Convert a `stun://host:port` or `turn(s)://user:pass@host:port` URI into
    an :class:`aiortc.RTCIceServer`.

    :raises ValueError: if the URI cannot be parsed.
    """
    parsed = urlsplit(uri)
    if not parsed.hostname:
        raise ValueError(f"malformed uri: {uri}")
    url = f"{parsed.scheme}:{parsed.hostname}"
    if parsed.port:
        url += f":{parsed.port}"
    if parsed.query:
        url += f"?{parsed.query}"
    return RTCIceServer(
        urls=url,
        username=unquote(parsed.username) if parsed.username else None,
        credential=unquote(parsed.password) if parsed.password else None,
    )


class MediaEngine(AsyncIOEventEmitter, ABC):
    """
    The boundary between a :class:`~aiowhip.session.WhipSession` and whatever
    produces, encodes and transmits the media.

    Engines report what happens by emitting an `"event"` with one of the
    objects from :mod:`aiowhip.events`, and are driven by the session through
    the methods below.
    """

    def __init__(self) -> None:
        super().__init__()
        self._stun_server: Optional[str] = None
        self._turn_servers: list[str] = []

    def add_turn_server(self, uri: str) -> bool:
        """
        Add a TURN server, as `turn(s)://username:password@host:port`.
        """
        if not is_turn_uri(uri):
            return False
        self._turn_servers.append(uri)
        return True

    def set_stun_server(self, uri: str) -> bool:
        if not is_stun_uri(uri):
            return False
        self._stun_server = uri
        return True

    def _emit_event(self, event: MediaEngineEvent) -> None:
        self.emit("event", event)

    @abstractmethod
    async def start(self) -> None:
        """
        Set up the media, which eventually leads to :class:`NegotiationNeeded`.
        """

    @abstractmethod
    async def create_offer(self) -> None:
        """
        Create an offer, which is reported with :class:`OfferReady`.
        """

    @abstractmethod
    async def set_local_description(self, sdp: str) -> None: ...

    @abstractmethod
    async def set_remote_description(self, sdp: str) -> None: ...

    @abstractmethod
    async def add_ice_candidate(self, mline_index: int, candidate: str) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class AiortcMediaEngine(MediaEngine):
    """
    A :class:`MediaEngine` publishing media with an aiortc
    :class:`~aiortc.RTCPeerConnection`.

    Sources are files or devices opened with
    :class:`~aiortc.contrib.media.MediaPlayer`, or `"test"` for generated
    silence / frames.

    aiortc gathers all candidates while setting the local description, they
    are then reported one by one as if they had been trickled.
    """

    def __init__(
        self,
        audio: Optional[str] = None,
        video: Optional[str] = None,
        audio_format: Optional[str] = None,
        video_format: Optional[str] = None,
        force_relay: bool = False,
    ) -> None:
        super().__init__()
        self.force_relay = force_relay

        self.__dtls_transports: set = set()
        self.__pc: Optional[RTCPeerConnection] = None
        self.__pending_candidates: list[tuple[int, str]] = []
        self.__remote_sdp: Optional[str] = None
        self.__sources = [
            ("audio", audio, audio_format),
            ("video", video, video_format),
        ]
        self.__tracks: list[MediaStreamTrack] = []

    @property
    def pc(self) -> RTCPeerConnection:
        if self.__pc is None:
            raise InvalidStateError("AiortcMediaEngine is not started")
        return self.__pc

    def get_ice_servers(self) -> list[RTCIceServer]:
        servers = []
        uris = [self._stun_server] if self._stun_server else []
        # aiortc only uses the first TURN server
        uris += self._turn_servers[:1]
        if len(self._turn_servers) > 1:
            logger.warning(
                "Only one TURN server is supported, ignoring %d",
                len(self._turn_servers) - 1,
            )
        for uri in uris:
            try:
                servers.append(ice_server_from_uri(uri))
            except ValueError:
                logger.warning("Error adding ICE server (%s)", uri)
        return servers

    async def start(self) -> None:
        if self.__pc is not None:
            return
        pc = RTCPeerConnection(
            RTCConfiguration(
                iceServers=self.get_ice_servers(),
                bundlePolicy=RTCBundlePolicy.MAX_BUNDLE,
            )
        )
        self.__pc = pc

        @pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            self._emit_event(ConnectionStateChanged("peer", pc.connectionState))

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange() -> None:
            self._emit_event(ConnectionStateChanged("ice", pc.iceConnectionState))

        for kind, source, source_format in self.__sources:
            if source:
                track = self.__create_track(kind, source, source_format)
                self.__watch_track(track)
                pc.addTransceiver(track, direction="sendonly")
                self.__tracks.append(track)

        self._emit_event(NegotiationNeeded())

    async def create_offer(self) -> None:
        offer = await self.pc.createOffer()
        self._emit_event(OfferReady(offer.sdp))

    async def set_local_description(self, sdp: str) -> None:
        self._emit_event(IceGatheringStateChanged("gathering"))
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type="offer"))

        for transceiver in self.pc.getTransceivers():
            self.__watch_dtls(transceiver.sender.transport)

        for mline_index, candidate in media_candidates(self.pc.localDescription.sdp):
            if self.force_relay and " typ relay" not in candidate:
                continue
            self._emit_event(CandidateGathered(mline_index, candidate))
        self._emit_event(IceGatheringStateChanged("complete"))

    async def set_remote_description(self, sdp: str) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        self.__remote_sdp = sdp

        pending, self.__pending_candidates = self.__pending_candidates, []
        for mline_index, candidate in pending:
            # candidates from the answer itself are already known
            if f"a={candidate}" not in sdp:
                await self.add_ice_candidate(mline_index, candidate)

    async def add_ice_candidate(self, mline_index: int, candidate: str) -> None:
        if self.__remote_sdp is None:
            self.__pending_candidates.append((mline_index, candidate))
            return

        ice_candidate = candidate_from_sdp(candidate.split(":", 1)[1])
        ice_candidate.sdpMLineIndex = mline_index
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        for track in self.__tracks:
            track.remove_all_listeners("ended")
            track.stop()
        self.__tracks = []
        if self.__pc is not None:
            await self.__pc.close()

    def __create_track(
        self, kind: str, source: str, source_format: Optional[str]
    ) -> MediaStreamTrack:
        if source == TEST_SOURCE:
            return AudioStreamTrack() if kind == "audio" else VideoStreamTrack()

        player = MediaPlayer(source, format=source_format)
        track = player.audio if kind == "audio" else player.video
        if track is None:
            raise ConfigurationError(f"No {kind} found in '{source}'")
        return track

    def __watch_dtls(self, transport) -> None:
        if transport in self.__dtls_transports:
            return
        self.__dtls_transports.add(transport)

        @transport.on("statechange")
        def on_statechange() -> None:
            self._emit_event(ConnectionStateChanged("dtls", transport.state))

    def __watch_track(self, track: MediaStreamTrack) -> None:
        @track.on("ended")
        def on_ended() -> None:
            self._emit_event(MediaEnded(track.kind))
