import asyncio
import enum
import logging
import os
import signal
import threading
from typing import Optional

from .configuration import WhipConfiguration
from .events import (
    CandidateGathered,
    ConnectionStateChanged,
    IceGatheringStateChanged,
    MediaEnded,
    MediaEngineEvent,
    NegotiationNeeded,
    OfferReady,
)
from .exceptions import InvalidStateError, ProtocolError, TransportError
from .link import IceServerList, parse_link_header
from .media import MediaEngine
from .sdp import (
    IceCredentials,
    add_candidates,
    candidate_component,
    candidates_from_answer,
    force_sendonly,
    parse_offer,
)
from .transport import WhipTransport, resolve_url
from .trickle import CandidateQueue, TrickleBatcher

SDP_CONTENT_TYPE = "application/sdp"

logger = logging.getLogger(__name__)


class WhipState(enum.Enum):
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTION_ERROR = 2
    CONNECTED = 3
    PUBLISHING = 4
    OFFER_PREPARED = 5
    STARTED = 6
    API_ERROR = 7
    ERROR = 8


FAILED_STATES = (WhipState.CONNECTION_ERROR, WhipState.API_ERROR, WhipState.ERROR)


class WhipSession:
    """
    A WHIP publishing session.

    The session consumes the events of a :class:`~aiowhip.media.MediaEngine`,
    exchanges the offer and answer with the WHIP endpoint, trickles local
    candidates and tears the resource down on disconnection.

    :param configuration: A validated :class:`WhipConfiguration`.
    :param engine: The :class:`~aiowhip.media.MediaEngine` to drive.
    """

    def __init__(
        self,
        configuration: WhipConfiguration,
        engine: MediaEngine,
        transport: Optional[WhipTransport] = None,
    ) -> None:
        assert configuration.url is not None, "configuration must be validated"
        self.candidates = CandidateQueue()
        self.configuration = configuration
        self.credentials = IceCredentials()
        self.engine = engine
        self.resource_url: Optional[str] = None
        self.transport = transport or WhipTransport(
            configuration.url,
            token=configuration.token,
            max_redirects=configuration.max_redirects,
            timeout=configuration.timeout,
        )

        self.__batcher: Optional[TrickleBatcher] = None
        self.__disconnect_lock = threading.Lock()
        self.__done = asyncio.Event()
        self.__events: asyncio.Queue[MediaEngineEvent] = asyncio.Queue()
        self.__gathering_done = False
        self.__loop: Optional[asyncio.AbstractEventLoop] = None
        self.__offer: Optional[str] = None
        self.__shutdown: Optional[asyncio.Future] = None
        self.__state = WhipState.DISCONNECTED
        self.__stop = 0

    @property
    def batcher(self) -> Optional[TrickleBatcher]:
        return self.__batcher

    @property
    def disconnected(self) -> bool:
        return self.__disconnect_lock.locked()

    @property
    def etag(self) -> Optional[str]:
        return self.transport.etag

    @property
    def state(self) -> WhipState:
        return self.__state

    @property
    def url(self) -> str:
        return self.transport.server_url

    async def options(self) -> IceServerList:
        """
        Ask the endpoint which STUN / TURN servers to use, using the Link
        headers of an OPTIONS response.
        """
        servers = IceServerList()
        response = await self.transport.send("OPTIONS", self.url)
        if response.status not in (200, 204):
            logger.warning(
                " [%d] %s", response.status, response.reason or "HTTP error"
            )
            return servers

        links = response.headers.getall("Link", [])
        if not links:
            logger.warning("No Link headers in OPTIONS response")
            return servers

        logger.info("Auto configuration of STUN/TURN servers:")
        return parse_link_header(", ".join(links), servers)

    async def run(self) -> None:
        """
        Publish until the session is disconnected.
        """
        self.__loop = asyncio.get_running_loop()
        self.__setState(WhipState.CONNECTING)

        if self.configuration.follow_link:
            servers = await self.options()
        else:
            servers = self.configuration.ice_servers
        self.__configure_ice_servers(servers)
        self.__setState(WhipState.CONNECTED)

        self.engine.on("event", self.post_event)
        dispatcher = asyncio.ensure_future(self.__dispatch())
        try:
            self.__setState(WhipState.PUBLISHING)
            try:
                await self.engine.start()
            except Exception:
                self.__setState(WhipState.CONNECTION_ERROR)
                raise
            await self.__done.wait()
        finally:
            dispatcher.cancel()
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> None:
        await self.__done.wait()

    def install_signal_handlers(
        self, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        if loop is None:
            loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.handle_signal)

    def handle_signal(self) -> None:
        """
        Start a graceful shutdown, or exit right away if signalled repeatedly.
        """
        logger.info("Stopping the WHIP client...")
        if self.__stop == 0:
            self.__stop = 1
            self.__shutdown = asyncio.ensure_future(self.disconnect("Shutting down"))
            self.__shutdown.add_done_callback(self.__shutdown_done)
        else:
            self.__stop += 1
            if self.__stop > 2:
                os._exit(1)

    def post_event(self, event: MediaEngineEvent) -> None:
        """
        Queue an event from the media engine, from any thread.
        """
        loop = self.__loop
        if loop is not None and not self.__in_loop(loop):
            loop.call_soon_threadsafe(self.__events.put_nowait, event)
        else:
            self.__events.put_nowait(event)

    async def handle_event(self, event: MediaEngineEvent) -> None:
        if isinstance(event, NegotiationNeeded):
            await self._handle_negotiation_needed()
        elif isinstance(event, OfferReady):
            await self._handle_offer_ready(event)
        elif isinstance(event, CandidateGathered):
            await self._handle_candidate(event)
        elif isinstance(event, IceGatheringStateChanged):
            await self._handle_ice_gathering_state(event)
        elif isinstance(event, ConnectionStateChanged):
            await self._handle_connection_state(event)
        elif isinstance(event, MediaEnded):
            await self.disconnect("Shutting down (EOS)")
        else:
            raise TypeError(f"Unexpected event {event!r}")

    async def connect(self, offer: str) -> None:
        """
        Send the offer to the endpoint and apply the answer.

        Failures are logged and lead to a disconnection.
        """
        try:
            await self.__connect(offer)
        except ProtocolError as exc:
            logger.error("%s", exc)
            self.__setState(WhipState.API_ERROR)
            await self.disconnect("SDP error")
        except TransportError as exc:
            logger.error("%s", exc)
            self.__setState(WhipState.API_ERROR)
            await self.disconnect("HTTP error")

    async def disconnect(self, reason: str) -> None:
        """
        Delete the WHIP resource, if any, and end the session.

        Only the first call has an effect.
        """
        if not self.__disconnect_lock.acquire(blocking=False):
            return

        logger.info("Disconnecting from server (%s)", reason)
        try:
            try:
                if self.__batcher is not None:
                    await self.__batcher.stop()
            finally:
                await self.__delete_resource()
        finally:
            if self.__state not in FAILED_STATES:
                self.__setState(WhipState.DISCONNECTED)
            self.__done.set()

    async def _handle_negotiation_needed(self) -> None:
        if self.resource_url is not None:
            logger.warning(
                "Trying to create a new offer, but renegotiations are not supported"
            )
            return

        logger.info("Creating offer")
        self.__setState(WhipState.OFFER_PREPARED)
        await self.engine.create_offer()

    async def _handle_offer_ready(self, event: OfferReady) -> None:
        logger.info("Offer created")
        if self.__state != WhipState.OFFER_PREPARED:
            raise InvalidStateError(
                f"Offer ready in state {self.__state.name}, "
                f"expected {WhipState.OFFER_PREPARED.name}"
            )

        logger.info("Setting local description")
        await self.engine.set_local_description(event.sdp)
        self.__offer = event.sdp

        # without trickle, the offer waits for all the candidates
        if self.configuration.trickle or self.__gathering_done:
            await self.__connect_pending_offer()

    async def _handle_candidate(self, event: CandidateGathered) -> None:
        if self.__stop or self.disconnected:
            return
        if self.__state.value < WhipState.OFFER_PREPARED.value:
            await self.disconnect("Can't trickle, not in a PeerConnection")
            return

        # with bundling, only the first component of the first m-line matters
        if event.mline_index != 0 or candidate_component(event.candidate) != 1:
            return

        logger.debug("Queueing candidate: %s", event.candidate)
        self.candidates.put(event.candidate)

    async def _handle_ice_gathering_state(
        self, event: IceGatheringStateChanged
    ) -> None:
        if event.state == "gathering":
            logger.info("ICE gathering started...")
        elif event.state == "complete":
            logger.info("ICE gathering completed")
            self.candidates.put_end_of_candidates()
            self.__gathering_done = True
            if not self.configuration.trickle:
                await self.__connect_pending_offer()

    async def _handle_connection_state(self, event: ConnectionStateChanged) -> None:
        kind, state = event.kind, event.state
        if kind == "dtls" and state == "closed":
            logger.info("DTLS connection closed")
            await self.disconnect("PeerConnection closed")
        elif state == "failed":
            label = {"peer": "PeerConnection", "ice": "ICE", "dtls": "DTLS"}.get(
                kind, kind
            )
            logger.error("%s failed", label)
            self.__setState(WhipState.ERROR)
            await self.disconnect(f"{label} failed")
        else:
            logger.info("%s connection state: %s", kind, state)

    async def __connect(self, offer: str) -> None:
        configuration = self.configuration
        logger.info("Sending SDP offer (%d bytes)", len(offer))

        sdp = offer
        if not configuration.trickle:
            candidates = self.candidates.drain()
            for candidate in candidates:
                logger.debug("Adding candidate to SDP: %s", candidate)
            sdp = add_candidates(sdp, candidates)
        sdp = force_sendonly(sdp)
        logger.debug("%s", sdp)

        self.credentials = parse_offer(sdp)

        response = await self.transport.send("POST", self.url, sdp, SDP_CONTENT_TYPE)
        if response.status != 201:
            if response.status == 0:
                self.__setState(WhipState.CONNECTION_ERROR)
            raise TransportError(
                f" [{response.status}] {response.reason or 'HTTP error'}"
            )
        if response.content_type != SDP_CONTENT_TYPE:
            raise TransportError(f"Unexpected content-type '{response.content_type}'")
        answer = response.body
        if not answer.startswith("v=0\r\n"):
            raise ProtocolError("Missing or invalid SDP answer")

        etag = response.headers.get("ETag")
        if etag is None:
            logger.warning(
                "No ETag header, won't be able to set If-Match when trickling"
            )
        else:
            self.transport.etag = etag

        location = response.headers.get("Location")
        if location is None:
            logger.warning(
                "No Location header, won't be able to trickle or teardown the session"
            )
        else:
            self.resource_url = resolve_url(self.url, location)
            logger.info("Resource URL: %s", self.resource_url)

        if configuration.trickle and self.resource_url is not None:
            self.__batcher = TrickleBatcher(
                self.candidates,
                self.transport,
                self.resource_url,
                self.credentials,
                kind=configuration.kind,
                interval=configuration.trickle_interval,
            )
            self.__batcher.start()

        logger.info("Received SDP answer (%d bytes)", len(answer))
        logger.debug("%s", answer)

        # answers to a trickled offer may still carry candidates
        for candidate in candidates_from_answer(answer):
            logger.debug("  -- Found candidate: %s", candidate)
            await self.engine.add_ice_candidate(0, candidate)

        logger.info("Setting remote description")
        try:
            await self.engine.set_remote_description(answer)
        except ValueError as exc:
            raise ProtocolError(f"Error parsing SDP answer: {exc}") from exc
        self.__setState(WhipState.STARTED)

    async def __connect_pending_offer(self) -> None:
        offer, self.__offer = self.__offer, None
        if offer is not None:
            await self.connect(offer)

    def __configure_ice_servers(self, servers: IceServerList) -> None:
        if servers.stun_server is not None:
            if not self.engine.set_stun_server(servers.stun_server):
                logger.warning("Error setting STUN server (%s)", servers.stun_server)
        for uri in servers.turn_servers:
            if not self.engine.add_turn_server(uri):
                logger.warning("Error adding TURN server (%s)", uri)

    async def __delete_resource(self) -> None:
        if self.resource_url is None:
            return
        response = await self.transport.send("DELETE", self.resource_url)
        if response.status != 200:
            logger.warning(
                " [%d] %s", response.status, response.reason or "HTTP error"
            )

    async def __dispatch(self) -> None:
        while True:
            event = await self.__events.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Error handling %s", event.__class__.__name__)
                self.__setState(WhipState.ERROR)
                await self.disconnect("Internal error")

    @staticmethod
    def __in_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def __shutdown_done(self, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Shutting down failed", exc_info=task.exception())

    def __log_debug(self, msg: str, *args: object) -> None:
        logger.debug(f"WhipSession(%s) {msg}", self.url, *args)

    def __setState(self, state: WhipState) -> None:
        if self.__state in FAILED_STATES or state == self.__state:
            return
        self.__log_debug("- %s -> %s", self.__state.name, state.name)
        self.__state = state
