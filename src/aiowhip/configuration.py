import logging
from dataclasses import dataclass, field
from typing import Optional

from .exceptions import ConfigurationError
from .link import IceServerList
from .transport import MAX_REDIRECTS
from .trickle import TRICKLE_INTERVAL

logger = logging.getLogger(__name__)


def is_stun_uri(uri: str) -> bool:
    return uri.startswith("stun://")


def is_turn_uri(uri: str) -> bool:
    return uri.startswith("turn://") or uri.startswith("turns://")


@dataclass
class WhipConfiguration:
    """
    The :class:`WhipConfiguration` dictionary holds the options of a
    :class:`~aiowhip.session.WhipSession`.
    """

    url: Optional[str] = None
    "The address of the WHIP endpoint (required)."
    token: Optional[str] = None
    "A bearer token to authenticate with."
    trickle: bool = True
    "Whether to trickle candidates using HTTP PATCH or put them in the offer."
    follow_link: bool = False
    "Whether to configure STUN / TURN servers from the endpoint's Link headers."
    stun_server: Optional[str] = None
    "A STUN server, as `stun://hostname:port`."
    turn_servers: list[str] = field(default_factory=list)
    "TURN servers, as `turn(s)://username:password@host:port?transport=udp`."
    force_relay: bool = False
    "Only use relayed candidates."
    audio: Optional[str] = None
    "The audio source: a file or device understood by FFmpeg, or `test`."
    audio_format: Optional[str] = None
    video: Optional[str] = None
    "The video source: a file or device understood by FFmpeg, or `test`."
    video_format: Optional[str] = None
    trickle_interval: float = TRICKLE_INTERVAL
    "How often queued candidates are sent, in seconds."
    max_redirects: int = MAX_REDIRECTS
    timeout: Optional[float] = 30.0
    "Time limit for a single HTTP request, in seconds, or `None`."

    @property
    def kind(self) -> str:
        """
        The media kind advertised in trickle fragments.
        """
        return "audio" if self.audio else "video"

    @property
    def ice_servers(self) -> IceServerList:
        return IceServerList(
            stun_server=self.stun_server, turn_servers=list(self.turn_servers)
        )

    def validate(self) -> None:
        """
        Check the configuration, dropping unusable STUN / TURN servers.

        :raises ConfigurationError: if the endpoint or media sources are missing.
        """
        if not self.url:
            raise ConfigurationError("The address of the WHIP endpoint is required")
        if not self.audio and not self.video:
            raise ConfigurationError("At least one of audio or video is required")

        if self.stun_server is not None and not is_stun_uri(self.stun_server):
            logger.warning(
                "Invalid STUN address (should be stun://hostname:port): %s",
                self.stun_server,
            )
            self.stun_server = None

        turn_servers = []
        for uri in self.turn_servers:
            if is_turn_uri(uri):
                turn_servers.append(uri)
            else:
                logger.warning(
                    "Invalid TURN address (should be "
                    "turn(s)://username:password@host:port?transport=[udp,tcp]): %s",
                    uri,
                )
        self.turn_servers = turn_servers

        if self.force_relay and not self.follow_link and not self.turn_servers:
            logger.warning("Can't force TURN, no TURN servers provided")
            self.force_relay = False
