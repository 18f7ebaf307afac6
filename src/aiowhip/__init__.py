# ruff: noqa: F401
import logging

from .configuration import WhipConfiguration
from .events import (
    CandidateGathered,
    ConnectionStateChanged,
    IceGatheringStateChanged,
    MediaEnded,
    NegotiationNeeded,
    OfferReady,
)
from .exceptions import (
    ConfigurationError,
    InvalidStateError,
    ProtocolError,
    TransportError,
    WhipError,
)
from .link import IceServerList, parse_link_header
from .media import AiortcMediaEngine, MediaEngine
from .sdp import IceCredentials, parse_offer
from .session import WhipSession, WhipState
from .transport import WhipResponse, WhipTransport
from .trickle import CandidateQueue, TrickleBatcher

__version__ = "0.1.0"

# Set default logging handler to avoid "No handler found" warnings.
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AiortcMediaEngine",
    "CandidateGathered",
    "CandidateQueue",
    "ConfigurationError",
    "ConnectionStateChanged",
    "IceCredentials",
    "IceGatheringStateChanged",
    "IceServerList",
    "InvalidStateError",
    "MediaEnded",
    "MediaEngine",
    "NegotiationNeeded",
    "OfferReady",
    "ProtocolError",
    "TransportError",
    "TrickleBatcher",
    "WhipConfiguration",
    "WhipError",
    "WhipResponse",
    "WhipSession",
    "WhipState",
    "WhipTransport",
    "parse_link_header",
    "parse_offer",
]
