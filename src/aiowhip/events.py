from dataclasses import dataclass
from typing import Union


@dataclass
class NegotiationNeeded:
    """
    The media engine is ready for an SDP offer to be created.
    """


@dataclass
class OfferReady:
    """
    An SDP offer requested with :meth:`MediaEngine.create_offer` is available.
    """

    sdp: str
    "The offer, as SDP text."


@dataclass
class CandidateGathered:
    """
    A local ICE candidate was gathered.
    """

    mline_index: int
    "The index of the media section the candidate belongs to."
    candidate: str
    "The candidate attribute value, e.g. `candidate:1 1 UDP ...`."


@dataclass
class IceGatheringStateChanged:
    state: str
    "One of `new`, `gathering` or `complete`."


@dataclass
class ConnectionStateChanged:
    """
    One of the transports of the media engine changed state.
    """

    kind: str
    "Either `peer`, `ice` or `dtls`."
    state: str
    "The new state, e.g. `connecting`, `connected`, `failed` or `closed`."


@dataclass
class MediaEnded:
    """
    A media source reached its end of stream.
    """

    kind: str


MediaEngineEvent = Union[
    NegotiationNeeded,
    OfferReady,
    CandidateGathered,
    IceGatheringStateChanged,
    ConnectionStateChanged,
    MediaEnded,
]
