"""
Line-oriented helpers for the few SDP manipulations a WHIP publisher needs.

Offers and answers are handled as text, and only the attributes relevant to
ICE are looked at.
"""
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .exceptions import ProtocolError

END_OF_CANDIDATES = "end-of-candidates"


@dataclass
class IceCredentials:
    """
    The ICE credentials and media identifier of the bundled media section
    of an offer, needed to build trickle fragments.
    """

    ufrag: Optional[str] = None
    "ICE username fragment."
    pwd: Optional[str] = None
    "ICE password."
    first_mid: Optional[str] = None
    "The `a=mid` of the first media section."


def iter_lines(sdp: str) -> Iterator[str]:
    for line in sdp.split("\n"):
        line = line.rstrip("\r")
        if line:
            yield line


def parse_attr(line: str) -> tuple[str, Optional[str]]:
    if ":" in line:
        name, value = line[2:].split(":", 1)
        return name.lower(), value or None
    return line[2:].lower(), None


def parse_offer(sdp: str) -> IceCredentials:
    """
    Extract the ICE credentials and first media identifier from an offer.

    Session-level `a=ice-ufrag` / `a=ice-pwd` are overridden by those of the
    first media section, and the scan stops at the second media section.

    :raises ProtocolError: if a line is malformed or the ICE credentials are
        missing.
    """
    ufrag = pwd = mid = None
    in_media = False
    for line in iter_lines(sdp):
        if len(line) < 3:
            raise ProtocolError(f"Invalid line ({len(line)} bytes): {line}")
        if line[1] != "=":
            raise ProtocolError(f"Invalid line (2nd char is not '='): {line}")

        if line[0] == "m":
            if in_media:
                break
            in_media = True
        elif line[0] == "a":
            name, value = parse_attr(line)
            if value is None:
                continue
            if name == "ice-ufrag":
                ufrag = value
            elif name == "ice-pwd":
                pwd = value
            elif name == "mid" and in_media:
                mid = value

    if ufrag is None or pwd is None:
        raise ProtocolError("Missing ICE credentials")
    return IceCredentials(ufrag=ufrag, pwd=pwd, first_mid=mid)


def add_candidates(sdp: str, candidates: Iterable[str]) -> str:
    """
    Append `a=` lines for the given candidates to every media section.
    """
    attributes = "".join(f"a={c}\r\n" for c in candidates)
    expanded = ""
    mlines = 0
    for line in iter_lines(sdp):
        if line.startswith("m="):
            mlines += 1
            if mlines > 1:
                expanded += attributes
        if len(line) > 2:
            expanded += line + "\r\n"
    return expanded + attributes


def force_sendonly(sdp: str) -> str:
    """
    Turn `sendrecv` into `sendonly`, which some WHIP servers insist on.
    """
    return sdp.replace("sendrecv", "sendonly")


def candidate_component(candidate: str) -> int:
    """
    Return the ICE component of a candidate attribute value, or 0.
    """
    bits = candidate.split(" ")
    if len(bits) < 2:
        return 0
    try:
        return int(bits[1])
    except ValueError:
        return 0


def candidates_from_answer(sdp: str) -> list[str]:
    """
    Return the `a=candidate` values found in the first media section.
    """
    candidates = []
    mlines = 0
    for line in iter_lines(sdp):
        if line.startswith("m="):
            mlines += 1
            if mlines > 1:
                break
        elif mlines == 1 and line.startswith("a=candidate"):
            candidates.append(line[2:])
    return candidates


def trickle_fragment(
    credentials: IceCredentials, kind: str, candidates: Iterable[str]
) -> str:
    """
    Build an `application/trickle-ice-sdpfrag` body carrying `candidates`.

    The media line is nominal, only the credentials and mid matter.
    """
    lines = [
        f"a=ice-ufrag:{credentials.ufrag}",
        f"a=ice-pwd:{credentials.pwd}",
        f"m={kind} 9 RTP/AVP 0",
    ]
    if credentials.first_mid:
        lines.append(f"a=mid:{credentials.first_mid}")
    lines += [f"a={c}" for c in candidates]
    return "".join(line + "\r\n" for line in lines)


def media_candidates(sdp: str) -> list[tuple[int, str]]:
    """
    Return the `a=candidate` values of every media section, with the index of
    the section they belong to.
    """
    candidates = []
    mline_index = -1
    for line in iter_lines(sdp):
        if line.startswith("m="):
            mline_index += 1
        elif mline_index >= 0 and line.startswith("a=candidate"):
            candidates.append((mline_index, line[2:]))
    return candidates
