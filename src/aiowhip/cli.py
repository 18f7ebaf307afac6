import argparse
import asyncio
import logging
from typing import Optional, Sequence

from . import __version__
from .configuration import WhipConfiguration
from .exceptions import ConfigurationError
from .media import AiortcMediaEngine
from .session import WhipSession

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]

logger = logging.getLogger("aiowhip.cli")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whip-client", description="Publish media to a WHIP endpoint"
    )
    parser.add_argument(
        "-u", "--url", help="Address of the WHIP endpoint (required)"
    )
    parser.add_argument(
        "-t", "--token", help="Authentication Bearer token to use (optional)"
    )
    parser.add_argument(
        "-A",
        "--audio",
        help="Audio source: a file or device, or 'test' (required if audio-only)",
    )
    parser.add_argument("--audio-format", help="FFmpeg format of the audio source")
    parser.add_argument(
        "-V",
        "--video",
        help="Video source: a file or device, or 'test' (required if video-only)",
    )
    parser.add_argument("--video-format", help="FFmpeg format of the video source")
    parser.add_argument(
        "-n",
        "--no-trickle",
        action="store_true",
        help="Don't trickle candidates, but put them in the SDP offer",
    )
    parser.add_argument(
        "-f",
        "--follow-link",
        action="store_true",
        help="Use the Link headers returned by the WHIP server to automatically "
        "configure STUN/TURN servers to use",
    )
    parser.add_argument(
        "-S", "--stun-server", help="STUN server to use, if any (stun://hostname:port)"
    )
    parser.add_argument(
        "-T",
        "--turn-server",
        action="append",
        default=[],
        help="TURN server to use, if any; can be passed multiple times "
        "(turn(s)://username:password@host:port?transport=[udp,tcp])",
    )
    parser.add_argument(
        "-F",
        "--force-turn",
        action="store_true",
        help="In case TURN servers are provided, force using a relay",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=30.0,
        help="Time limit for each HTTP request, in seconds (default: 30)",
    )
    parser.add_argument(
        "-l", "--log-level", choices=LOG_LEVELS, default="info", help="Logging level"
    )
    parser.add_argument(
        "-L",
        "--log-timestamps",
        action="store_true",
        help="Enable logging timestamps",
    )
    parser.add_argument("--verbose", "-v", action="count")
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level.upper())
    fmt = "%(levelname)s %(name)s: %(message)s"
    if args.log_timestamps:
        fmt = "%(asctime)s " + fmt
    logging.basicConfig(level=level, format=fmt)


def configuration_from_args(args: argparse.Namespace) -> WhipConfiguration:
    return WhipConfiguration(
        url=args.url,
        token=args.token,
        trickle=not args.no_trickle,
        follow_link=args.follow_link,
        stun_server=args.stun_server,
        turn_servers=list(args.turn_server),
        force_relay=args.force_turn,
        audio=args.audio,
        audio_format=args.audio_format,
        video=args.video,
        video_format=args.video_format,
        timeout=args.http_timeout or None,
    )


def log_configuration(configuration: WhipConfiguration) -> None:
    logger.info("WHIP endpoint:  %s", configuration.url)
    logger.info("Bearer Token:   %s", configuration.token or "(none)")
    logger.info(
        "Trickle ICE:    %s",
        "yes (HTTP PATCH)" if configuration.trickle else "no (candidates in SDP offer)",
    )
    logger.info(
        "Auto STUN/TURN: %s",
        "yes (via Link headers)" if configuration.follow_link else "no",
    )
    if not configuration.follow_link:
        logger.info("STUN server:    %s", configuration.stun_server or "(none)")
        for uri in configuration.turn_servers or ["(none)"]:
            logger.info("TURN server:    %s", uri)
    if configuration.force_relay:
        logger.info("Forcing TURN:   true")
    logger.info("Audio source:   %s", configuration.audio or "(none)")
    logger.info("Video source:   %s", configuration.video or "(none)")


async def publish(session: WhipSession) -> None:
    try:
        session.install_signal_handlers()
    except NotImplementedError:
        logger.warning("Signal handlers are not supported on this platform")

    try:
        await session.run()
    finally:
        await session.engine.close()
        await session.transport.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args)

    configuration = configuration_from_args(args)
    try:
        configuration.validate()
    except ConfigurationError as exc:
        parser.print_help()
        logger.error("%s", exc)
        return 1
    log_configuration(configuration)

    engine = AiortcMediaEngine(
        audio=configuration.audio,
        video=configuration.video,
        audio_format=configuration.audio_format,
        video_format=configuration.video_format,
        force_relay=configuration.force_relay,
    )
    session = WhipSession(configuration, engine)
    try:
        asyncio.run(publish(session))
    except (ConfigurationError, OSError) as exc:
        logger.error("Failed to start publishing: %s", exc)
        return 1

    logger.info("Bye!")
    return 0
