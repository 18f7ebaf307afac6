import asyncio
import logging
import queue
from typing import Optional

from .sdp import END_OF_CANDIDATES, IceCredentials, trickle_fragment
from .transport import WhipTransport

TRICKLE_CONTENT_TYPE = "application/trickle-ice-sdpfrag"
TRICKLE_INTERVAL = 0.1

logger = logging.getLogger(__name__)


class CandidateQueue:
    """
    A FIFO of local candidates waiting to be sent, safe to use from any thread.

    The end-of-candidates marker is queued like any other candidate.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[str] = queue.SimpleQueue()

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, candidate: str) -> None:
        self._queue.put(candidate)

    def put_end_of_candidates(self) -> None:
        self._queue.put(END_OF_CANDIDATES)

    def drain(self) -> list[str]:
        """
        Remove and return all the queued candidates, without blocking.
        """
        candidates = []
        while True:
            try:
                candidates.append(self._queue.get_nowait())
            except queue.Empty:
                return candidates


class TrickleBatcher:
    """
    Periodically sends the queued candidates to the WHIP resource, grouped in
    a single HTTP PATCH per tick.

    The periodic task ends once the end-of-candidates marker has been sent.
    """

    def __init__(
        self,
        candidates: CandidateQueue,
        transport: WhipTransport,
        resource_url: str,
        credentials: IceCredentials,
        kind: str,
        interval: float = TRICKLE_INTERVAL,
    ) -> None:
        self.credentials = credentials
        self.interval = interval
        self.kind = kind
        self.resource_url = resource_url

        self._candidates = candidates
        self._task: Optional[asyncio.Task] = None
        self._transport = transport

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def flush(self) -> bool:
        """
        Send the queued candidates, if any.

        :return: `False` once the end-of-candidates marker has been sent.
        """
        candidates = self._candidates.drain()
        if not candidates:
            return True

        for candidate in candidates:
            logger.debug("Sending candidates: %s", candidate)
        fragment = trickle_fragment(self.credentials, self.kind, candidates)
        response = await self._transport.send(
            "PATCH", self.resource_url, fragment, TRICKLE_CONTENT_TYPE
        )
        if response.status not in (200, 204):
            logger.warning(
                " [trickle] %d %s", response.status, response.reason or "HTTP error"
            )

        return END_OF_CANDIDATES not in candidates

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Trickling candidates failed")
            self._task = None

    async def wait(self) -> None:
        """
        Wait for the periodic task to finish on its own.
        """
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not await self.flush():
                logger.debug("End of candidates sent, trickling done")
                return
