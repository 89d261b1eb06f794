"""
Coalescing buffer between the inference stream and the socket.

Fragments are appended to an accumulator. The first fragment after a flush arms a
timer; when it fires the whole accumulator goes out as one chunk. ``close`` does the
final flush when the stream ends (normally or with an error) so nothing is dropped,
``discard`` throws pending text away when the client is already gone.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.1  # seconds

ChunkSink = Callable[[str], Awaitable[object]]


class TokenBuffer:
    def __init__(self, emit: ChunkSink, flush_interval: float = DEFAULT_FLUSH_INTERVAL):
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self._emit = emit
        self.flush_interval = flush_interval
        self._pending = ""
        self._timer: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._failure: Optional[BaseException] = None
        self._closed = False
        self.chunks_emitted = 0

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def append(self, fragment: str) -> None:
        if self._closed:
            raise RuntimeError("TokenBuffer is closed")
        if self._failure is not None:
            raise self._failure
        if not fragment:
            return

        self._pending += fragment
        if self._timer is None:
            self._timer = asyncio.get_running_loop().create_task(self._flush_after_delay())

    async def flush(self) -> None:
        """Emit everything accumulated so far as one chunk, if there is anything."""
        async with self._lock:
            if not self._pending:
                return
            chunk, self._pending = self._pending, ""
            self.chunks_emitted += 1
            await self._emit(chunk)

    async def close(self) -> None:
        """Disarm the timer and flush whatever is left. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._disarm()
        await self.flush()
        if self._failure is not None:
            raise self._failure

    def discard(self) -> None:
        self._closed = True
        self._disarm()
        if self._pending:
            logger.debug("Discarding %d unflushed characters", len(self._pending))
        self._pending = ""

    def _disarm(self) -> None:
        # a timer that already left its sleep has cleared self._timer and is
        # flushing under the lock, so cancelling here never interrupts an emit
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self.flush_interval)
        self._timer = None
        try:
            await self.flush()
        except Exception as e:
            logger.exception("Timed flush failed")
            self._failure = e
