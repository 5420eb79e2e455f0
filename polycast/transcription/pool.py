# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from polycast.streaming.segmenter import Segment
from polycast.transcription.provider import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderSession,
    ProviderSessionError,
    SpeechProvider,
    TranscriptFragment,
)

logger = logging.getLogger(__name__)

FragmentSink = Callable[[TranscriptFragment], Awaitable[None]]
ErrorSink = Callable[[ProviderError], Awaitable[None]]


class ReorderBuffer:
    """
    Releases finals strictly by sequence id.

    Partials pass through only for the lowest pending sequence. A failed sequence
    is skipped so it cannot hold back later finals.
    """

    def __init__(self, emit: FragmentSink, first_sequence: int = 1) -> None:
        self._emit = emit
        self._lock = asyncio.Lock()
        self._next_seq = int(first_sequence)
        self._finals: Dict[int, TranscriptFragment] = {}
        self._failed: Set[int] = set()
        self.released_finals = 0
        self.skipped_failed = 0
        self.partials_released = 0
        self.partials_dropped = 0

    @property
    def next_sequence(self) -> int:
        return self._next_seq

    def pending(self) -> int:
        return len(self._finals) + len(self._failed)

    async def offer_partial(self, fragment: TranscriptFragment) -> bool:
        async with self._lock:
            if int(fragment.sequence_id) != self._next_seq:
                self.partials_dropped += 1
                return False
            self.partials_released += 1
            await self._emit(fragment)
            return True

    async def offer_final(self, fragment: TranscriptFragment) -> None:
        async with self._lock:
            seq = int(fragment.sequence_id)
            if seq < self._next_seq or seq in self._finals:
                logger.warning("duplicate final ignored seq=%d next=%d", seq, self._next_seq)
                return
            self._finals[seq] = fragment
            await self._release_locked()

    async def mark_failed(self, sequence_id: int) -> None:
        async with self._lock:
            seq = int(sequence_id)
            if seq < self._next_seq:
                return
            self._failed.add(seq)
            await self._release_locked()

    async def _release_locked(self) -> None:
        while True:
            seq = self._next_seq
            if seq in self._failed:
                self._failed.discard(seq)
                self.skipped_failed += 1
                self._next_seq += 1
                continue
            fragment = self._finals.pop(seq, None)
            if fragment is None:
                return
            self._next_seq += 1
            self.released_finals += 1
            await self._emit(fragment)


@dataclass
class _SessionSlot:
    index: int
    queue: "asyncio.Queue[Optional[Segment]]" = field(default_factory=asyncio.Queue)
    session: Optional[ProviderSession] = None
    opened_at: float = 0.0
    busy: bool = False
    task: Optional[asyncio.Task] = None
    generation: int = 0

    def load(self) -> int:
        return self.queue.qsize() + (1 if self.busy else 0)


class TranscriptionSessionPool:
    """
    N provider sessions, each draining a private FIFO of segments.

    submit() is synchronous: it stamps the next sequence id and enqueues on the
    least-loaded slot, so sequence order always equals flush order.
    """

    def __init__(
        self,
        provider: SpeechProvider,
        on_fragment: FragmentSink,
        source_language: str = "en",
        size: int = 2,
        segment_timeout_sec: float = 20.0,
        max_session_age_sec: float = 240.0,
        on_error: Optional[ErrorSink] = None,
        on_session_failure: Optional[ErrorSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.source_language = str(source_language or "en")
        self.size = max(1, int(size))
        self.segment_timeout_sec = max(0.05, float(segment_timeout_sec))
        self.max_session_age_sec = max(0.0, float(max_session_age_sec))
        self.on_error = on_error
        self.on_session_failure = on_session_failure
        self.clock = clock
        self.reorder = ReorderBuffer(on_fragment)
        self._slots: List[_SessionSlot] = []
        self._next_seq = 1
        self._started = False
        self._closed = False
        self.halt_error: Optional[ProviderError] = None

        self.submitted_total = 0
        self.completed_total = 0
        self.failed_total = 0
        self.replaced_total = 0
        self.recycled_total = 0
        self.released_on_close = 0

    @property
    def halted(self) -> bool:
        return self.halt_error is not None

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for i in range(self.size):
            slot = _SessionSlot(index=i)
            slot.task = asyncio.create_task(self._worker(slot))
            self._slots.append(slot)

    def submit(self, segment: Segment) -> Segment:
        if self.halt_error is not None:
            raise self.halt_error
        if self._closed:
            raise ProviderSessionError("transcription pool is closed")
        if not self._started:
            self.start()
        seq = self._next_seq
        self._next_seq += 1
        stamped = segment.with_sequence(seq)
        slot = min(self._slots, key=lambda s: (s.load(), s.index))
        slot.queue.put_nowait(stamped)
        self.submitted_total += 1
        logger.debug(
            "segment submitted seq=%d slot=%d queued=%d duration_sec=%.3f",
            seq,
            slot.index,
            slot.queue.qsize(),
            stamped.duration_sec,
        )
        return stamped

    async def _ensure_session(self, slot: _SessionSlot) -> ProviderSession:
        if slot.session is not None and self.max_session_age_sec > 0:
            if self.clock() - slot.opened_at >= self.max_session_age_sec:
                logger.info("recycling provider session slot=%d age_sec=%.1f", slot.index, self.clock() - slot.opened_at)
                await self._close_session(slot)
                self.recycled_total += 1
        if slot.session is None:
            slot.session = await self.provider.open_session(self.source_language)
            slot.opened_at = self.clock()
            slot.generation += 1
        return slot.session

    async def _close_session(self, slot: _SessionSlot) -> None:
        session = slot.session
        slot.session = None
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.debug("provider session close failed slot=%d err=%s", slot.index, exc)

    async def _consume(self, slot: _SessionSlot, segment: Segment) -> None:
        try:
            await self._stream_segment(slot, segment)
        except (ProviderError, ValueError):
            raise
        except Exception as exc:
            # Transport errors that are not provider-classified count as a session drop.
            raise ProviderSessionError(f"provider session error seq={segment.sequence_id} err={exc!r}") from exc

    async def _stream_segment(self, slot: _SessionSlot, segment: Segment) -> None:
        session = await self._ensure_session(slot)
        got_final = False
        stream = session.transcribe(segment)
        try:
            async for fragment in stream:
                if int(fragment.sequence_id) != int(segment.sequence_id):
                    raise ProviderSessionError(
                        f"fragment sequence mismatch got={fragment.sequence_id} want={segment.sequence_id}"
                    )
                if fragment.is_partial:
                    await self.reorder.offer_partial(fragment)
                    continue
                got_final = True
                await self.reorder.offer_final(fragment)
                break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if not got_final:
            raise ProviderSessionError(f"provider stream ended without final seq={segment.sequence_id}")

    async def _worker(self, slot: _SessionSlot) -> None:
        while True:
            segment = await slot.queue.get()
            try:
                if segment is None:
                    return
                await self._process(slot, segment)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("transcription worker error slot=%d seq=%d", slot.index, segment.sequence_id)
                self.failed_total += 1
                await self._close_session(slot)
                await self.reorder.mark_failed(segment.sequence_id)
            finally:
                slot.queue.task_done()

    async def _process(self, slot: _SessionSlot, segment: Segment) -> None:
        seq = int(segment.sequence_id)
        if self.halt_error is not None or self._closed:
            await self.reorder.mark_failed(seq)
            return
        slot.busy = True
        try:
            await asyncio.wait_for(self._consume(slot, segment), timeout=self.segment_timeout_sec)
            self.completed_total += 1
        except (ProviderQuotaError, ProviderAuthError) as exc:
            self.failed_total += 1
            await self.reorder.mark_failed(seq)
            await self._close_session(slot)
            await self._halt(exc)
        except (ProviderSessionError, asyncio.TimeoutError, ValueError) as exc:
            self.failed_total += 1
            self.replaced_total += 1
            logger.warning(
                "provider session failed, replacing slot=%d seq=%d err=%s",
                slot.index,
                seq,
                exc or "timeout",
            )
            await self._close_session(slot)
            await self.reorder.mark_failed(seq)
            if self.on_session_failure is not None:
                err = exc if isinstance(exc, ProviderError) else ProviderSessionError(str(exc) or f"segment timed out seq={seq}")
                await self.on_session_failure(err)
        finally:
            slot.busy = False

    async def _halt(self, exc: ProviderError) -> None:
        if self.halt_error is not None:
            return
        self.halt_error = exc
        logger.error("transcription pool halted kind=%s err=%s", type(exc).__name__, exc)
        for slot in self._slots:
            for seg in self._drain_queue(slot):
                await self.reorder.mark_failed(seg.sequence_id)
        if self.on_error is not None:
            await self.on_error(exc)

    def _drain_queue(self, slot: _SessionSlot) -> List[Segment]:
        out: List[Segment] = []
        while True:
            try:
                item = slot.queue.get_nowait()
            except asyncio.QueueEmpty:
                return out
            slot.queue.task_done()
            if item is not None:
                out.append(item)

    async def drain(self, timeout: float = 30.0) -> bool:
        """Wait until every submitted segment is finished or skipped."""
        if not self._slots:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(slot.queue.join() for slot in self._slots)),
                timeout=max(0.05, float(timeout)),
            )
        except asyncio.TimeoutError:
            logger.warning("transcription pool drain timed out pending=%d", self._next_seq - self.reorder.next_sequence)
            return False
        return True

    async def close(self) -> int:
        """Cancel workers, close sessions, release queued segments. Returns released count."""
        if self._closed:
            return 0
        self._closed = True
        released = 0
        for slot in self._slots:
            released += len(self._drain_queue(slot))
        tasks = [slot.task for slot in self._slots if slot.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for slot in self._slots:
            await self._close_session(slot)
        self.released_on_close = released
        if released:
            logger.info("transcription pool released queued segments count=%d", released)
        return released

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": self.size,
            "submitted": self.submitted_total,
            "completed": self.completed_total,
            "failed": self.failed_total,
            "replaced": self.replaced_total,
            "recycled": self.recycled_total,
            "released_finals": self.reorder.released_finals,
            "skipped_failed": self.reorder.skipped_failed,
            "partials_dropped": self.reorder.partials_dropped,
            "halted": self.halt_error is not None,
        }
