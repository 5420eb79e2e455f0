# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

FireFn = Callable[[str, str, int], Awaitable[None]]


class PartialTranslationThrottle:
    """
    Per-language rate limit for partial translations.

    At most one call per `interval_ms` per language. Updates arriving inside the
    window overwrite a single pending slot that fires on the trailing edge with
    the latest text.

    Each call is tagged with the generation current at launch. `supersede()`
    starts a new generation so callers can drop results that finish late.
    """

    def __init__(
        self,
        fire: FireFn,
        interval_ms: float = 800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fire = fire
        self.interval_sec = max(0.0, float(interval_ms) / 1000.0)
        self.clock = clock
        self._last_fired: Dict[str, float] = {}
        self._pending: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()
        self.generation = 0
        self.fired_total = 0
        self.coalesced_total = 0

    def offer(self, language: str, text: str) -> bool:
        """Returns True when the call fired immediately."""
        lang = str(language)
        now = self.clock()
        last = self._last_fired.get(lang)
        if lang not in self._timers and (last is None or now - last >= self.interval_sec):
            self._pending.pop(lang, None)
            self._launch(lang, text, now)
            return True
        if lang in self._pending:
            self.coalesced_total += 1
        self._pending[lang] = text
        if lang not in self._timers:
            delay = max(0.0, (last or now) + self.interval_sec - now)
            self._timers[lang] = asyncio.create_task(self._trailing(lang, delay))
        return False

    def pending_text(self, language: str) -> Optional[str]:
        return self._pending.get(str(language))

    def _launch(self, lang: str, text: str, now: float) -> None:
        self._last_fired[lang] = now
        self.fired_total += 1
        task = asyncio.create_task(self.fire(lang, text, self.generation))
        self._running.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("partial translation failed err=%s", exc)

    async def _trailing(self, lang: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            if self._timers.get(lang) is asyncio.current_task():
                del self._timers[lang]
        text = self._pending.pop(lang, None)
        if text is not None:
            self._launch(lang, text, self.clock())

    def discard_pending(self, language: Optional[str] = None) -> None:
        """Drop queued trailing calls, e.g. once a final supersedes the partial."""
        langs = [str(language)] if language is not None else list(self._timers)
        for lang in langs:
            self._pending.pop(lang, None)
            timer = self._timers.pop(lang, None)
            if timer is not None:
                timer.cancel()

    def supersede(self) -> int:
        """Drop queued calls and mark every running call stale."""
        self.generation += 1
        self.discard_pending()
        return self.generation

    def is_current(self, generation: int) -> bool:
        return int(generation) == self.generation

    async def close(self) -> None:
        self.discard_pending()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
