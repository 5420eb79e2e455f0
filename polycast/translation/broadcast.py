# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from polycast.debug.trace import PipelineTracer, hash8
from polycast.streaming.reconciliation import ReconciledText
from polycast.translation.cache import TranslationCache
from polycast.translation.throttle import PartialTranslationThrottle
from polycast.translation.translator import Translator, normalize_language

if TYPE_CHECKING:
    from polycast.registry import SessionRegistry

logger = logging.getLogger(__name__)

PARTIAL_SEQUENCE_ID = -1


@dataclass(frozen=True)
class DeliveryPayload:
    original_text: str
    translated_text: str
    is_partial: bool
    sequence_id: int
    timestamp: int
    source_lang: str
    target_lang: str
    has_translation: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "translation",
            "originalText": self.original_text,
            "translatedText": self.translated_text,
            "isPartial": bool(self.is_partial),
            "sequenceId": int(self.sequence_id),
            "timestamp": int(self.timestamp),
            "sourceLang": self.source_lang,
            "targetLang": self.target_lang,
            "hasTranslation": bool(self.has_translation),
        }


class DeliveryChannel(Protocol):
    async def deliver(self, listener: Any, payload: DeliveryPayload) -> None:
        ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class BroadcastLayer:
    """
    Translate each unit once per distinct target language and fan it out.

    Listener sets are read from the registry at delivery time, so a language
    switch applies from the next unit on.
    """

    def __init__(
        self,
        session_id: str,
        registry: "SessionRegistry",
        translator: Translator,
        delivery: DeliveryChannel,
        source_language: str = "en",
        cache: Optional[TranslationCache] = None,
        translation_timeout_sec: float = 10.0,
        delivery_timeout_sec: float = 5.0,
        partial_translation: bool = True,
        partial_interval_ms: float = 800.0,
        partial_min_chars: int = 10,
        tracer: Optional[PipelineTracer] = None,
    ) -> None:
        self.session_id = str(session_id)
        self.registry = registry
        self.translator = translator
        self.delivery = delivery
        self.source_language = normalize_language(source_language) or "en"
        self.cache = cache if cache is not None else TranslationCache()
        self.translation_timeout_sec = max(0.05, float(translation_timeout_sec))
        self.delivery_timeout_sec = max(0.05, float(delivery_timeout_sec))
        self.partial_translation = bool(partial_translation)
        self.partial_min_chars = max(0, int(partial_min_chars))
        self.throttle = PartialTranslationThrottle(self._fire_partial, interval_ms=partial_interval_ms)
        self.tracer = tracer or PipelineTracer(self.session_id, enabled=False)

        self.translation_calls = 0
        self.translation_failures = 0
        self.passthrough_total = 0
        self.finals_published = 0
        self.partials_published = 0
        self.deliveries = 0
        self.delivery_failures = 0
        self.stale_partials_dropped = 0

    def set_source_language(self, language: str) -> None:
        lang = normalize_language(language)
        if lang and lang != self.source_language:
            self.throttle.supersede()
            self.source_language = lang

    async def translate_unit(self, text: str, target_language: str) -> Optional[str]:
        """Translated text, or None when this language must be skipped for the unit."""
        src = self.source_language
        if target_language == src:
            self.passthrough_total += 1
            return text
        cached = self.cache.get(src, target_language, text)
        if cached is not None:
            return cached
        self.translation_calls += 1
        try:
            out = await asyncio.wait_for(
                asyncio.to_thread(self.translator.translate, text, src, target_language),
                timeout=self.translation_timeout_sec,
            )
        except asyncio.TimeoutError:
            self.translation_failures += 1
            logger.warning(
                "translation timed out session=%s lang=%s timeout_sec=%.1f",
                self.session_id,
                target_language,
                self.translation_timeout_sec,
            )
            return None
        except Exception as exc:
            self.translation_failures += 1
            logger.warning("translation failed session=%s lang=%s err=%s", self.session_id, target_language, exc)
            return None
        out = str(out or "").strip()
        if not out:
            self.translation_failures += 1
            logger.warning("translation returned empty text session=%s lang=%s", self.session_id, target_language)
            return None
        self.cache.put(src, target_language, text, out)
        return out

    async def _deliver_one(self, listener: Any, payload: DeliveryPayload) -> bool:
        try:
            await asyncio.wait_for(self.delivery.deliver(listener, payload), timeout=self.delivery_timeout_sec)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.delivery_failures += 1
            logger.debug("delivery failed session=%s lang=%s err=%s", self.session_id, payload.target_lang, exc)
            return False
        self.deliveries += 1
        return True

    async def deliver_language(self, language: str, payload: DeliveryPayload) -> int:
        listeners = list(self.registry.listeners_for_language(self.session_id, language))
        if not listeners:
            return 0
        results = await asyncio.gather(*(self._deliver_one(l, payload) for l in listeners))
        return sum(1 for ok in results if ok)

    async def _translate_and_deliver(self, unit: ReconciledText, language: str) -> Optional[str]:
        translated = await self.translate_unit(unit.text, language)
        if translated is None:
            return None
        payload = DeliveryPayload(
            original_text=unit.text,
            translated_text=translated,
            is_partial=False,
            sequence_id=int(unit.sequence_id),
            timestamp=_now_ms(),
            source_lang=self.source_language,
            target_lang=language,
        )
        delivered = await self.deliver_language(language, payload)
        self.tracer.emit(
            "broadcast",
            "final_delivered",
            seq=int(unit.sequence_id),
            lang=language,
            listeners=delivered,
            text_chars=len(unit.text),
            text_hash8=hash8(unit.text),
        )
        return translated

    async def publish_final(self, unit: ReconciledText) -> Dict[str, str]:
        if unit.is_empty:
            return {}
        self.throttle.supersede()
        languages = sorted(self.registry.list_distinct_target_languages(self.session_id))
        self.finals_published += 1
        if not languages:
            logger.debug("no listeners, final not translated session=%s seq=%d", self.session_id, unit.sequence_id)
            return {}
        results = await asyncio.gather(*(self._translate_and_deliver(unit, lang) for lang in languages))
        return {lang: out for lang, out in zip(languages, results) if out is not None}

    async def publish_partial(self, text: str) -> int:
        raw = str(text or "").strip()
        if not raw:
            return 0
        self.partials_published += 1
        languages = sorted(self.registry.list_distinct_target_languages(self.session_id))
        payload = DeliveryPayload(
            original_text=raw,
            translated_text=raw,
            is_partial=True,
            sequence_id=PARTIAL_SEQUENCE_ID,
            timestamp=_now_ms(),
            source_lang=self.source_language,
            target_lang=self.source_language,
            has_translation=False,
        )
        counts: List[int] = await asyncio.gather(*(self.deliver_language(lang, payload) for lang in languages))
        if self.partial_translation and len(raw) > self.partial_min_chars:
            for lang in languages:
                if lang != self.source_language:
                    self.throttle.offer(lang, raw)
        return sum(counts)

    async def _fire_partial(self, language: str, text: str, generation: int) -> None:
        translated = await self.translate_unit(text, language)
        if translated is None:
            return
        if not self.throttle.is_current(generation):
            # A final went out while this was translating.
            self.stale_partials_dropped += 1
            logger.debug("stale partial translation dropped session=%s lang=%s", self.session_id, language)
            return
        payload = DeliveryPayload(
            original_text=text,
            translated_text=translated,
            is_partial=True,
            sequence_id=PARTIAL_SEQUENCE_ID,
            timestamp=_now_ms(),
            source_lang=self.source_language,
            target_lang=language,
        )
        await self.deliver_language(language, payload)

    async def close(self) -> None:
        await self.throttle.close()

    def stats(self) -> Dict[str, Any]:
        return {
            "finals_published": self.finals_published,
            "partials_published": self.partials_published,
            "translation_calls": self.translation_calls,
            "translation_failures": self.translation_failures,
            "passthrough": self.passthrough_total,
            "cache_hits": self.cache.hits,
            "deliveries": self.deliveries,
            "delivery_failures": self.delivery_failures,
            "partial_translations_fired": self.throttle.fired_total,
            "partial_translations_coalesced": self.throttle.coalesced_total,
            "stale_partials_dropped": self.stale_partials_dropped,
        }
