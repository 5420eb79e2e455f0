# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import numpy as np

from polycast.debug.trace import PipelineTracer, hash8
from polycast.registry import SessionRegistry
from polycast.streaming.capture_queue import AudioChunk, CaptureQueue, decode_pcm16le
from polycast.streaming.reconciliation import ReconciledText, TranscriptReconciler
from polycast.streaming.segmenter import Segment, SegmentationConfig, SegmentationWorker
from polycast.transcription.pool import TranscriptionSessionPool
from polycast.transcription.provider import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    SpeechProvider,
    TranscriptFragment,
)
from polycast.translation.broadcast import BroadcastLayer, DeliveryChannel
from polycast.translation.cache import TranslationCache
from polycast.translation.translator import Translator, normalize_language

logger = logging.getLogger(__name__)

NoticeSink = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class LiveSessionConfig:
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    stt_sessions: int = 2
    stt_segment_timeout_sec: float = 20.0
    stt_max_session_age_sec: float = 240.0
    min_overlap_words: int = 2
    max_overlap_words: int = 15
    translation_timeout_sec: float = 10.0
    translation_cache_ttl_sec: float = 60.0
    partial_translation: bool = True
    partial_interval_ms: float = 800.0
    partial_min_chars: int = 10
    drain_timeout_sec: float = 30.0
    trace: bool = False

    @classmethod
    def from_args(cls, args: Any) -> "LiveSessionConfig":
        segmentation = SegmentationConfig.from_preset(
            getattr(args, "preset", None),
            sample_rate=getattr(args, "sample_rate", None),
            tick_ms=getattr(args, "tick_ms", None),
            capture_capacity=getattr(args, "capture_capacity", None),
            queue_high_water=getattr(args, "queue_high_water", None),
            rolling_interval_ms=getattr(args, "rolling_interval_ms", None),
            min_segment_ms=getattr(args, "min_segment_ms", None),
            silence_timeout_ms=getattr(args, "silence_timeout_ms", None),
            overlap_ms=getattr(args, "overlap_ms", None),
            silence_floor=getattr(args, "silence_floor", None),
            energy_multiplier=getattr(args, "energy_multiplier", None),
        )
        return cls(
            segmentation=segmentation,
            stt_sessions=max(1, int(getattr(args, "stt_sessions", 2))),
            stt_segment_timeout_sec=float(getattr(args, "stt_segment_timeout_sec", 20.0)),
            stt_max_session_age_sec=float(getattr(args, "stt_max_session_age_sec", 240.0)),
            min_overlap_words=int(getattr(args, "min_overlap_words", 2)),
            max_overlap_words=int(getattr(args, "max_overlap_words", 15)),
            translation_timeout_sec=float(getattr(args, "translation_timeout_sec", 10.0)),
            translation_cache_ttl_sec=float(getattr(args, "translation_cache_ttl_sec", 60.0)),
            partial_translation=bool(getattr(args, "partial_translation", True)),
            partial_interval_ms=float(getattr(args, "partial_interval_ms", 800.0)),
            partial_min_chars=int(getattr(args, "partial_min_chars", 10)),
            trace=bool(getattr(args, "trace_log", False)),
        )


class LiveSession:
    """
    One speaker's pipeline: capture -> segmentation -> provider pool ->
    reconciliation -> broadcast.

    Released finals and partials go through one FIFO consumer so listeners see
    them in release order.
    """

    def __init__(
        self,
        session_id: str,
        provider: SpeechProvider,
        translator: Translator,
        registry: SessionRegistry,
        delivery: DeliveryChannel,
        source_language: str = "en",
        config: Optional[LiveSessionConfig] = None,
        on_notice: Optional[NoticeSink] = None,
    ) -> None:
        self.session_id = str(session_id)
        self.config = config or LiveSessionConfig()
        self.source_language = normalize_language(source_language) or "en"
        self.on_notice = on_notice
        self.tracer = PipelineTracer(self.session_id, enabled=self.config.trace)
        seg_cfg = self.config.segmentation

        self.capture = CaptureQueue(capacity=seg_cfg.capture_capacity)
        self.reconciler = TranscriptReconciler(
            min_overlap_words=self.config.min_overlap_words,
            max_overlap_words=self.config.max_overlap_words,
        )
        self.broadcast = BroadcastLayer(
            self.session_id,
            registry,
            translator,
            delivery,
            source_language=self.source_language,
            cache=TranslationCache(ttl_sec=self.config.translation_cache_ttl_sec),
            translation_timeout_sec=self.config.translation_timeout_sec,
            partial_translation=self.config.partial_translation,
            partial_interval_ms=self.config.partial_interval_ms,
            partial_min_chars=self.config.partial_min_chars,
            tracer=self.tracer,
        )
        self.pool = TranscriptionSessionPool(
            provider,
            on_fragment=self._on_fragment,
            source_language=self.source_language,
            size=self.config.stt_sessions,
            segment_timeout_sec=self.config.stt_segment_timeout_sec,
            max_session_age_sec=self.config.stt_max_session_age_sec,
            on_error=self._on_pool_halt,
            on_session_failure=self._on_session_failure,
        )
        self.worker = SegmentationWorker(self.capture, self._on_segment, config=seg_cfg)

        self._outbox: "asyncio.Queue[Optional[Tuple[str, Union[str, ReconciledText]]]]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._started = False
        self._stopped = False
        self.fatal_error: Optional[ProviderError] = None
        self.started_at = 0.0
        self.segments_rejected = 0
        self.empty_finals = 0

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.started_at = time.monotonic()
        self.pool.start()
        self.worker.start()
        self._consumer = asyncio.create_task(self._broadcast_loop())
        self.tracer.emit("session", "started", source_lang=self.source_language)
        logger.info(
            "live session started session=%s lang=%s stt_sessions=%d rolling_ms=%.0f",
            self.session_id,
            self.source_language,
            self.pool.size,
            self.config.segmentation.rolling_interval_ms,
        )

    def push_audio(self, audio: Union[bytes, bytearray, np.ndarray]) -> int:
        """Queue one capture quantum. Never blocks; returns the sample count queued."""
        if self._stopped:
            return 0
        if isinstance(audio, (bytes, bytearray)):
            samples = decode_pcm16le(audio)
        else:
            samples = np.asarray(audio, dtype=np.int16).reshape(-1)
        if samples.size <= 0:
            return 0
        self.capture.push(
            AudioChunk(samples=samples, sample_rate=self.config.segmentation.sample_rate, captured_at=time.monotonic())
        )
        return int(samples.size)

    def _on_segment(self, segment: Segment) -> None:
        try:
            stamped = self.pool.submit(segment)
        except ProviderError as exc:
            self.segments_rejected += 1
            logger.debug("segment rejected session=%s err=%s", self.session_id, exc)
            return
        self.tracer.emit(
            "segment",
            "submitted",
            seq=stamped.sequence_id,
            reason=stamped.flush_reason.value,
            duration_ms=int(stamped.duration_sec * 1000),
            overlap_ms=int(stamped.overlap_retained_sec * 1000),
        )

    async def _on_fragment(self, fragment: TranscriptFragment) -> None:
        if fragment.is_partial:
            text = self.reconciler.set_partial(fragment.text)
            if text:
                self._outbox.put_nowait(("partial", text))
            return
        unit = self.reconciler.reconcile(fragment.text, fragment.sequence_id)
        self.tracer.emit(
            "reconcile",
            "final",
            seq=unit.sequence_id,
            overlap_words=unit.overlap_words,
            text_chars=len(unit.text),
            text_hash8=hash8(unit.text),
        )
        if unit.is_empty:
            self.empty_finals += 1
            return
        self._outbox.put_nowait(("final", unit))

    async def _broadcast_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            kind, value = item
            try:
                if kind == "final":
                    await self.broadcast.publish_final(value)
                else:
                    await self.broadcast.publish_partial(value)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("broadcast failed session=%s kind=%s", self.session_id, kind)

    async def _notify(self, payload: Dict[str, Any]) -> None:
        if self.on_notice is None:
            return
        try:
            await self.on_notice(payload)
        except Exception as exc:
            logger.debug("speaker notice failed session=%s err=%s", self.session_id, exc)

    async def _on_session_failure(self, exc: ProviderError) -> None:
        await self._notify(
            {"type": "warning", "code": "provider_restarting", "message": "Transcription service restarting..."}
        )

    async def _on_pool_halt(self, exc: ProviderError) -> None:
        if isinstance(exc, ProviderAuthError):
            self.fatal_error = exc
            await self._notify({"type": "error", "code": "provider_auth", "message": str(exc), "fatal": True})
            return
        code = "quota_exceeded" if isinstance(exc, ProviderQuotaError) else "provider_error"
        await self._notify({"type": "error", "code": code, "message": str(exc), "fatal": False})

    def set_source_language(self, language: str) -> str:
        lang = normalize_language(language)
        if lang:
            self.source_language = lang
            self.pool.source_language = lang
            self.broadcast.set_source_language(lang)
        return self.source_language

    async def stop(self) -> Dict[str, Any]:
        """Terminal flush, wait for outstanding segments, then release everything."""
        if self._stopped:
            return self.stats()
        self._stopped = True
        if self._started:
            await self.worker.stop()
            await self.pool.drain(timeout=self.config.drain_timeout_sec)
            self._outbox.put_nowait(None)
            if self._consumer is not None:
                await self._consumer
                self._consumer = None
        await self._release()
        self.tracer.emit("session", "stopped", **self.pool.stats())
        logger.info("live session stopped session=%s stats=%s", self.session_id, self.pool.stats())
        return self.stats()

    async def abort(self) -> None:
        """Speaker vanished: no terminal flush, queued segments are released."""
        if self._stopped:
            return
        self._stopped = True
        dropped = await self.worker.abort()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        await self._release()
        logger.info("live session aborted session=%s dropped_chunks=%d", self.session_id, dropped)

    async def _release(self) -> None:
        await self.pool.close()
        await self.broadcast.close()

    def stats(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "sourceLang": self.source_language,
            "capture": {
                "pushed": self.capture.pushed_total,
                "dropped": self.capture.dropped_total,
                "capacity": self.capture.capacity,
            },
            "segmentation": {
                "segments": self.worker.segments_emitted,
                "suppressed": self.worker.suppressed_total,
                "pressureFlushes": self.worker.pressure_flushes,
            },
            "transcription": self.pool.stats(),
            "reconciliation": {
                "finals": self.reconciler.finals_seen,
                "overlapWords": self.reconciler.overlap_words_total,
                "emptyFinals": self.empty_finals,
            },
            "broadcast": self.broadcast.stats(),
            "segmentsRejected": self.segments_rejected,
        }
