# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from polycast.streaming.segmenter import Segment

logger = logging.getLogger(__name__)

# Close codes the speech service uses to signal non-transient conditions.
CLOSE_CODE_POLICY = 1008
CLOSE_CODE_QUOTA = 1011


@dataclass(frozen=True)
class TranscriptFragment:
    text: str
    is_partial: bool
    sequence_id: int
    received_at: float = 0.0


class ProviderError(RuntimeError):
    pass


class ProviderSessionError(ProviderError):
    """Connection drop, timeout or malformed event. The session is replaced."""


class ProviderQuotaError(ProviderError):
    """Quota or rate limit exhausted. Reconnecting will not help."""


class ProviderAuthError(ProviderError):
    """Credentials rejected. Ends the speaker session."""


class ProviderSession(Protocol):
    def transcribe(self, segment: Segment) -> AsyncIterator[TranscriptFragment]:
        ...

    async def close(self) -> None:
        ...


class SpeechProvider(Protocol):
    async def open_session(self, source_language: str) -> ProviderSession:
        ...


def _error_from_event(event: Dict[str, Any]) -> ProviderError:
    code = str(event.get("code") or "").strip().lower()
    message = str(event.get("message") or code or "provider error")
    if code in {"quota", "quota_exceeded", "rate_limited", "resource_exhausted"}:
        return ProviderQuotaError(message)
    if code in {"auth", "unauthorized", "unauthenticated", "permission_denied"}:
        return ProviderAuthError(message)
    return ProviderSessionError(message)


def _error_from_close(exc: ConnectionClosed) -> ProviderError:
    rcvd = getattr(exc, "rcvd", None)
    code = int(getattr(rcvd, "code", 0) or 0)
    reason = str(getattr(rcvd, "reason", "") or "")
    if code == CLOSE_CODE_QUOTA and "quota" in reason.lower():
        return ProviderQuotaError(reason or "quota exceeded")
    if code == CLOSE_CODE_POLICY:
        return ProviderAuthError(reason or "provider rejected credentials")
    return ProviderSessionError(f"provider connection closed code={code} reason={reason}")


def _error_from_handshake(exc: InvalidHandshake) -> ProviderError:
    response = getattr(exc, "response", None)
    status = int(getattr(response, "status_code", 0) or getattr(exc, "status_code", 0) or 0)
    if status in {401, 403}:
        return ProviderAuthError(f"provider rejected handshake status={status}")
    if status == 429:
        return ProviderQuotaError("provider rate limited the handshake")
    return ProviderSessionError(f"provider handshake failed err={exc}")


def parse_provider_event(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, str):
        raise ProviderSessionError("provider sent a non-text event")
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderSessionError(f"provider sent invalid json: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProviderSessionError("provider event must be a json object")
    return obj


class WebSocketProviderSession:
    """
    One live connection to a JSON/binary speech service.

    Per segment: one binary PCM16LE frame, then {"type":"commit"}. The service answers
    with {"type":"partial"} events and exactly one {"type":"final"}.
    """

    def __init__(self, ws: Any, source_language: str, segment_timeout_sec: float = 15.0) -> None:
        self.ws = ws
        self.source_language = source_language
        self.segment_timeout_sec = max(1.0, float(segment_timeout_sec))
        self.opened_at = time.monotonic()
        self._closed = False

    async def transcribe(self, segment: Segment) -> AsyncIterator[TranscriptFragment]:
        if self._closed:
            raise ProviderSessionError("session is closed")
        seq = int(segment.sequence_id)
        deadline = time.monotonic() + self.segment_timeout_sec
        try:
            await self.ws.send(segment.pcm16le())
            await self.ws.send(json.dumps({"type": "commit", "sequenceId": seq}))
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProviderSessionError(f"segment timed out seq={seq}")
                try:
                    raw = await asyncio.wait_for(self.ws.recv(), timeout=remaining)
                except asyncio.TimeoutError as exc:
                    raise ProviderSessionError(f"segment timed out seq={seq}") from exc
                event = parse_provider_event(raw)
                etype = str(event.get("type") or "").strip().lower()
                if etype == "error":
                    raise _error_from_event(event)
                if etype not in {"partial", "final"}:
                    logger.debug("ignoring provider event type=%s seq=%d", etype, seq)
                    continue
                text = event.get("text", "")
                if not isinstance(text, str):
                    raise ProviderSessionError("provider event text must be a string")
                is_final = etype == "final"
                yield TranscriptFragment(
                    text=text.strip(),
                    is_partial=not is_final,
                    sequence_id=seq,
                    received_at=time.monotonic(),
                )
                if is_final:
                    return
        except ConnectionClosed as exc:
            raise _error_from_close(exc) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.ws.close()
        except Exception as exc:
            logger.debug("provider session close failed err=%s", exc)


class WebSocketSpeechProvider:
    def __init__(
        self,
        url: str,
        sample_rate: int = 16000,
        connect_timeout_sec: float = 10.0,
        segment_timeout_sec: float = 15.0,
        max_size: int = 16 * 1024 * 1024,
    ) -> None:
        self.url = str(url or "").strip()
        if not self.url:
            raise ValueError("speech provider url is empty")
        self.sample_rate = max(1, int(sample_rate))
        self.connect_timeout_sec = max(0.5, float(connect_timeout_sec))
        self.segment_timeout_sec = max(1.0, float(segment_timeout_sec))
        self.max_size = max(1024, int(max_size))

    async def open_session(self, source_language: str) -> WebSocketProviderSession:
        try:
            ws = await asyncio.wait_for(
                websockets.connect(self.url, max_size=self.max_size, open_timeout=self.connect_timeout_sec),
                timeout=self.connect_timeout_sec + 1.0,
            )
        except InvalidHandshake as exc:
            raise _error_from_handshake(exc) from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise ProviderSessionError(f"provider connect failed url={self.url} err={exc}") from exc

        try:
            await ws.send(
                json.dumps(
                    {
                        "type": "start",
                        "language": str(source_language or ""),
                        "sampleRate": self.sample_rate,
                        "encoding": "pcm16le",
                    }
                )
            )
            raw = await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout_sec)
            event = parse_provider_event(raw)
            etype = str(event.get("type") or "").strip().lower()
            if etype == "error":
                raise _error_from_event(event)
            if etype != "ready":
                raise ProviderSessionError(f"unexpected provider handshake type={etype}")
        except ConnectionClosed as exc:
            await ws.close()
            raise _error_from_close(exc) from exc
        except asyncio.TimeoutError as exc:
            await ws.close()
            raise ProviderSessionError("provider handshake timed out") from exc
        except ProviderError:
            await ws.close()
            raise

        logger.info("provider session opened url=%s lang=%s", self.url, source_language)
        return WebSocketProviderSession(ws, source_language, segment_timeout_sec=self.segment_timeout_sec)
