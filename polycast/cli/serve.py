# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Live speaker -> multi-language listener broadcast server over WebSocket.
"""
import argparse
import asyncio
import base64
import binascii
import json
import logging
import os
import socket
from contextlib import suppress
from types import SimpleNamespace
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from polycast.registry import InMemorySessionRegistry
from polycast.session import LiveSession, LiveSessionConfig
from polycast.streaming.capture_queue import SAMPLE_RATE
from polycast.streaming.segment_policy import SEGMENTATION_PRESETS
from polycast.transcription.provider import SpeechProvider, WebSocketSpeechProvider
from polycast.translation.broadcast import DeliveryPayload
from polycast.translation.translator import OpenAIAPITranslator, Translator, normalize_language

logger = logging.getLogger(__name__)


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    try:
        addr_infos = socket.getaddrinfo(bind_host, int(port), type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()
    raise RuntimeError(f"bind {bind_host}:{port} is not available: {last_error}")


def _parse_json_message(text: Any) -> Dict[str, Any]:
    if not isinstance(text, str):
        raise ValueError("text frame is required")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _decode_audio_message(payload: Dict[str, Any]) -> bytes:
    data = payload.get("audioData")
    if not isinstance(data, str) or not data:
        raise ValueError("audioData must be a base64 string")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 audio: {e}") from e


class WebSocketDelivery:
    """
    DeliveryChannel over Starlette WebSockets, one send lock per socket.
    """

    def __init__(self) -> None:
        self._locks: Dict[Any, asyncio.Lock] = {}

    def _lock_for(self, websocket: Any) -> asyncio.Lock:
        lock = self._locks.get(websocket)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[websocket] = lock
        return lock

    async def send_json(self, websocket: Any, payload: Dict[str, Any]) -> None:
        async with self._lock_for(websocket):
            await websocket.send_json(payload)

    async def deliver(self, listener: Any, payload: DeliveryPayload) -> None:
        await self.send_json(listener, payload.to_dict())

    def forget(self, websocket: Any) -> None:
        self._locks.pop(websocket, None)


def _create_app(
    args: argparse.Namespace,
    provider: SpeechProvider,
    translator: Translator,
    registry: Optional[InMemorySessionRegistry] = None,
) -> FastAPI:
    app = FastAPI(title="polycast live broadcast")
    registry = registry or InMemorySessionRegistry(max_listeners_per_session=int(getattr(args, "max_listeners", 0)))
    delivery = WebSocketDelivery()
    runtime = SimpleNamespace(sessions={})
    session_config = LiveSessionConfig.from_args(args)
    default_source = normalize_language(getattr(args, "source_language", "en")) or "en"
    max_sessions = max(1, int(getattr(args, "max_sessions", 16)))
    idle_timeout_sec = max(1.0, float(getattr(args, "idle_timeout_sec", 60.0)))

    async def _broadcast_listener_counts(session_id: str) -> None:
        counts = registry.language_counts(session_id)
        total = sum(counts.values())
        for lang in list(counts):
            payload = {"type": "listener_count", "count": total, "languageCount": counts[lang], "targetLang": lang}
            for listener in registry.listeners_for_language(session_id, lang):
                try:
                    await delivery.send_json(listener, payload)
                except Exception as exc:
                    logger.debug("listener_count send failed session=%s err=%s", session_id, exc)

    async def _notify_session_ended(session_id: str) -> None:
        for lang in registry.list_distinct_target_languages(session_id):
            for listener in registry.listeners_for_language(session_id, lang):
                try:
                    await delivery.send_json(listener, {"type": "session_ended", "sessionId": session_id})
                except Exception as exc:
                    logger.debug("session_ended send failed session=%s err=%s", session_id, exc)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "sessions": len(runtime.sessions),
            "listeners": {sid: registry.listener_count(sid) for sid in runtime.sessions},
        }

    @app.websocket("/ws/speak/{session_id}")
    async def ws_speak(websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        if session_id in runtime.sessions:
            await websocket.send_json({"type": "error", "message": "session already has a speaker"})
            await websocket.close(code=1013)
            return
        if len(runtime.sessions) >= max_sessions:
            await websocket.send_json({"type": "error", "message": "too many active sessions"})
            await websocket.close(code=1013)
            return

        session: Optional[LiveSession] = None
        stopped = False
        # Reserve the id before the first await that could yield to another speaker.
        runtime.sessions[session_id] = None

        async def _send_json(payload: Dict[str, Any]) -> None:
            await delivery.send_json(websocket, payload)

        async def _on_notice(payload: Dict[str, Any]) -> None:
            await _send_json(payload)
            if payload.get("fatal"):
                logger.error("speaker session ended by provider session=%s message=%s", session_id, payload.get("message"))
                await websocket.close(code=1011)

        def _push(raw: bytes) -> None:
            if session is None:
                raise ValueError("init is required before audio")
            session.push_audio(raw)

        try:
            await _send_json({"type": "ready", "sessionId": session_id})
            while True:
                try:
                    msg = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout_sec)
                except asyncio.TimeoutError:
                    await _send_json({"type": "error", "message": "idle timeout"})
                    break

                if msg.get("type") == "websocket.disconnect":
                    break

                raw = msg.get("bytes")
                if raw is not None:
                    try:
                        _push(raw)
                    except ValueError as e:
                        await _send_json({"type": "error", "message": str(e)})
                    continue

                try:
                    payload = _parse_json_message(msg.get("text"))
                except ValueError as e:
                    await _send_json({"type": "error", "message": str(e)})
                    continue

                msg_type = str(payload.get("type", "")).strip().lower()
                if msg_type == "init":
                    lang = normalize_language(payload.get("sourceLang")) or default_source
                    if session is None:
                        session = LiveSession(
                            session_id,
                            provider,
                            translator,
                            registry,
                            delivery,
                            source_language=lang,
                            config=session_config,
                            on_notice=_on_notice,
                        )
                        runtime.sessions[session_id] = session
                        await session.start()
                    else:
                        session.set_source_language(lang)
                    await _send_json(
                        {"type": "session_ready", "sessionId": session_id, "sourceLang": session.source_language, "role": "host"}
                    )
                    continue

                if msg_type == "audio":
                    try:
                        _push(_decode_audio_message(payload))
                    except ValueError as e:
                        await _send_json({"type": "error", "message": str(e)})
                    continue

                if msg_type == "stop":
                    stats = await session.stop() if session is not None else {}
                    stopped = True
                    await _send_json({"type": "stopped", "sessionId": session_id, "stats": stats})
                    break

                if msg_type == "ping":
                    await _send_json({"type": "pong"})
                    continue

                await _send_json({"type": "error", "message": "unknown message type"})

        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Starlette raises RuntimeError when receiving on a socket closed by _on_notice.
            logger.debug("speaker socket closed session=%s err=%s", session_id, e)
        finally:
            if session is not None and not stopped:
                await session.abort()
            runtime.sessions.pop(session_id, None)
            delivery.forget(websocket)
            await _notify_session_ended(session_id)
            with suppress(RuntimeError):
                await websocket.close(code=1000)

    @app.websocket("/ws/listen/{session_id}")
    async def ws_listen(websocket: WebSocket, session_id: str, lang: str = "en") -> None:
        await websocket.accept()
        try:
            sub = registry.attach(session_id, websocket, lang)
        except (RuntimeError, ValueError) as e:
            await websocket.send_json({"type": "error", "message": str(e)})
            await websocket.close(code=1013)
            return

        try:
            await delivery.send_json(
                websocket,
                {
                    "type": "listener_ready",
                    "sessionId": session_id,
                    "targetLang": sub.target_language,
                    "speakerActive": runtime.sessions.get(session_id) is not None,
                },
            )
            await _broadcast_listener_counts(session_id)
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                try:
                    payload = _parse_json_message(msg.get("text"))
                except ValueError as e:
                    await delivery.send_json(websocket, {"type": "error", "message": str(e)})
                    continue

                msg_type = str(payload.get("type", "")).strip().lower()
                if msg_type == "set_language":
                    try:
                        _, new_lang = registry.set_language(websocket, payload.get("targetLang"))
                    except ValueError as e:
                        await delivery.send_json(websocket, {"type": "error", "message": str(e)})
                        continue
                    await delivery.send_json(websocket, {"type": "language_changed", "targetLang": new_lang})
                    await _broadcast_listener_counts(session_id)
                    continue
                if msg_type == "ping":
                    await delivery.send_json(websocket, {"type": "pong"})
                    continue
                await delivery.send_json(websocket, {"type": "error", "message": "unknown message type"})
        except WebSocketDisconnect:
            pass
        finally:
            registry.detach(websocket)
            delivery.forget(websocket)
            await _broadcast_listener_counts(session_id)

    return app


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="polycast live transcription and translation broadcast server")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8024, help="Bind port")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    p.add_argument("--max-sessions", type=int, default=16, help="Maximum concurrent speaker sessions")
    p.add_argument("--max-listeners", type=int, default=0, help="Listeners per session (0 means unlimited)")
    p.add_argument("--idle-timeout-sec", type=float, default=60.0, help="Close a silent speaker socket after N seconds")
    p.add_argument("--source-language", default="en", help="Source language when init omits sourceLang")

    p.add_argument("--preset", default="preaching", choices=sorted(SEGMENTATION_PRESETS), help="Segmentation tuning preset")
    p.add_argument("--sample-rate", type=int, default=None, help="Capture sample rate in Hz")
    p.add_argument("--tick-ms", type=float, default=None, help="Segmentation worker tick")
    p.add_argument("--capture-capacity", type=int, default=None, help="Capture queue capacity in chunks")
    p.add_argument("--queue-high-water", type=int, default=None, help="Forced flush occupancy (0 means 80%% of capacity)")
    p.add_argument("--rolling-interval-ms", type=float, default=None, help="Target segment length")
    p.add_argument("--min-segment-ms", type=float, default=None, help="Segments below this are held back")
    p.add_argument("--silence-timeout-ms", type=float, default=None, help="Silence that closes a segment early")
    p.add_argument("--overlap-ms", type=float, default=None, help="Trailing audio carried into the next segment")
    p.add_argument("--silence-floor", type=float, default=None, help="Static RMS floor for speech detection (0..1)")
    p.add_argument("--energy-multiplier", type=float, default=None, help="Speech threshold over ambient energy")

    p.add_argument("--stt-url", default=os.environ.get("POLYCAST_STT_URL", ""), help="Speech service WebSocket url")
    p.add_argument("--stt-sessions", type=int, default=2, help="Parallel provider sessions per speaker")
    p.add_argument("--stt-segment-timeout-sec", type=float, default=20.0)
    p.add_argument("--stt-connect-timeout-sec", type=float, default=10.0)
    p.add_argument(
        "--stt-max-session-age-sec",
        type=float,
        default=240.0,
        help="Recycle provider sessions older than this before their next segment (0 disables)",
    )

    p.add_argument("--max-overlap-words", type=int, default=15)
    p.add_argument("--min-overlap-words", type=int, default=2)

    p.add_argument("--translation-api-base-url", default="https://api.openai.com/v1")
    p.add_argument("--translation-api-model", default="gpt-4o-mini")
    p.add_argument("--translation-api-key", default=os.environ.get("OPENAI_API_KEY", ""))
    p.add_argument("--translation-timeout-sec", type=float, default=10.0)
    p.add_argument("--translation-cache-ttl-sec", type=float, default=60.0)
    p.add_argument(
        "--partial-translation",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Translate partial text under a per-language rate limit",
    )
    p.add_argument("--partial-interval-ms", type=float, default=800.0)
    p.add_argument("--partial-min-chars", type=int, default=10, help="Partials this short are not translated")
    p.add_argument(
        "--trace-log",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Emit structured pipeline_trace log rows",
    )
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        _assert_port_bindable(args.host, args.port)
        provider = WebSocketSpeechProvider(
            url=args.stt_url,
            sample_rate=args.sample_rate or SAMPLE_RATE,
            connect_timeout_sec=args.stt_connect_timeout_sec,
            segment_timeout_sec=args.stt_segment_timeout_sec,
        )
        translator = OpenAIAPITranslator(
            base_url=args.translation_api_base_url,
            model=args.translation_api_model,
            timeout_sec=args.translation_timeout_sec,
            api_key=args.translation_api_key,
        )
    except (RuntimeError, ValueError) as exc:
        logger.error("startup failed: %s", exc)
        raise SystemExit(2) from exc

    logger.info(
        "starting polycast host=%s port=%d preset=%s stt_sessions=%d translation_model=%s",
        args.host,
        args.port,
        args.preset,
        args.stt_sessions,
        args.translation_api_model,
    )
    app = _create_app(args, provider, translator)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
