#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import wave
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import websockets

from polycast.debug.selfcheck import analyze_listener_events, summarize_result
from polycast.streaming.capture_queue import SAMPLE_RATE

WS_MAX_SIZE = 16 * 1024 * 1024


def _load_wav_samples(path: Path, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Speaker audio as int16 samples; only mono 16-bit PCM at the capture rate is accepted."""
    with wave.open(str(path), "rb") as wf:
        fmt = (wf.getnchannels(), wf.getsampwidth(), wf.getframerate())
        if fmt != (1, 2, int(sample_rate)):
            raise ValueError(
                f"need mono 16-bit {sample_rate} Hz wav, got channels={fmt[0]} sampwidth={fmt[1]} rate={fmt[2]}"
            )
        return np.frombuffer(wf.readframes(wf.getnframes()), dtype="<i2").astype(np.int16)


def _speaker_frames(samples: np.ndarray, chunk_ms: int, sample_rate: int = SAMPLE_RATE, as_json: bool = False) -> List[Union[bytes, str]]:
    step = max(1, int(sample_rate * chunk_ms / 1000))
    frames: List[Union[bytes, str]] = []
    for start in range(0, int(samples.size), step):
        pcm = samples[start : start + step].astype("<i2").tobytes()
        if as_json:
            frames.append(json.dumps({"type": "audio", "audioData": base64.b64encode(pcm).decode("ascii")}))
        else:
            frames.append(pcm)
    return frames


async def _collect_listener(url: str, events: List[Dict[str, Any]], done: asyncio.Event) -> None:
    async with websockets.connect(url, max_size=WS_MAX_SIZE) as ws:
        while not done.is_set():
            try:
                frame = await asyncio.wait_for(ws.recv(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            except websockets.exceptions.ConnectionClosed:
                return
            if not isinstance(frame, str):
                continue
            event = json.loads(frame)
            events.append(event)
            if event.get("type") in ("session_ended", "error"):
                done.set()


async def _replay(
    base_url: str,
    session_id: str,
    frames: List[Union[bytes, str]],
    chunk_ms: int,
    source_language: str,
    target_language: str,
    realtime_factor: float,
    drain_sec: float,
) -> List[Dict[str, Any]]:
    base = base_url.rstrip("/")
    events: List[Dict[str, Any]] = []
    done = asyncio.Event()
    listener = asyncio.create_task(
        _collect_listener(f"{base}/ws/listen/{session_id}?lang={target_language}", events, done)
    )
    pace = (chunk_ms / 1000.0) / max(0.01, float(realtime_factor))

    async with websockets.connect(f"{base}/ws/speak/{session_id}", max_size=WS_MAX_SIZE) as speaker:
        hello = json.loads(await speaker.recv())
        if hello.get("type") != "ready":
            raise RuntimeError(f"speaker socket did not start with ready: {hello}")
        await speaker.send(json.dumps({"type": "init", "sourceLang": source_language}))
        for frame in frames:
            await speaker.send(frame)
            await asyncio.sleep(pace)
        await speaker.send(json.dumps({"type": "stop"}))
        while True:
            reply = json.loads(await asyncio.wait_for(speaker.recv(), timeout=max(1.0, drain_sec)))
            if reply.get("type") in ("stopped", "error"):
                events.append({"type": f"speaker_{reply.get('type')}", "stats": reply.get("stats", {})})
                break

    try:
        await asyncio.wait_for(done.wait(), timeout=max(0.5, drain_sec))
    except asyncio.TimeoutError:
        done.set()
    await listener
    return events


def _read_events(path: Path) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def _write_events(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e, ensure_ascii=False) + "\n" for e in events), encoding="utf-8")


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay a wav as a speaker and self-check what one listener receives.")
    p.add_argument("--base-url", default="ws://127.0.0.1:8024")
    p.add_argument("--session-id", default="selfcheck")
    p.add_argument("--wav", default="", help="Mono 16-bit 16 kHz wav to replay")
    p.add_argument("--source-lang", default="en")
    p.add_argument("--target-lang", default="es")
    p.add_argument("--chunk-ms", type=int, default=250)
    p.add_argument("--json-audio", action="store_true", help="Send base64 JSON audio messages instead of binary frames")
    p.add_argument("--realtime-factor", type=float, default=1.0, help="Playback speed; 2.0 sends twice as fast")
    p.add_argument("--drain-sec", type=float, default=10.0, help="Wait after stop for trailing translations")
    p.add_argument("--events-jsonl", default="", help="Save listener events here; analyzed directly when --wav is omitted")
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if not args.wav:
        if events_path is None:
            raise SystemExit("provide --wav for replay, or --events-jsonl to analyze saved events")
        events = _read_events(events_path)
    else:
        frames = _speaker_frames(
            _load_wav_samples(Path(args.wav).expanduser()),
            chunk_ms=int(args.chunk_ms),
            as_json=bool(args.json_audio),
        )
        events = asyncio.run(
            _replay(
                base_url=str(args.base_url),
                session_id=str(args.session_id),
                frames=frames,
                chunk_ms=int(args.chunk_ms),
                source_language=str(args.source_lang),
                target_language=str(args.target_lang),
                realtime_factor=float(args.realtime_factor),
                drain_sec=float(args.drain_sec),
            )
        )
        if events_path is not None:
            _write_events(events_path, events)

    print(summarize_result(analyze_listener_events(events)))


if __name__ == "__main__":
    main()
