from polycast.debug.selfcheck import analyze_listener_events, summarize_result


def _final(seq, text, lang="es"):
    return {
        "type": "translation",
        "originalText": text,
        "translatedText": text,
        "isPartial": False,
        "sequenceId": seq,
        "targetLang": lang,
        "hasTranslation": True,
    }


def _partial(text, translated=False, lang="en"):
    return {
        "type": "translation",
        "originalText": text,
        "translatedText": text,
        "isPartial": True,
        "sequenceId": -1,
        "targetLang": lang,
        "hasTranslation": translated,
    }


def test_analyze_listener_events_reports_clean_stream():
    events = [
        {"type": "listener_ready"},
        _partial("we are"),
        _partial("we are gathered here", translated=True, lang="es"),
        _final(1, "we are gathered here"),
        _final(2, "today to celebrate"),
        {"type": "session_ended"},
    ]
    result = analyze_listener_events(events)
    assert result.partial_count == 2
    assert result.translated_partials == 1
    assert result.final_count == 2
    assert result.out_of_order_finals == 0
    assert result.boundary_repeats == 0
    assert result.languages == ["en", "es"]


def test_analyze_listener_events_detects_out_of_order_and_repeats():
    events = [
        _final(2, "and I thank God for doctors"),
        _final(1, "for doctors and nurses"),
    ]
    result = analyze_listener_events(events)
    assert result.out_of_order_finals == 1
    assert result.boundary_repeats == 1
    kinds = {ex["kind"] for ex in result.examples}
    assert kinds == {"out_of_order", "boundary_repeat"}
    out = summarize_result(result)
    assert "out_of_order_finals=1" in out
    assert "boundary_repeats=1" in out


def test_selfcheck_tool_frames_and_event_files(tmp_path):
    import base64
    import json
    import wave

    import numpy as np

    from tools.listener_ws_selfcheck import _load_wav_samples, _read_events, _speaker_frames, _write_events

    wav_path = tmp_path / "speaker.wav"
    samples = (np.arange(8000) % 200 - 100).astype("<i2")
    with wave.open(str(wav_path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(16000)
        wf.writeframes(samples.tobytes())

    loaded = _load_wav_samples(wav_path)
    assert loaded.size == 8000
    binary = _speaker_frames(loaded, chunk_ms=250)
    assert [len(f) for f in binary] == [8000, 8000]
    as_json = _speaker_frames(loaded, chunk_ms=250, as_json=True)
    msg = json.loads(as_json[0])
    assert msg["type"] == "audio"
    assert base64.b64decode(msg["audioData"]) == binary[0]

    events_path = tmp_path / "out" / "events.jsonl"
    _write_events(events_path, [_final(1, "hello world")])
    assert _read_events(events_path)[0]["sequenceId"] == 1
