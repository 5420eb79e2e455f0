from pathlib import Path

from tools.trace_report import _group_rows, _parse_trace_rows, _summarize


def test_parse_trace_rows_filters_and_parses(tmp_path: Path):
    p = tmp_path / "serve.log"
    p.write_text(
        "\n".join(
            [
                'INFO polycast.debug.trace pipeline_trace {"topic":"segment","event":"submitted","session_id":"room","seq":1,"reason":"rolling_interval","trace_seq":1}',
                'INFO polycast.session live session started session=room',
                'INFO polycast.debug.trace pipeline_trace {"event":"missing_topic"}',
                'INFO polycast.debug.trace pipeline_trace {not json}',
            ]
        ),
        encoding="utf-8",
    )
    rows = _parse_trace_rows(p)
    assert len(rows) == 1
    assert rows[0]["event"] == "submitted"


def test_summarize_groups_by_session_and_topic():
    rows = [
        {"topic": "segment", "event": "submitted", "session_id": "a", "seq": 1, "reason": "rolling_interval", "trace_seq": 1},
        {"topic": "segment", "event": "submitted", "session_id": "a", "seq": 2, "reason": "silence_timeout", "trace_seq": 2},
        {"topic": "reconcile", "event": "final", "session_id": "a", "seq": 1, "overlap_words": 3, "trace_seq": 3},
        {"topic": "broadcast", "event": "final_delivered", "session_id": "b", "seq": 1, "lang": "es", "text_chars": 12, "trace_seq": 1},
    ]
    out = _summarize(_group_rows(rows))
    assert "groups=3" in out
    assert "[a] topic=segment rows=2" in out
    assert "reasons=rolling_interval:1,silence_timeout:1" in out
    assert "overlap_words=3" in out
    assert "lang=es chars=12" in out
