from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List


def _boundary_repeat_words(prev_text: str, text: str, min_words: int = 2, max_words: int = 15) -> int:
    prev = str(prev_text or "").split()
    cur = str(text or "").split()
    cap = min(len(prev), len(cur), max_words)
    for k in range(cap, min_words - 1, -1):
        if prev[-k:] == cur[:k]:
            return k
    return 0


@dataclass
class ListenerSelfcheckResult:
    partial_count: int
    final_count: int
    translated_partials: int
    languages: List[str]
    out_of_order_finals: int
    boundary_repeats: int
    max_chars: int
    examples: List[Dict[str, Any]]


def analyze_listener_events(events: Iterable[Dict[str, Any]]) -> ListenerSelfcheckResult:
    partial_count = 0
    final_count = 0
    translated_partials = 0
    languages: List[str] = []
    out_of_order = 0
    repeats = 0
    max_chars = 0
    last_seq = -1
    prev_final = ""
    examples: List[Dict[str, Any]] = []

    for idx, msg in enumerate(events):
        if str(msg.get("type", "")).lower() != "translation":
            continue
        original = str(msg.get("originalText", "") or "").strip()
        lang = str(msg.get("targetLang", "") or "")
        if lang and lang not in languages:
            languages.append(lang)
        max_chars = max(max_chars, len(original))

        if bool(msg.get("isPartial", False)):
            partial_count += 1
            if bool(msg.get("hasTranslation", False)):
                translated_partials += 1
            continue

        final_count += 1
        seq = int(msg.get("sequenceId", -1) or -1)
        if seq <= last_seq:
            out_of_order += 1
            if len(examples) < 8:
                examples.append({"kind": "out_of_order", "index": idx, "prev_seq": last_seq, "seq": seq})
        last_seq = max(last_seq, seq)

        k = _boundary_repeat_words(prev_final, original)
        if k > 0:
            repeats += 1
            if len(examples) < 8:
                examples.append(
                    {
                        "kind": "boundary_repeat",
                        "index": idx,
                        "seq": seq,
                        "words": k,
                        "text": original[:160],
                    }
                )
        prev_final = original

    return ListenerSelfcheckResult(
        partial_count=partial_count,
        final_count=final_count,
        translated_partials=translated_partials,
        languages=languages,
        out_of_order_finals=out_of_order,
        boundary_repeats=repeats,
        max_chars=max_chars,
        examples=examples,
    )


def summarize_result(result: ListenerSelfcheckResult) -> str:
    lines = [
        f"partials={result.partial_count}",
        f"finals={result.final_count}",
        f"translated_partials={result.translated_partials}",
        f"languages={','.join(result.languages)}",
        f"max_chars={result.max_chars}",
        f"out_of_order_finals={result.out_of_order_finals}",
        f"boundary_repeats={result.boundary_repeats}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
