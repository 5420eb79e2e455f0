# coding=utf-8
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Tuple


def trim_word_overlap(
    previous_text: str,
    new_text: str,
    *,
    min_overlap: int = 2,
    max_overlap: int = 15,
) -> Tuple[str, int]:
    """
    Drop the leading words of new_text that repeat the tail of previous_text.

    Returns (remaining_text, overlap_words). The longest match wins, searched
    from max_overlap down to min_overlap; comparison is exact per word.
    """
    new_words = str(new_text or "").split()
    prev_words = str(previous_text or "").split()
    if not new_words:
        return "", 0
    if not prev_words:
        return " ".join(new_words), 0

    min_k = max(1, int(min_overlap))
    cap = min(max(min_k, int(max_overlap)), len(prev_words), len(new_words))
    for k in range(cap, min_k - 1, -1):
        if prev_words[-k:] == new_words[:k]:
            return " ".join(new_words[k:]), k
    return " ".join(new_words), 0


@dataclass(frozen=True)
class ReconciledText:
    text: str
    sequence_id: int
    overlap_words: int
    full_text: str

    @property
    def is_empty(self) -> bool:
        return not self.text


class TranscriptReconciler:
    """
    Per-session transcript state:
    - previous_final: last full final, replaced on every final
    - generating_text: latest raw partial, cleared by the next final
    """

    def __init__(self, min_overlap_words: int = 2, max_overlap_words: int = 15, history_size: int = 200) -> None:
        self.min_overlap_words = max(1, int(min_overlap_words))
        self.max_overlap_words = max(self.min_overlap_words, int(max_overlap_words))
        self.previous_final = ""
        self.generating_text = ""
        self.finals_seen = 0
        self.overlap_words_total = 0
        self._history: Deque[ReconciledText] = deque(maxlen=max(1, int(history_size)))

    def set_partial(self, text: str) -> str:
        self.generating_text = str(text or "").strip()
        return self.generating_text

    def reconcile(self, text: str, sequence_id: int) -> ReconciledText:
        full = " ".join(str(text or "").split())
        trimmed, k = trim_word_overlap(
            self.previous_final,
            full,
            min_overlap=self.min_overlap_words,
            max_overlap=self.max_overlap_words,
        )
        self.generating_text = ""
        self.finals_seen += 1
        self.overlap_words_total += k
        if full:
            self.previous_final = full
        result = ReconciledText(text=trimmed, sequence_id=int(sequence_id), overlap_words=k, full_text=full)
        if trimmed:
            self._history.append(result)
        return result

    def transcript(self) -> str:
        return " ".join(x.text for x in self._history)

    def snapshot(self) -> Dict[str, object]:
        items: List[ReconciledText] = list(self._history)
        return {
            "generating_text": self.generating_text,
            "previous_final": self.previous_final,
            "finals_seen": self.finals_seen,
            "overlap_words_total": self.overlap_words_total,
            "committed_ids": [x.sequence_id for x in items],
            "committed_text": [x.text for x in items],
        }
