# coding=utf-8
from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from polycast.translation.translator import normalize_language

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    listener: Any
    session_id: str
    target_language: str
    joined_at: float = 0.0


class SessionRegistry(Protocol):
    def list_distinct_target_languages(self, session_id: str) -> Set[str]:
        ...

    def listeners_for_language(self, session_id: str, language: str) -> Set[Any]:
        ...


class InMemorySessionRegistry:
    """
    Listener membership for the bundled server.

    One Subscription per listener handle. Only the listener's own socket handler
    calls attach/set_language/detach; the broadcast layer only reads.
    """

    def __init__(self, max_listeners_per_session: int = 0) -> None:
        self.max_listeners_per_session = max(0, int(max_listeners_per_session))
        self._subs: Dict[Any, Subscription] = {}

    def attach(self, session_id: str, listener: Any, target_language: str) -> Subscription:
        sid = str(session_id or "").strip()
        if not sid:
            raise ValueError("session_id is required")
        lang = normalize_language(target_language)
        if not lang:
            raise ValueError("target language is required")
        if listener in self._subs:
            raise ValueError("listener is already attached")
        if self.max_listeners_per_session and self.listener_count(sid) >= self.max_listeners_per_session:
            raise RuntimeError(f"listener capacity reached session={sid}")
        sub = Subscription(listener=listener, session_id=sid, target_language=lang, joined_at=time.time())
        self._subs[listener] = sub
        logger.info("listener attached session=%s lang=%s listeners=%d", sid, lang, self.listener_count(sid))
        return sub

    def set_language(self, listener: Any, target_language: str) -> Tuple[str, str]:
        sub = self._subs.get(listener)
        if sub is None:
            raise KeyError("listener is not attached")
        lang = normalize_language(target_language)
        if not lang:
            raise ValueError("target language is required")
        old = sub.target_language
        sub.target_language = lang
        if old != lang:
            logger.info("listener language changed session=%s from=%s to=%s", sub.session_id, old, lang)
        return old, lang

    def detach(self, listener: Any) -> Optional[Subscription]:
        sub = self._subs.pop(listener, None)
        if sub is not None:
            logger.info(
                "listener detached session=%s lang=%s listeners=%d",
                sub.session_id,
                sub.target_language,
                self.listener_count(sub.session_id),
            )
        return sub

    def subscription(self, listener: Any) -> Optional[Subscription]:
        return self._subs.get(listener)

    def _session_subs(self, session_id: str) -> List[Subscription]:
        return [s for s in self._subs.values() if s.session_id == session_id]

    def list_distinct_target_languages(self, session_id: str) -> Set[str]:
        return {s.target_language for s in self._session_subs(session_id)}

    def listeners_for_language(self, session_id: str, language: str) -> Set[Any]:
        return {s.listener for s in self._session_subs(session_id) if s.target_language == language}

    def listener_count(self, session_id: str) -> int:
        return len(self._session_subs(session_id))

    def language_counts(self, session_id: str) -> Dict[str, int]:
        return dict(Counter(s.target_language for s in self._session_subs(session_id)))

    def drop_session(self, session_id: str) -> List[Subscription]:
        gone = self._session_subs(session_id)
        for sub in gone:
            self._subs.pop(sub.listener, None)
        return gone
