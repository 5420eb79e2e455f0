# coding=utf-8
from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "pt-BR": "Portuguese (Brazil)",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese (Simplified)",
    "zh-TW": "Chinese (Traditional)",
    "ar": "Arabic",
    "hi": "Hindi",
    "nl": "Dutch",
    "pl": "Polish",
    "tr": "Turkish",
    "bn": "Bengali",
    "vi": "Vietnamese",
    "th": "Thai",
    "id": "Indonesian",
    "sv": "Swedish",
    "no": "Norwegian",
    "da": "Danish",
    "fi": "Finnish",
    "el": "Greek",
    "cs": "Czech",
    "ro": "Romanian",
    "hu": "Hungarian",
    "he": "Hebrew",
    "uk": "Ukrainian",
    "fa": "Persian",
    "ur": "Urdu",
    "ta": "Tamil",
    "te": "Telugu",
    "mr": "Marathi",
    "gu": "Gujarati",
    "kn": "Kannada",
    "ml": "Malayalam",
    "sw": "Swahili",
    "fil": "Filipino",
    "ms": "Malay",
    "ca": "Catalan",
    "sk": "Slovak",
    "bg": "Bulgarian",
    "hr": "Croatian",
    "sr": "Serbian",
    "lt": "Lithuanian",
    "lv": "Latvian",
    "et": "Estonian",
    "sl": "Slovenian",
    "af": "Afrikaans",
}


def language_name(code: str) -> str:
    key = str(code or "").strip()
    return LANGUAGE_NAMES.get(key) or LANGUAGE_NAMES.get(key.split("-")[0], key)


def normalize_language(code: Any) -> str:
    """Canonical language tag: lower-case primary subtag, upper-case region (pt-BR)."""
    raw = str(code or "").strip().replace("_", "-")
    if not raw:
        return ""
    parts = raw.split("-")
    head = parts[0].lower()
    if len(parts) == 1:
        return head
    return f"{head}-{parts[1].upper()}"


class Translator(Protocol):
    def translate(self, text: str, source_language: str, target_language: str) -> str:
        ...


class OpenAIAPITranslator:
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.

    Blocking; callers run it via asyncio.to_thread.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_new_tokens: int = 512,
        timeout_sec: float = 10.0,
        api_key: str = "",
        max_concurrency: int = 8,
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.api_key = str(api_key or "").strip()
        self._slots = threading.BoundedSemaphore(max(1, int(max_concurrency)))

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _build_messages(self, text: str, source_language: str, target_language: str) -> list:
        source = language_name(source_language)
        target = language_name(target_language)
        return [
            {
                "role": "system",
                "content": (
                    f"You translate live {source} speech transcripts into {target}. "
                    "Keep the meaning faithful, keep proper nouns, and output only the translation."
                ),
            },
            {"role": "user", "content": text},
        ]

    def _extract_content(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def translate(self, text: str, source_language: str, target_language: str) -> str:
        src = str(text or "").strip()
        if not src:
            return ""

        body = {
            "model": self.model,
            "messages": self._build_messages(src, source_language, target_language),
            "max_tokens": self.max_new_tokens,
            "temperature": 0,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        with self._slots:
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                    raw = resp.read().decode("utf-8", errors="replace")
            except urllib.error.HTTPError as exc:
                logger.warning("translation api http error status=%s url=%s", exc.code, self.chat_url)
                raise RuntimeError(f"translation api http error status={exc.code}") from exc
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("translation api returned a non-object payload")
        return self._extract_content(payload)
