# coding=utf-8

from .pool import ReorderBuffer, TranscriptionSessionPool
from .provider import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderSession,
    ProviderSessionError,
    SpeechProvider,
    TranscriptFragment,
    WebSocketProviderSession,
    WebSocketSpeechProvider,
)

__all__ = [
    "ProviderAuthError",
    "ProviderError",
    "ProviderQuotaError",
    "ProviderSession",
    "ProviderSessionError",
    "ReorderBuffer",
    "SpeechProvider",
    "TranscriptFragment",
    "TranscriptionSessionPool",
    "WebSocketProviderSession",
    "WebSocketSpeechProvider",
]
