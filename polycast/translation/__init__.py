# coding=utf-8

from .broadcast import PARTIAL_SEQUENCE_ID, BroadcastLayer, DeliveryChannel, DeliveryPayload
from .cache import TranslationCache
from .throttle import PartialTranslationThrottle
from .translator import LANGUAGE_NAMES, OpenAIAPITranslator, Translator, language_name, normalize_language

__all__ = [
    "LANGUAGE_NAMES",
    "PARTIAL_SEQUENCE_ID",
    "BroadcastLayer",
    "DeliveryChannel",
    "DeliveryPayload",
    "OpenAIAPITranslator",
    "PartialTranslationThrottle",
    "TranslationCache",
    "Translator",
    "language_name",
    "normalize_language",
]
