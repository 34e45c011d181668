"""Channel engines — per-channel classification and delivery."""

import threading

from conversa.core.exceptions import ValidationError
from conversa.services.channels.base import ChannelEngine
from conversa.services.channels.whatsapp import WhatsAppEngine

__all__ = [
    "ChannelEngine",
    "WhatsAppEngine",
    "get_channel_engine",
    "register_engine",
    "reset_engines",
]

_engines: dict[str, ChannelEngine] = {}
_engines_lock = threading.Lock()


def register_engine(channel_type: str, engine: ChannelEngine) -> None:
    """Register (or replace) the engine serving a channel type."""
    with _engines_lock:
        _engines[channel_type] = engine


def get_channel_engine(channel_type: str) -> ChannelEngine:
    """Return the engine for a channel type.

    Raises ValidationError for channel types without an engine.
    """
    with _engines_lock:
        engine = _engines.get(channel_type)
        if engine is None and channel_type == "whatsapp":
            engine = _engines[channel_type] = WhatsAppEngine()
    if engine is None:
        raise ValidationError(f"No channel engine registered for '{channel_type}'")
    return engine


def reset_engines() -> None:
    """Forget registered engines; the WhatsApp engine is rebuilt on next use."""
    with _engines_lock:
        _engines.clear()
