from __future__ import annotations

import itertools
import secrets
import threading
import time
from datetime import datetime, timezone

_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_SUFFIX_SPACE = len(_ALPHABET) ** 2

# Seeded randomly so two processes started in the same millisecond diverge.
_counter = itertools.count(secrets.randbelow(_SUFFIX_SPACE))
_counter_lock = threading.Lock()


def _suffix() -> str:
    with _counter_lock:
        value = next(_counter) % _SUFFIX_SPACE
    return _ALPHABET[value // len(_ALPHABET)] + _ALPHABET[value % len(_ALPHABET)]


def type_prefix(message_type: str) -> str:
    return (message_type or "MSG").split("_", 1)[0]


def new_message_id(message_type: str, *, now: datetime | None = None) -> str:
    """``<PREFIX>_ZD<YYMMDD><last 8 digits of unix millis><2-char counter>``."""
    moment = now or datetime.now(timezone.utc)
    millis = int(moment.timestamp() * 1000) if now else time.time_ns() // 1_000_000
    return f"{type_prefix(message_type)}_ZD{moment:%y%m%d}{millis % 100_000_000:08d}{_suffix()}"
