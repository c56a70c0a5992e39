"""Identifier helpers shared by the session store and mutations."""

from __future__ import annotations

import time
import uuid

__all__ = ["generate_message_id", "unique_id"]


def generate_message_id(prefix: str = "msg") -> str:
    """Return an id of the form ``<prefix>-<epoch ms>-<random>``."""

    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{uuid.uuid4().hex[:9]}"


def unique_id(candidate: str | None, taken: set[str] | frozenset[str], *, prefix: str = "msg") -> str:
    """Return ``candidate`` when it is free, otherwise a fresh id derived from it."""

    if candidate and candidate not in taken:
        return candidate
    base = candidate or prefix
    while True:
        fresh = f"{base}-{uuid.uuid4().hex[:6]}"
        if fresh not in taken:
            return fresh
