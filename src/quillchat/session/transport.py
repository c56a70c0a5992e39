"""Outbound transport seam between the session engine and the assistant host."""

from __future__ import annotations

import json
import logging
from typing import IO, Any, Dict, List, Mapping, Protocol, runtime_checkable

from .errors import TransportError

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Accepts outbound commands. Delivery is fire-and-forget; replies arrive as events."""

    def post_message(self, command: Mapping[str, Any]) -> None:
        ...


class RecordingTransport:
    """In-memory transport that keeps every command it was asked to send.

    ``fail_with`` makes the next ``post_message`` calls raise, which is how callers
    exercise rollback paths.
    """

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self._failures: List[BaseException] = []

    def fail_with(self, error: BaseException, *, times: int = 1) -> None:
        self._failures.extend([error] * times)

    def post_message(self, command: Mapping[str, Any]) -> None:
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append(dict(command))

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [command for command in self.sent if command.get("type") == kind]

    def clear(self) -> None:
        self.sent.clear()


class JsonLinesTransport:
    """Writes each command as one JSON document per line to a text stream."""

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream

    def post_message(self, command: Mapping[str, Any]) -> None:
        try:
            self._stream.write(json.dumps(dict(command), sort_keys=True) + "\n")
            self._stream.flush()
        except (OSError, ValueError) as exc:
            raise TransportError(f"Failed to write {command.get('type')!r} command: {exc}") from exc
        LOGGER.debug("Posted %s command", command.get("type"))


__all__ = ["JsonLinesTransport", "RecordingTransport", "Transport"]
