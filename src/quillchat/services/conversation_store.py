"""JSON-file storage for conversation snapshots."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List

from ..chat.message_model import _utcnow
from ..chat.restore import ConversationListItem, RestoreSnapshot, map_conversation_list
from ..session.errors import ConversationNotFound
from ..utils.ids import generate_message_id

__all__ = ["ConversationStore"]

LOGGER = logging.getLogger(__name__)
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_PREVIEW_LIMIT = 80


class ConversationStore:
    """Stores one conversation snapshot per ``<id>.json`` file under ``root``.

    Each document holds the snapshot fields (``messages``, ``sessionId``,
    ``totalCost``, ``totalTokens``) plus the summary fields the conversation list
    needs (``id``, ``preview``, ``timestamp``, ``messageCount``).
    """

    def __init__(self, root: Path, *, clock: Callable[[], Any] | None = None) -> None:
        self._root = root
        self._clock = clock or _utcnow

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id) or ".." in conversation_id:
            raise ValueError(f"Invalid conversation id {conversation_id!r}")
        name = conversation_id if conversation_id.endswith(".json") else f"{conversation_id}.json"
        return self._root / name

    def save(self, snapshot: RestoreSnapshot, *, conversation_id: str | None = None) -> str:
        """Write ``snapshot`` atomically and return the conversation id it was stored under."""

        conversation_id = conversation_id or snapshot.conversation_id or generate_message_id("conversation")
        path = self.path_for(conversation_id)
        document = snapshot.to_dict()
        document.pop("isProcessing", None)
        document.update(
            {
                "id": conversation_id,
                "conversationId": conversation_id,
                "preview": _preview(snapshot.messages),
                "timestamp": self._clock().isoformat(),
                "messageCount": len(snapshot.messages),
            }
        )
        self._root.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.debug("Saved conversation %s (%d record(s)) to %s", conversation_id, len(snapshot.messages), path)
        return conversation_id

    def load(self, conversation_id: str) -> RestoreSnapshot:
        document = self._read(self.path_for(conversation_id))
        snapshot = RestoreSnapshot.from_value(document)
        if snapshot is None:
            raise ConversationNotFound(f"Conversation {conversation_id!r} has no message list")
        snapshot.conversation_id = conversation_id
        return snapshot

    def delete(self, conversation_id: str) -> None:
        path = self.path_for(conversation_id)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise ConversationNotFound(f"Conversation {conversation_id!r} does not exist") from exc
        LOGGER.debug("Deleted conversation %s", conversation_id)

    def list(self) -> List[ConversationListItem]:
        """Return summaries of every stored conversation, most recent first."""

        if not self._root.exists():
            return []
        headers: List[Dict[str, Any]] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                document = self._read(path)
            except ConversationNotFound:
                continue
            headers.append(
                {
                    "id": document.get("id") or path.stem,
                    "preview": document.get("preview"),
                    "timestamp": document.get("timestamp"),
                    "messageCount": document.get("messageCount"),
                    "sessionId": document.get("sessionId"),
                    "totalCost": document.get("totalCost"),
                    "tags": document.get("tags"),
                }
            )
        items = map_conversation_list(headers)
        return sorted(items, key=lambda item: item.updated_at, reverse=True)

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConversationNotFound(f"Conversation file {path} does not exist") from exc
        except json.JSONDecodeError as exc:
            LOGGER.warning("Conversation file %s is not valid JSON: %s", path, exc)
            raise ConversationNotFound(f"Conversation file {path} is unreadable") from exc
        if not isinstance(payload, dict):
            raise ConversationNotFound(f"Conversation file {path} does not contain an object")
        return payload


def _preview(records: List[Dict[str, Any]]) -> str:
    for record in records:
        if record.get("type") == "userInput" and isinstance(record.get("data"), str):
            text = " ".join(record["data"].split())
            if len(text) > _PREVIEW_LIMIT:
                return text[: _PREVIEW_LIMIT - 3] + "..."
            return text
    return "Conversation"
