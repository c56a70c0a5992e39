"""Helpers for the ``TodoWrite`` tool payload."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Iterable

from .message_model import TodoItem

TODO_TOOL_NAME = "TodoWrite"
_STATUSES = frozenset({"pending", "in_progress", "completed"})


@dataclass(slots=True, frozen=True)
class TodoStats:
    total: int
    completed: int
    in_progress: int
    pending: int


def extract_todos_from_input(raw_input: Any) -> list[TodoItem]:
    """Return the todo entries carried by a ``TodoWrite`` input payload.

    Entries without textual content are skipped and unknown statuses fall back to
    ``pending``.
    """

    if not isinstance(raw_input, Mapping):
        return []
    entries = raw_input.get("todos")
    if isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
        return []

    todos: list[TodoItem] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        content = entry.get("content")
        content = content.strip() if isinstance(content, str) else ""
        if not content:
            continue
        status = entry.get("status")
        if status not in _STATUSES:
            status = "pending"
        priority = entry.get("priority")
        todo_id = entry.get("id")
        todos.append(
            TodoItem(
                content=content,
                status=status,
                priority=priority if isinstance(priority, str) and priority else None,
                id=todo_id if isinstance(todo_id, str) else None,
            )
        )
    return todos


def todo_stats(todos: Iterable[TodoItem]) -> TodoStats:
    items = list(todos)
    return TodoStats(
        total=len(items),
        completed=sum(1 for todo in items if todo.status == "completed"),
        in_progress=sum(1 for todo in items if todo.status == "in_progress"),
        pending=sum(1 for todo in items if todo.status == "pending"),
    )


__all__ = ["TODO_TOOL_NAME", "TodoStats", "extract_todos_from_input", "todo_stats"]
