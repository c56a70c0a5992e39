"""Command line entry point: replay recorded host events and inspect configuration."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .chat.timeline import timeline_to_dict
from .permissions.timers import ManualScheduler
from .services.conversation_store import ConversationStore
from .services.settings import Settings, SettingsStore
from .session.container import ChatSession
from .session.transport import RecordingTransport
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_ADVANCE_DIRECTIVE = "@advance"


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the command line tools."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, TypeError, ValueError) as exc:  # pragma: no cover - defensive path
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `quillchat` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("QUILLCHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("QUILLCHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.command == "replay":
        return asyncio.run(
            replay(
                Path(args.events),
                settings,
                snapshot_out=Path(args.snapshot_out) if args.snapshot_out else None,
                commands_out=Path(args.commands_out) if args.commands_out else None,
                save=args.save,
            )
        )
    if args.command == "conversations":
        store = ConversationStore(settings.resolved_conversations_dir())
        rows = [
            {
                "id": item.id,
                "preview": item.preview,
                "updated_at": item.updated_at.isoformat(),
                "message_count": item.message_count,
            }
            for item in store.list()
        ]
        json.dump(rows, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return 0

    print("Nothing to do; pass a command or --dump-settings (see --help).", file=sys.stderr)
    return 2


async def replay(
    events_path: Path,
    settings: Settings,
    *,
    snapshot_out: Path | None = None,
    commands_out: Path | None = None,
    save: bool = False,
    stream: TextIO | None = None,
) -> int:
    """Feed a JSON-lines event log through a fresh session and print the timeline.

    A line of the form ``{"type": "@advance", "seconds": N}`` moves the permission
    expiry clock forward instead of being dispatched.
    """

    destination = stream or sys.stdout
    scheduler = ManualScheduler()
    transport = RecordingTransport()
    conversations = ConversationStore(settings.resolved_conversations_dir()) if save else None
    session = ChatSession(transport, settings=settings, scheduler=scheduler, conversations=conversations)
    applied = 0
    skipped = 0
    try:
        for event in _read_events(events_path):
            if event.get("type") == _ADVANCE_DIRECTIVE:
                seconds = event.get("seconds", 0)
                scheduler.advance(float(seconds) if isinstance(seconds, (int, float)) else 0.0)
                continue
            if session.dispatch(event):
                applied += 1
            else:
                skipped += 1
        saved_id = None
        if conversations is not None:
            saved_id = await session.persist_conversation.mutate_async(None)

        state = session.store.state
        output: Dict[str, Any] = {
            "timeline": timeline_to_dict(session.timeline()),
            "is_processing": state.is_processing,
            "todos": [todo.to_dict() for todo in state.todos],
            "pending_permissions": [request.to_dict() for request in session.permissions.pending],
            "permission_history": [record.to_dict() for record in session.permissions.history],
            "totals": {
                "session_cost_usd": state.session_cost_usd,
                "input_tokens": state.cumulative.total_input_tokens,
                "output_tokens": state.cumulative.total_output_tokens,
                "request_count": state.request_count,
            },
            "events": {"applied": applied, "skipped": skipped},
        }
        if saved_id is not None:
            output["saved_conversation"] = saved_id
        json.dump(output, destination, indent=2)
        destination.write("\n")

        if snapshot_out is not None:
            snapshot_out.parent.mkdir(parents=True, exist_ok=True)
            snapshot_out.write_text(json.dumps(session.store.to_snapshot().to_dict(), indent=2), encoding="utf-8")
        if commands_out is not None:
            commands_out.parent.mkdir(parents=True, exist_ok=True)
            commands_out.write_text(
                "".join(json.dumps(command, sort_keys=True) + "\n" for command in transport.sent),
                encoding="utf-8",
            )
    finally:
        session.dispose()
    _LOGGER.info("Replayed %s: %d applied, %d skipped", events_path, applied, skipped)
    return 0


def _read_events(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                _LOGGER.warning("Skipping line %d of %s: %s", line_number, path, exc)
                continue
            if not isinstance(payload, dict):
                _LOGGER.warning("Skipping line %d of %s: not a JSON object", line_number, path)
                continue
            yield payload


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quillchat",
        add_help=True,
        description="Replay assistant session event logs or inspect quillchat configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.quillchat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")
    replay_parser = commands.add_parser("replay", help="Feed a JSON-lines event log through a session.")
    replay_parser.add_argument("events", metavar="EVENTS.jsonl", help="Recorded inbound events, one per line.")
    replay_parser.add_argument("--snapshot-out", metavar="PATH", help="Write the final conversation snapshot here.")
    replay_parser.add_argument("--commands-out", metavar="PATH", help="Write outbound commands as JSON lines here.")
    replay_parser.add_argument(
        "--save", action="store_true", help="Persist the replayed conversation to the conversations directory."
    )
    commands.add_parser("conversations", help="List stored conversations.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is list:
        try:
            value = json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
        if not isinstance(value, list):
            raise ValueError("List overrides must be valid JSON arrays")
        return value
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": asdict(settings), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("QUILLCHAT_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
