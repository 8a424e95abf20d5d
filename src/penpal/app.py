"""Console host and bootstrap helpers for the Penpal companion."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .companion.orchestrator import CompanionOrchestrator
from .companion.views import ChatSurface, PresenceChannel
from .editor.document_model import EditorState
from .services.settings import Settings, SettingsStore, coerce_comment_probability, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

QUIT_COMMANDS = {"/quit", "/exit"}


def configure_logging(settings: Settings, *, debug: bool = False, console: bool = False) -> Path:
    """Configure file logging (and optionally console logging) for ``settings``."""

    log_path = logging_utils.setup_logging(settings, debug=debug, console=console)
    _LOGGER.debug(
        "Logging to %s (level=%s)",
        log_path,
        logging.getLevelName(logging_utils.level_for(settings, debug=debug)),
    )
    return log_path


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
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``penpal`` console script."""

    args = _parse_cli_args(argv)
    settings_path = args.settings_path or os.environ.get("PENPAL_SETTINGS_PATH")
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
        return

    configure_logging(settings, debug=_env_flag("PENPAL_DEBUG"))

    document = _read_document(args.document)
    try:
        asyncio.run(run_console(settings, store=settings_store, document=document))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def run_console(
    settings: Settings,
    *,
    store: SettingsStore | None = None,
    document: EditorState | None = None,
    read_line: Callable[[], str] = input,
    output: TextIO | None = None,
    orchestrator: CompanionOrchestrator | None = None,
) -> None:
    """Chat with the companion from a terminal until ``/quit`` or EOF.

    ``/set key=value`` edits a setting, persists it through ``store`` and
    applies it to the running companion.
    """

    stream = output or sys.stdout
    companion = orchestrator or CompanionOrchestrator(settings)
    presence = PresenceChannel(companion)
    chat = ChatSurface(companion)
    presence.subscribe(lambda: _write(stream, f"[{presence.text}]"))
    loop = asyncio.get_running_loop()

    await companion.on_layout_ready(document)
    try:
        while True:
            try:
                line = await loop.run_in_executor(None, read_line)
            except EOFError:
                break
            command = line.strip()
            if not command:
                continue
            if command in QUIT_COMMANDS:
                break
            if command.startswith("/set "):
                _handle_set_command(companion, store, command[len("/set ") :], stream)
                continue
            reply = await chat.submit(command)
            if reply is None and chat.entries and chat.entries[-1].kind == "system":
                _write(stream, chat.entries[-1].text)
            elif reply:
                _write(stream, f"{companion.settings.companion_name}: {reply}")
    finally:
        await companion.aclose()


def _handle_set_command(
    companion: CompanionOrchestrator,
    store: SettingsStore | None,
    assignment: str,
    stream: TextIO,
) -> None:
    try:
        overrides = _coerce_cli_overrides([assignment])
    except ValueError as exc:
        _write(stream, f"Invalid setting: {exc}")
        return
    updated = replace(companion.settings, **overrides)
    if store is not None:
        try:
            store.save(updated)
        except OSError as exc:
            _LOGGER.warning("Unable to persist settings: %s", exc)
    companion.apply_settings(updated)
    logging_utils.apply_settings(companion.settings, debug=_env_flag("PENPAL_DEBUG"))
    _write(stream, f"Updated {', '.join(sorted(overrides))}.")


def _write(stream: TextIO, text: str) -> None:
    stream.write(text + "\n")
    stream.flush()


def _read_document(path: str | None) -> EditorState | None:
    if not path:
        return None
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        _LOGGER.warning("Unable to read document %s: %s", path, exc)
        return None
    return EditorState(text=text, cursor_line=max(0, text.count("\n")))


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="penpal",
        description="Chat with the Penpal writing companion or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.penpal/settings.json path.",
    )
    parser.add_argument(
        "--document",
        metavar="PATH",
        help="Seed the companion with an open document before greeting.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
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
        if key == "comment_probability":
            overrides[key] = coerce_comment_probability(raw_value)
            continue
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
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    if get_origin(annotation) is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else annotation


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
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("PENPAL_"))


if __name__ == "__main__":  # pragma: no cover
    main()
