"""Log file setup driven by the companion's settings.

The level follows ``Settings.debug_logging`` (or a forced debug flag) and is
re-applied whenever settings change at runtime. Every record passes through a
filter that masks the active API key, since request payloads are logged in
debug mode.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

from ..services.settings import Settings, redact_secret

__all__ = ["CredentialMask", "apply_settings", "get_log_path", "level_for", "setup_logging"]

LOG_FILE_NAME = "penpal.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DEFAULT_LOG_DIR = Path.home() / ".penpal" / "logs"
_CHATTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_installed: list[logging.Handler] = []
_log_path: Path | None = None


class CredentialMask(logging.Filter):
    """Replaces the active API key in formatted messages with its redacted form."""

    def __init__(self) -> None:
        super().__init__()
        self._secret = ""

    def update(self, secret: str) -> None:
        self._secret = (secret or "").strip()

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secret:
            message = record.getMessage()
            if self._secret in message:
                record.msg = message.replace(self._secret, redact_secret(self._secret))
                record.args = None
        return True


_MASK = CredentialMask()


def level_for(settings: Settings, *, debug: bool = False) -> int:
    return logging.DEBUG if debug or settings.debug_logging else logging.INFO


def setup_logging(
    settings: Settings,
    *,
    debug: bool = False,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Attach Penpal's handlers to the root logger and return the log file path.

    Calling it again swaps out the handlers from the previous call; handlers
    installed by anyone else are left alone.
    """

    global _log_path
    _remove_installed_handlers()

    target_dir = Path(log_dir or os.environ.get("PENPAL_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_MASK)
        root.addHandler(handler)
    _installed.extend(handlers)
    logging.captureWarnings(True)

    _log_path = log_path
    apply_settings(settings, debug=debug)
    return log_path


def apply_settings(settings: Settings, *, debug: bool = False) -> None:
    """Follow a settings change: new level, new credential to mask."""

    _MASK.update(settings.api_key)
    level = level_for(settings, debug=debug)
    logging.getLogger().setLevel(level)
    for handler in _installed:
        handler.setLevel(level)
    # HTTP and SDK chatter stays at WARNING even in debug mode.
    quiet_level = max(level, logging.WARNING)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _log_path


def _remove_installed_handlers() -> None:
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()
