"""Companion settings and the JSON store that keeps them between sessions."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_COMPANION_NAME",
    "DEFAULT_COMMENT_PROBABILITY",
    "MIN_COMMENT_PROBABILITY",
    "MAX_COMMENT_PROBABILITY",
    "coerce_comment_probability",
    "normalize_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".penpal"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
# The credential never hits disk in clear text; only this field is written.
_API_KEY_FIELD = "api_key_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

DEFAULT_COMPANION_NAME = "Anaxagoras"
DEFAULT_COMMENT_PROBABILITY = 0.1
MIN_COMMENT_PROBABILITY = 0.01
MAX_COMMENT_PROBABILITY = 1.0


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    api_key: str = ""
    companion_name: str = DEFAULT_COMPANION_NAME
    greeting_enabled: bool = True
    comment_probability: float = DEFAULT_COMMENT_PROBABILITY
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False

    @property
    def has_credential(self) -> bool:
        return bool((self.api_key or "").strip())


def coerce_comment_probability(value: Any) -> float:
    """Return ``value`` as a probability in range, or the default when it is not.

    Accepts raw text from a settings form as well as numbers. Anything that
    does not parse, is NaN, or falls outside ``[0.01, 1.0]`` resets to the
    default rather than being clamped.
    """

    if isinstance(value, bool):
        return DEFAULT_COMMENT_PROBABILITY
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return DEFAULT_COMMENT_PROBABILITY
    if math.isnan(number) or number < MIN_COMMENT_PROBABILITY or number > MAX_COMMENT_PROBABILITY:
        return DEFAULT_COMMENT_PROBABILITY
    return number


def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "PENPAL_API_KEY": ("api_key", str.strip),
    "PENPAL_BASE_URL": ("base_url", str.strip),
    "PENPAL_MODEL": ("model", str.strip),
    "PENPAL_COMPANION_NAME": ("companion_name", str),
    "PENPAL_GREETING_ENABLED": ("greeting_enabled", _parse_flag),
    "PENPAL_DEBUG_LOGGING": ("debug_logging", _parse_flag),
    "PENPAL_COMMENT_PROBABILITY": ("comment_probability", coerce_comment_probability),
    "PENPAL_REQUEST_TIMEOUT": ("request_timeout", float),
}


class SettingsStore:
    """Reads and writes :class:`Settings` as one JSON document.

    Precedence on load, lowest first: defaults, the file, CLI overrides,
    ``PENPAL_*`` environment variables. The result is always normalized, so
    callers never see an out-of-range probability or a blank companion name.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        payload = self._read_payload()
        api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None))
        settings = replace(Settings(**_filter_fields(payload)), api_key=api_key)
        if overrides:
            settings = _merge(settings, overrides, source="CLI")
        env = _env_overrides()
        if env:
            settings = _merge(settings, env, source="environment")
        return normalize_settings(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        data = asdict(normalize_settings(settings))
        ciphertext = self._encrypt_api_key(data.pop("api_key"))
        if ciphertext:
            data[_API_KEY_FIELD] = ciphertext
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _encrypt_api_key(self, api_key: str) -> str | None:
        api_key = (api_key or "").strip()
        if not api_key:
            return None
        try:
            return self._vault.encrypt(api_key)
        except OSError as exc:  # pragma: no cover - depends on filesystem
            LOGGER.warning("Unable to write the key file; API key not saved: %s", exc)
            return None

    def _decrypt_api_key(self, ciphertext: Any) -> str:
        if not ciphertext or not isinstance(ciphertext, str):
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError:
            # The key file was replaced or lost; the companion runs unconfigured.
            LOGGER.warning("Stored API key cannot be decrypted with %s; ignoring it", self._vault.key_path)
            return ""


class SecretVault:
    """Encrypts and decrypts the API key with a Fernet key stored on disk."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        try:
            raw = self._get_fernet().decrypt(token.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    allowed = {field.name for field in fields(Settings)}
    accepted = {key: value for key, value in overrides.items() if key in allowed and value is not None}
    if not accepted:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(accepted))
    return replace(settings, **accepted)


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring environment override %s=%r", env_name, raw)
    return overrides


def normalize_settings(settings: Settings) -> Settings:
    """Coerce the comment probability and fall back to the default name when blank."""

    probability = coerce_comment_probability(settings.comment_probability)
    name = (settings.companion_name or "").strip() or DEFAULT_COMPANION_NAME
    if probability == settings.comment_probability and name == settings.companion_name:
        return settings
    return replace(settings, comment_probability=probability, companion_name=name)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
