"""Runtime settings for chatweave and their on-disk representation.

Settings live in ``~/.chatweave/settings.json``. The API key never reaches the
file in plaintext: it is stored as a Fernet token under ``api_key_ciphertext``
and decrypted with a key file kept beside the settings.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..chat.background import BackgroundConfig
from ..chat.foreground import StreamConfig
from ..chat.tools import ExecutorConfig
from ..transport.client import ClientSettings

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_CONFIG_HOME = Path.home() / ".chatweave"
_FORMAT_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"
_TRUTHY = frozenset({"1", "true", "yes", "on", "debug"})


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUTHY


# variable -> (settings field, converter)
_ENVIRONMENT: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "CHATWEAVE_API_KEY": ("api_key", str),
    "CHATWEAVE_BASE_URL": ("base_url", str),
    "CHATWEAVE_MODEL": ("model", str),
    "CHATWEAVE_ORGANIZATION": ("organization", str),
    "CHATWEAVE_DATABASE_PATH": ("database_path", str),
    "CHATWEAVE_JOBS_URL": ("jobs_base_url", str),
    "CHATWEAVE_DEBUG_LOGGING": ("debug_logging", _as_bool),
    "CHATWEAVE_REQUEST_TIMEOUT": ("request_timeout", float),
    "CHATWEAVE_TOOL_TIMEOUT": ("tool_timeout_seconds", float),
    "CHATWEAVE_MAX_TOOL_ITERATIONS": ("max_tool_iterations", int),
    "CHATWEAVE_MAX_IMAGES": ("max_images", int),
    "CHATWEAVE_FLUSH_INTERVAL_MS": ("flush_interval_ms", int),
    "CHATWEAVE_FLUSH_EVERY_CHUNKS": ("flush_every_chunks", int),
}


@dataclass(slots=True)
class Settings:
    """Everything a :class:`~chatweave.chat.session.ChatSession` needs to be built from disk."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    model: str = "openai/gpt-4o-mini"
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    master_prompt: str = ""
    max_tool_iterations: int = 10
    max_images: int = 6
    flush_interval_ms: int = 500
    flush_every_chunks: int = 50
    tool_result_summary_threshold: int = 500
    tool_timeout_seconds: float = 30.0
    background_poll_idle_ms: int = 300
    background_poll_active_ms: int = 80
    background_persist_interval_ms: int = 500
    continue_tail_chars: int = 1200
    database_path: str | None = None
    jobs_base_url: str | None = None

    def stream_config(self) -> StreamConfig:
        return StreamConfig(
            max_tool_iterations=max(1, self.max_tool_iterations),
            max_images=max(0, self.max_images),
            flush_interval=max(0, self.flush_interval_ms) / 1000.0,
            flush_every_chunks=max(1, self.flush_every_chunks),
            tool_result_summary_threshold=max(0, self.tool_result_summary_threshold),
        )

    def background_config(self) -> BackgroundConfig:
        return BackgroundConfig(
            poll_idle_interval=max(0, self.background_poll_idle_ms) / 1000.0,
            poll_active_interval=max(0, self.background_poll_active_ms) / 1000.0,
            persist_interval=max(0, self.background_persist_interval_ms) / 1000.0,
        )

    def executor_config(self) -> ExecutorConfig:
        timeout = self.tool_timeout_seconds if self.tool_timeout_seconds > 0 else None
        return ExecutorConfig(default_timeout=timeout, log_arguments=self.debug_logging)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )


class SecretVault:
    """Fernet encryption for secrets at rest.

    Tokens carry a ``fernet:`` scheme prefix. The key is generated on first use
    and written with owner-only permissions.
    """

    scheme = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self.key_path = key_path or (_CONFIG_HOME / "settings.key")
        self._cipher: Fernet | None = None

    @property
    def strategy(self) -> str:
        return self.scheme

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.scheme}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for ``token``; raise ``ValueError`` when the key does not match."""

        if not token:
            return ""
        scheme, _, body = token.partition(":")
        if not body:
            scheme, body = "", token
        if scheme and scheme != self.scheme:
            LOGGER.warning("Secret uses unsupported scheme %r; leaving it untouched", scheme)
            return token
        try:
            return self._fernet().decrypt(body.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Secret could not be decrypted with the configured key") from exc

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            if self.key_path.exists():
                key = self.key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _atomic_write(self.key_path, key, mode=0o600)
                LOGGER.info("Generated settings encryption key at %s", self.key_path)
            self._cipher = Fernet(key)
        return self._cipher


class SettingsStore:
    """Reads and writes :class:`Settings` as versioned JSON."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self.path = path or (_CONFIG_HOME / "settings.json")
        self.vault = vault or SecretVault(key_path=self.path.with_suffix(".key"))

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return persisted settings with runtime ``overrides`` and ``CHATWEAVE_*`` variables applied.

        Environment variables win over runtime overrides. A file holding a
        plaintext key, or written under another format version, is rewritten in
        the current encrypted format.
        """

        document = self._read()
        settings = self._decode(document) if document else Settings()

        if document and ("api_key" in document or document.get("version") != _FORMAT_VERSION):
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Could not rewrite %s in the current format: %s", self.path, exc)

        settings = _with_overrides(settings, overrides or {}, "runtime")
        return _with_overrides(settings, _environment_overrides(), "environment")

    def save(self, settings: Settings) -> Path:
        document = asdict(settings)
        secret = document.pop("api_key") or ""
        if secret:
            document[_CIPHERTEXT_KEY] = self.vault.encrypt(secret)
        document["version"] = _FORMAT_VERSION
        document["secret_backend"] = self.vault.strategy
        _atomic_write(self.path, json.dumps(document, indent=2, sort_keys=True).encode("utf-8"))
        LOGGER.debug("Wrote settings to %s (api_key=%s)", self.path, redact_secret(secret))
        return self.path

    def _read(self) -> dict[str, Any]:
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring malformed settings file %s: %s", self.path, exc)
            return {}
        if not isinstance(document, dict):
            LOGGER.warning("Ignoring settings file %s: top level is not an object", self.path)
            return {}
        return document

    def _decode(self, document: Mapping[str, Any]) -> Settings:
        known = {item.name for item in fields(Settings)} - {"api_key"}
        settings = Settings(**{key: value for key, value in document.items() if key in known})
        LOGGER.debug("Loaded settings from %s", self.path)
        return replace(settings, api_key=self._recover_api_key(document))

    def _recover_api_key(self, document: Mapping[str, Any]) -> str:
        ciphertext = document.get(_CIPHERTEXT_KEY)
        if ciphertext:
            try:
                return self.vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Stored API key is unreadable and was dropped: %s", exc)
                return ""
        legacy = document.get("api_key")
        if legacy:
            LOGGER.info("Found a plaintext API key in %s; it will be saved encrypted", self.path)
            return str(legacy)
        return ""


def _environment_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for variable, (name, convert) in _ENVIRONMENT.items():
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            values[name] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", variable, raw, convert.__name__)
    return values


def _with_overrides(settings: Settings, overrides: Mapping[str, Any], source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    accepted = {key: value for key, value in overrides.items() if key in known and value is not None}
    if not accepted:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, ", ".join(sorted(accepted)))
    return replace(settings, **accepted)


def _atomic_write(path: Path, data: bytes, *, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.partial")
    staging.write_bytes(data)
    if mode is not None and os.name != "nt":  # pragma: no cover - POSIX only
        os.chmod(staging, mode)
    staging.replace(path)


def redact_secret(value: str | None) -> str:
    """Mask ``value`` for logs, keeping two characters at each end of longer secrets."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
