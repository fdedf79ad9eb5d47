"""Settings dataclass and loading helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings

__all__ = [
    "Settings",
    "SettingsStore",
    "load_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".agentloop"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTLOOP_API_KEY": "api_key",
    "AGENTLOOP_BASE_URL": "base_url",
    "AGENTLOOP_MODEL": "model",
    "AGENTLOOP_ORGANIZATION": "organization",
    "AGENTLOOP_TOOL_NAME_SEPARATOR": "tool_name_separator",
    "AGENTLOOP_SYSTEM_PROMPT": "system_prompt",
    "AGENTLOOP_TRANSCRIPT_DIR": "transcript_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTLOOP_DEBUG_LOGGING": "debug_logging",
    "AGENTLOOP_VISION": "vision",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTLOOP_REQUEST_TIMEOUT": "request_timeout",
    "AGENTLOOP_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTLOOP_MAX_RETRIES": "max_retries",
    "AGENTLOOP_MAX_TOOL_ITERATIONS": "max_tool_iterations",
    "AGENTLOOP_STREAM_BUFFER_SIZE": "stream_buffer_size",
    "AGENTLOOP_RESOURCE_CACHE_MAX_ENTRIES": "resource_cache_max_entries",
    "AGENTLOOP_RESOURCE_CACHE_MAX_TOKENS": "resource_cache_max_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant embedded in the user's workspace. "
    "Use the available tools when they help answer the request."
)


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the conversation loop and its backend."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tool_iterations: int = 8
    tool_name_separator: str = "."
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    stream_buffer_size: int = 256
    vision: bool = False
    resource_cache_max_entries: int | None = None
    resource_cache_max_tokens: int | None = None
    debug_logging: bool = False
    transcript_dir: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            temperature=self.temperature,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def describe(self) -> dict[str, Any]:
        """Return the settings as a dict safe to log."""
        data = {item.name: getattr(self, item.name) for item in fields(self)}
        data["api_key"] = redact_secret(self.api_key)
        return data


class SettingsStore:
    """Reads :class:`Settings` from a JSON file and applies overrides."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(
        self,
        *,
        overrides: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Settings:
        """Load settings from disk, applying runtime and environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            try:
                settings = Settings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        settings = self._apply_env_overrides(settings, os.environ if env is None else env)
        LOGGER.debug("Settings loaded from %s: %s", self._path, settings.describe())
        return settings

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings, env: Mapping[str, str]) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def load_settings(path: Path | str | None = None, env: Mapping[str, str] | None = None) -> Settings:
    """Shortcut for ``SettingsStore(path).load(env=env)``."""

    return SettingsStore(path).load(env=env)


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
