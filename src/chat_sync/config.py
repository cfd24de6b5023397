"""Configuration loading for chat-sync.

Variables are declared in a YAML file (``variables`` + optional
``validation``) and resolved from the process environment, then a ``.env``
file, then the declared defaults. The resolved values are validated into a
:class:`SyncSettings` model.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config_vars.yaml")
ENV_PREFIX = "CHAT_SYNC_"
SUPPORTED_TYPES = {"str", "int", "float", "bool"}


class SyncSettings(BaseModel):
    """Validated runtime settings for the engine, gateways and CLI."""

    env: str = "development"
    base_url: Optional[str] = None
    api_token: Optional[str] = Field(default=None, repr=False)
    api_prefix: str = "/api/chat"
    pagination: Literal["cursor", "offset"] = "cursor"
    poll_interval: float = Field(default=10.0, gt=0)
    page_size: int = Field(default=20, gt=0)
    freshness_seconds: float = Field(default=30.0, ge=0)
    max_cached_windows: int = Field(default=20, ge=1)
    max_body_length: int = Field(default=4000, gt=0)
    max_attachment_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    auto_mark_read: bool = True
    request_timeout: float = Field(default=10.0, gt=0)
    viewer_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "SyncSettings":
        """Build settings from ``CHAT_SYNC_*`` names, skipping unset entries."""

        fields: dict[str, Any] = {}
        for name, value in values.items():
            if value is None or not name.startswith(ENV_PREFIX):
                continue
            fields[name[len(ENV_PREFIX):].lower()] = value
        return cls(**fields)


def mask_secret(value: str) -> str:
    return f"****{value[-4:]}" if len(value) > 8 else "****"


def coerce_type(raw_value: Any, target_type: str, variable_name: str) -> Any:
    """Convert ``raw_value`` to ``target_type`` with informative errors."""

    if target_type not in SUPPORTED_TYPES:
        raise ValueError(
            f"Unsupported type '{target_type}' for variable '{variable_name}'"
        )
    if raw_value is None:
        return None

    if target_type == "str":
        if isinstance(raw_value, bool):
            return "true" if raw_value else "false"
        return str(raw_value)

    value_str = str(raw_value).strip()

    if target_type == "int":
        try:
            return int(value_str)
        except ValueError as exc:
            raise ValueError(
                f"Cannot convert '{variable_name}' value '{value_str}' to int"
            ) from exc

    if target_type == "float":
        try:
            return float(value_str)
        except ValueError as exc:
            raise ValueError(
                f"Cannot convert '{variable_name}' value '{value_str}' to float"
            ) from exc

    if value_str.lower() in {"true", "1", "yes"}:
        return True
    if value_str.lower() in {"false", "0", "no"}:
        return False
    raise ValueError(
        f"Invalid boolean value for '{variable_name}': '{value_str}'. "
        "Must be one of: true, false, 1, 0, yes, no"
    )


def read_variables_file(path: Path) -> dict[str, Any]:
    """Parse the variables YAML; an empty file declares nothing."""

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping with a 'variables' section")
    return data


def read_dotenv(path: str | Path | None, search_dir: Path) -> dict[str, str]:
    """
    Values from ``path``, or from the first ``.env`` found from the working
    directory upwards, or from one next to the variables file.
    """

    if path:
        candidate = Path(path).expanduser()
    else:
        candidate = Path(find_dotenv(usecwd=True) or search_dir / ".env")
    if not candidate.is_file():
        return {}
    return {key: value for key, value in dotenv_values(candidate).items() if value is not None}


class ConfigManager:
    """Load and validate configuration variables from the environment and ``.env``."""

    def __init__(
        self,
        config_path: str | Path | None = None,
        *,
        dotenv_path: str | Path | None = None,
        strict: Optional[bool] = None,
        auto_load: bool = True,
        debug: bool = False,
    ) -> None:
        self._config_path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser().resolve()
        self._raw_config = read_variables_file(self._config_path)
        self._variables = self._extract_variables()
        self._validation = self._extract_validation()
        self._dotenv_values = read_dotenv(dotenv_path, self._config_path.parent)
        self._debug = debug
        self.strict = (
            strict if strict is not None else bool(self._validation.get("strict", False))
        )
        self._values: dict[str, Any] = {}
        self._loaded = False

        if auto_load:
            self.load()

    def _extract_variables(self) -> dict[str, dict[str, Any]]:
        variables = self._raw_config.get("variables", {})
        if not isinstance(variables, dict):
            raise ValueError(
                "'variables' section in config must be a mapping of variable definitions."
            )
        for name, definition in variables.items():
            self._validate_variable_definition(name, definition)
        return variables

    def _extract_validation(self) -> dict[str, Any]:
        validation = self._raw_config.get("validation", {})
        if validation and not isinstance(validation, dict):
            raise ValueError("'validation' section must be a mapping if provided.")
        data = validation or {}
        for key in ("required", "optional"):
            collection = data.get(key)
            if collection is not None and not isinstance(collection, list):
                raise ValueError(f"Validation '{key}' entry must be a list if provided.")
        return data

    @staticmethod
    def _validate_variable_definition(name: str, definition: Any) -> None:
        if not isinstance(definition, dict):
            raise ValueError(f"Invalid configuration for '{name}'. Expected a mapping.")
        source = definition.get("source")
        if not source or not isinstance(source, str):
            raise ValueError(f"Variable '{name}' must define a string 'source' entry.")
        v_type = str(definition.get("type", "str"))
        if v_type not in SUPPORTED_TYPES:
            raise ValueError(f"Variable '{name}' uses unsupported type '{v_type}'.")

    def _lookup(self, source: str) -> Optional[str]:
        value = os.environ.get(source)
        if value is not None:
            return value
        return self._dotenv_values.get(source)

    def load(self) -> None:
        """Resolve every declared variable."""

        if self._loaded:
            return

        required = set(self._validation.get("required", []) or [])
        optional = set(self._validation.get("optional", []) or [])

        for var_name, definition in self._variables.items():
            source = definition["source"]
            target_type = str(definition.get("type", "str"))
            raw_value: Any = self._lookup(source)

            if raw_value is None:
                if self.strict or var_name in required:
                    message = (
                        f"Required variable '{var_name}' not found in "
                        f"environment or .env file (source '{source}')."
                    )
                    logger.error(message)
                    raise RuntimeError(message)
                if var_name in optional:
                    logger.debug("Optional variable %s not set", var_name)
                if "default" not in definition:
                    self._values[var_name] = None
                    continue
                raw_value = definition["default"]

            try:
                value = coerce_type(raw_value, target_type, var_name)
            except ValueError as exc:
                logger.error("Type coercion failed for %s: %s", var_name, exc)
                raise
            self._values[var_name] = value

            display = str(value)
            if definition.get("secret") and not self._debug:
                display = mask_secret(display)
            logger.debug("Loaded %s: %s", var_name, display)

        self._loaded = True

    def get(self, key: str, default: Any = None) -> Any:
        if not self._loaded:
            self.load()
        value = self._values.get(key)
        return default if value is None else value

    def require(self, key: str) -> Any:
        if not self._loaded:
            self.load()
        if self._values.get(key) is None:
            raise RuntimeError(f"Required configuration '{key}' is missing.")
        return self._values[key]

    @property
    def values(self) -> dict[str, Any]:
        if not self._loaded:
            self.load()
        return dict(self._values)

    def settings(self) -> SyncSettings:
        return SyncSettings.from_values(self.values)


def load_settings(
    config_path: str | Path | None = None,
    *,
    dotenv_path: str | Path | None = None,
    debug: bool = False,
) -> SyncSettings:
    """Resolve configuration and return validated :class:`SyncSettings`."""

    manager = ConfigManager(config_path, dotenv_path=dotenv_path, debug=debug)
    settings = manager.settings()
    logger.info(
        "Loaded chat-sync settings env=%s base_url=%s poll_interval=%ss",
        settings.env,
        settings.base_url,
        settings.poll_interval,
    )
    return settings


__all__ = [
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "SyncSettings",
    "coerce_type",
    "load_settings",
    "mask_secret",
    "read_dotenv",
    "read_variables_file",
]
