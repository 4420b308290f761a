"""Configuration system for laneboard using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.laneboard] section (project-level)
3. ./laneboard.toml (project-level, explicit)
4. ~/.config/laneboard/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use LANEBOARD_ prefix with nested delimiter __.
Example: LANEBOARD_LOCALE__TIME_ZONE, LANEBOARD_TIMING__SEARCH_DEBOUNCE_MS
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .log import DEFAULT_FORMAT, warn


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


#: Thresholds below this value are raised to it; zero disables windowing.
MIN_PERFORMANCE_THRESHOLD = 100


def user_config_path() -> Path:
    """Return the per-user configuration file location."""
    if sys.platform == "win32":
        return (Path(os.environ.get("APPDATA", "~")) / "laneboard" / "config.toml").expanduser()
    return Path("~/.config/laneboard/config.toml").expanduser()


def _find_config_files() -> list[Path]:
    """Existing TOML sources, weakest first."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("laneboard.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = user_config_path()
    if user_config.exists():
        files.append(user_config)

    # Explicit override file (highest file priority)
    env_config = os.environ.get("LANEBOARD_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Merge every TOML source into one nested dict."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            warn(f"Ignoring unreadable config file {config_file}: {exc}")
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("laneboard", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``override`` onto ``base``."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class LocaleSettings(BaseSettings):
    """Locale, time zone and currency used for display formatting.

    Environment prefix: LANEBOARD_LOCALE__
    Example: LANEBOARD_LOCALE__TIME_ZONE="America/New_York"
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD_LOCALE__",
        extra="ignore",
    )

    locale: str = "en-US"
    time_zone: str = "UTC"
    currency: str = "USD"
    date_time_format: str | None = Field(
        default=None,
        description="Default date/time pattern when a board does not set one",
    )

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.strip().upper()


class TimingSettings(BaseSettings):
    """Debounce, throttle and tick intervals in milliseconds.

    Environment prefix: LANEBOARD_TIMING__
    Example: LANEBOARD_TIMING__SEARCH_DEBOUNCE_MS=300
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD_TIMING__",
        extra="ignore",
    )

    search_debounce_ms: int = Field(default=200, ge=0)
    drag_over_throttle_ms: int = Field(default=50, ge=0)
    parent_selection_debounce_ms: int = Field(default=200, ge=0)
    tick_ms: int = Field(default=16, ge=0, description="Length of one scheduling tick")


class VirtualizationSettings(BaseSettings):
    """Large-lane windowing settings.

    Environment prefix: LANEBOARD_VIRTUALIZATION__
    Example: LANEBOARD_VIRTUALIZATION__PERFORMANCE_THRESHOLD=0
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD_VIRTUALIZATION__",
        extra="ignore",
    )

    performance_threshold: int = Field(
        default=200,
        ge=0,
        description="Total card count that enables windowing (0 disables)",
    )
    buffer: int = Field(default=5, ge=0, description="Extra rows rendered on each side")
    initial_slice: int = Field(default=20, ge=1, description="Rows shown before measuring")
    default_row_size: float | None = Field(default=None, gt=0)

    @field_validator("performance_threshold")
    @classmethod
    def _clamp_threshold(cls, v: int) -> int:
        if v == 0:
            return 0
        return max(v, MIN_PERFORMANCE_THRESHOLD)


class FetchSettings(BaseSettings):
    """Record fetch settings.

    Environment prefix: LANEBOARD_FETCH__
    Example: LANEBOARD_FETCH__PAGE_SIZE=500
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD_FETCH__",
        extra="ignore",
    )

    page_size: int = Field(default=200, ge=1)


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: LANEBOARD_LOG__
    Example: LANEBOARD_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = DEFAULT_FORMAT


_SECTIONS: list[tuple[str, str, str]] = [
    ("Locale", "locale", "LOCALE"),
    ("Timing", "timing", "TIMING"),
    ("Virtualization", "virtualization", "VIRTUALIZATION"),
    ("Fetch", "fetch", "FETCH"),
    ("Logging", "log", "LOG"),
]


class LaneBoardSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: LANEBOARD__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.laneboard] section
    3. ./laneboard.toml (project-level)
    4. ~/.config/laneboard/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="LANEBOARD__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    locale: LocaleSettings = Field(default_factory=LocaleSettings)
    timing: TimingSettings = Field(default_factory=TimingSettings)
    virtualization: VirtualizationSettings = Field(default_factory=VirtualizationSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        # TOML first, explicit keyword data wins
        merged = _deep_merge(_load_toml_config(), data)
        super().__init__(**merged)

    def to_toml(self) -> str:
        """Render the current settings as a TOML document."""
        lines = ["# laneboard Configuration", "# Generated by: laneboard config --toml", ""]

        all_data = self.model_dump()
        for _, attr_name, _ in _SECTIONS:
            lines.append(f"[{attr_name}]")
            for field_name, field_value in all_data[attr_name].items():
                if field_value is None:
                    continue
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Render the current settings as ``export`` lines."""
        lines = [
            "# laneboard Environment Variables",
            "# Generated by: laneboard config --env",
            "",
        ]

        all_data = self.model_dump()
        for _, attr_name, env_prefix in _SECTIONS:
            for field_name, field_value in all_data[attr_name].items():
                if field_value is None:
                    continue
                env_name = f"LANEBOARD_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Human-readable dump grouped by section."""
        lines = ["laneboard Configuration", "=" * 60, ""]

        all_data = self.model_dump()
        for display_name, attr_name, _ in _SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data[attr_name].items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:28} = {value_str}")

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> LaneBoardSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return LaneBoardSettings()


def clear_settings() -> None:
    """Drop the cached settings; the next lookup reloads them."""
    get_settings.cache_clear()


def reload_settings() -> LaneBoardSettings:
    """Clear the cache and load a fresh settings object."""
    clear_settings()
    return get_settings()
