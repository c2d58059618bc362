from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .jellyfin_client import validate_server_url
from .utils import env_bool, env_str, load_yaml_file

DEFAULT_PROVIDER_NAME = "MetaTube"
DEFAULT_RUN_TIME = dt.time(hour=1, minute=0)

ENV_ENABLE_TRAILERS = "TRAILERSTRM_ENABLE_TRAILERS"
ENV_DRY_RUN = "TRAILERSTRM_DRY_RUN"
ENV_SERVER_URL = "TRAILERSTRM_SERVER_URL"
ENV_API_KEY = "TRAILERSTRM_API_KEY"


@dataclass
class ScheduleSettings:
    time_of_day: dt.time = DEFAULT_RUN_TIME
    run_on_start: bool = False


@dataclass
class ServerSettings:
    url: str | None = None
    api_key: str | None = None
    user_id: str | None = None
    timeout: float = 30.0
    page_size: int = 500

    def require_url(self) -> str:
        if not self.url:
            raise ValueError(
                f"'settings.server.url' is required for this command (or set {ENV_SERVER_URL})"
            )
        return self.url


@dataclass
class Settings:
    enable_trailers: bool = True
    provider_name: str = DEFAULT_PROVIDER_NAME
    dry_run: bool = False
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    path_mappings: dict[str, str] = field(default_factory=dict)


@dataclass
class AppConfig:
    settings: Settings
    source_path: Path | None = None


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_time_of_day(value: Any, *, field_name: str) -> dt.time:
    if value is None:
        return DEFAULT_RUN_TIME
    if isinstance(value, dt.time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 01:00 as a sexagesimal integer (minutes since midnight).
        if not 0 <= value < 24 * 60:
            raise ValueError(f"'{field_name}' contains out-of-range values")
        return dt.time(hour=value // 60, minute=value % 60)
    if not isinstance(value, str):
        raise ValueError(f"'{field_name}' must be provided as HH:MM or HH:MM:SS")

    parts = value.strip().split(":")
    if len(parts) not in {2, 3}:
        raise ValueError(f"'{field_name}' must be formatted as HH:MM or HH:MM:SS")

    try:
        hour = int(parts[0])
        minute = int(parts[1])
        second = int(parts[2]) if len(parts) == 3 else 0
    except ValueError as exc:  # noqa: PERF203
        raise ValueError(f"'{field_name}' components must be integers") from exc

    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValueError(f"'{field_name}' contains out-of-range values")

    return dt.time(hour=hour, minute=minute, second=second)


def _build_schedule_settings(data: Any) -> ScheduleSettings:
    if not data:
        return ScheduleSettings()
    if not isinstance(data, dict):
        raise ValueError("'schedule' must be provided as a mapping when specified")
    return ScheduleSettings(
        time_of_day=_parse_time_of_day(data.get("time_of_day"), field_name="schedule.time_of_day"),
        run_on_start=bool(data.get("run_on_start", False)),
    )


def _build_server_settings(data: Any) -> ServerSettings:
    if not data:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("'server' must be provided as a mapping when specified")

    url = _clean_str(data.get("url"))
    if url and not validate_server_url(url):
        raise ValueError(f"'server.url' must be a valid http/https URL, got: {url}")

    try:
        timeout = float(data.get("timeout", 30.0))
    except (TypeError, ValueError) as exc:
        raise ValueError("'server.timeout' must be a number") from exc
    if timeout <= 0:
        raise ValueError("'server.timeout' must be greater than 0")

    try:
        page_size = int(data.get("page_size", 500))
    except (TypeError, ValueError) as exc:
        raise ValueError("'server.page_size' must be an integer") from exc
    if page_size <= 0:
        raise ValueError("'server.page_size' must be greater than 0")

    return ServerSettings(
        url=url,
        api_key=_clean_str(data.get("api_key")),
        user_id=_clean_str(data.get("user_id")),
        timeout=timeout,
        page_size=page_size,
    )


def _build_path_mappings(data: Any) -> dict[str, str]:
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValueError("'path_mappings' must be a mapping of server path -> local path")
    mappings: dict[str, str] = {}
    for key, value in data.items():
        server_prefix = _clean_str(key)
        local_prefix = _clean_str(value)
        if not server_prefix or not local_prefix:
            raise ValueError(f"'path_mappings[{key}]' must map a non-empty path to a non-empty path")
        mappings[server_prefix] = local_prefix
    return mappings


def _apply_env_overrides(settings: Settings) -> None:
    enable_override = env_bool(ENV_ENABLE_TRAILERS)
    if enable_override is not None:
        settings.enable_trailers = enable_override

    dry_run_override = env_bool(ENV_DRY_RUN)
    if dry_run_override is not None:
        settings.dry_run = dry_run_override

    url_override = env_str(ENV_SERVER_URL)
    if url_override is not None:
        if not validate_server_url(url_override):
            raise ValueError(f"{ENV_SERVER_URL} must be a valid http/https URL, got: {url_override}")
        settings.server.url = url_override

    key_override = env_str(ENV_API_KEY)
    if key_override is not None:
        settings.server.api_key = key_override


def build_settings(data: dict[str, Any] | None) -> Settings:
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError("'settings' must be provided as a mapping")

    provider_name = _clean_str(data.get("provider_name")) or DEFAULT_PROVIDER_NAME

    settings = Settings(
        enable_trailers=bool(data.get("enable_trailers", True)),
        provider_name=provider_name,
        dry_run=bool(data.get("dry_run", False)),
        schedule=_build_schedule_settings(data.get("schedule")),
        server=_build_server_settings(data.get("server")),
        path_mappings=_build_path_mappings(data.get("path_mappings")),
    )
    _apply_env_overrides(settings)
    return settings


def load_config(path: Path | None) -> AppConfig:
    """Load configuration from ``path``; a missing path yields defaults plus env overrides."""
    if path is None:
        return AppConfig(settings=build_settings({}))
    data = load_yaml_file(path)
    return AppConfig(settings=build_settings(data.get("settings", {})), source_path=path)
