from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from tripcal.models import AppConfig, default_app_config


ENV_OVERRIDES = {
    "TRIPIT_USERNAME": ("tripit", "username"),
    "TRIPIT_TOKEN": ("tripit", "token"),
    "CALDAV_URL": ("caldav", "base_url"),
    "CALDAV_USERNAME": ("caldav", "username"),
    "CALDAV_PASSWORD": ("caldav", "password"),
    "CALDAV_CALENDAR_ID": ("caldav", "calendar_id"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    merged = copy.deepcopy(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = str(environ.get(env_name, "") or "").strip()
        if not value:
            continue
        section_data = merged.get(section)
        if not isinstance(section_data, dict):
            section_data = {}
            merged[section] = section_data
        section_data[key] = value
    return merged


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self._environ = environ
        # Applied on every load, never saved.
        self.overrides = overrides or {}
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _load_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config root must be a mapping: {self.config_path}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = apply_env_overrides(self._load_file(), self._environ)
            return AppConfig.from_dict(_deep_merge(data, self.overrides))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(
                    config_dict,
                    handle,
                    sort_keys=False,
                    allow_unicode=True,
                    default_flow_style=False,
                )
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict,
                        handle,
                        sort_keys=False,
                        allow_unicode=True,
                        default_flow_style=False,
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        # Merge against the file contents so env-provided secrets are not written to disk.
        with self._lock:
            current = AppConfig.from_dict(self._load_file()).to_dict()
            merged = _deep_merge(current, payload)
            self.save(AppConfig.from_dict(merged))
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("tripit", {}).get("token"):
            config["tripit"]["token"] = "***"
        if config.get("caldav", {}).get("password"):
            config["caldav"]["password"] = "***"
        return config
