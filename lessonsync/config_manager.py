from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from lessonsync.models import AppConfig, default_app_config


MASK = "***"

# Provider credentials, with the environment variable that overrides each one.
SECRET_FIELDS = {
    ("google", "access_token"): "LESSONSYNC_GOOGLE_ACCESS_TOKEN",
    ("calcom", "api_key"): "LESSONSYNC_CALCOM_API_KEY",
    ("calcom", "webhook_secret"): "LESSONSYNC_CALCOM_WEBHOOK_SECRET",
}


def _merge_sections(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge_sections(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        path.write_text(text, encoding="utf-8")
        tmp_path.unlink(missing_ok=True)


def env_secrets(environ: Mapping[str, str] | None = None) -> dict[str, dict[str, str]]:
    environ = os.environ if environ is None else environ
    overrides: dict[str, dict[str, str]] = {}
    for (section, key), variable in SECRET_FIELDS.items():
        value = str(environ.get(variable, "") or "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def strip_masked_secrets(payload: Mapping[str, Any], current: Mapping[str, Any]) -> dict[str, Any]:
    """Drop secret values echoed back as the mask so an edit never wipes a stored credential."""
    cleaned = dict(payload)
    for section, key in SECRET_FIELDS:
        block = cleaned.get(section)
        if not isinstance(block, Mapping) or key not in block:
            continue
        value = block[key]
        if value is not None and str(value).strip() not in {"", MASK}:
            continue
        block = dict(block)
        if str((current.get(section) or {}).get(key, "") or ""):
            block.pop(key)
        else:
            block[key] = ""
        if block:
            cleaned[section] = block
        else:
            cleaned.pop(section)
    return cleaned


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        with self._lock:
            if not self.config_path.exists():
                self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
        return data if isinstance(data, dict) else {}

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read_file()
        return AppConfig.from_dict(_merge_sections(data, env_secrets()))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_yaml(self.config_path, config.to_dict())

    def update(self, payload: Mapping[str, Any]) -> AppConfig:
        with self._lock:
            stored = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _merge_sections(stored, strip_masked_secrets(payload, stored))
            self.save(AppConfig.from_dict(merged))
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config[section].get(key):
                config[section][key] = MASK
        return config
