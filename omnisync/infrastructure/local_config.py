from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Mapping

from omnisync.domain.models import SyncSettings
from omnisync.domain.sync_models import CONFLICT_BASE_POLICIES, CONFLICT_STRATEGIES

logger = logging.getLogger(__name__)

ENV_SUPABASE_URL = "OMNISYNC_SUPABASE_URL"
ENV_API_KEY = "OMNISYNC_API_KEY"
ENV_SYNC_INTERVAL = "OMNISYNC_SYNC_INTERVAL"
ENV_MAX_ATTEMPTS = "OMNISYNC_MAX_ATTEMPTS"


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / "OmniSync"


def _positive_int(raw: str | None, name: str) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Valor entero inválido en %s=%r; se ignora", name, raw)
        return None
    return value if value > 0 else None


def apply_env_overrides(settings: SyncSettings, environ: Mapping[str, str] | None = None) -> SyncSettings:
    env = os.environ if environ is None else environ
    changes: dict[str, Any] = {}
    if env.get(ENV_SUPABASE_URL):
        changes["supabase_url"] = env[ENV_SUPABASE_URL].strip()
    if env.get(ENV_API_KEY):
        changes["api_key"] = env[ENV_API_KEY].strip()
    interval = _positive_int(env.get(ENV_SYNC_INTERVAL), ENV_SYNC_INTERVAL)
    if interval is not None:
        changes["sync_interval_seconds"] = float(interval)
    max_attempts = _positive_int(env.get(ENV_MAX_ATTEMPTS), ENV_MAX_ATTEMPTS)
    if max_attempts is not None:
        changes["max_attempts"] = max_attempts
    return replace(settings, **changes) if changes else settings


def _settings_from_payload(payload: dict[str, Any]) -> SyncSettings:
    known = {field.name for field in fields(SyncSettings)}
    values = {key: value for key, value in payload.items() if key in known}
    if values.get("conflict_strategy") not in CONFLICT_STRATEGIES:
        values.pop("conflict_strategy", None)
    if values.get("conflict_base_policy") not in CONFLICT_BASE_POLICIES:
        values.pop("conflict_base_policy", None)
    return SyncSettings(**values)


class SyncConfigStore:
    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncSettings | None:
        if not self._config_path.exists():
            return None
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("config.json no contiene un objeto")
            settings = _settings_from_payload(payload)
        except (OSError, ValueError, TypeError) as exc:
            logger.exception("No se pudo leer config.json: %s", exc)
            return None
        if not settings.device_id:
            settings = replace(settings, device_id=self._generate_device_id())
            self._write_payload(asdict(settings))
        return settings

    def load_effective(self, environ: Mapping[str, str] | None = None) -> SyncSettings:
        """Configuración guardada (o por defecto) con los overrides de entorno aplicados."""

        settings = self.load()
        if settings is None:
            settings = self.save(SyncSettings())
        return apply_env_overrides(settings, environ)

    def save(self, settings: SyncSettings) -> SyncSettings:
        if not settings.device_id:
            settings = replace(settings, device_id=self._generate_device_id())
        self._write_payload(asdict(settings))
        return settings

    def _write_payload(self, payload: dict[str, Any]) -> None:
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            logger.error("No se pudo guardar config.json: %s", exc)

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())
