"""
Effective sync configuration: app config defaults plus persisted overrides.

Overrides live in ``sync_settings`` and are validated before they are stored,
so a bad value never reaches the scheduler or the orchestrator.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatsync.models.base import db
from chatsync.models.sync.schema import SyncSetting
from chatsync.sync.errors import SyncConfigError


@dataclass(frozen=True)
class _SettingSpec:
    field_name: str
    setting_key: str
    config_key: str
    value_type: str
    minimum: float | None = None
    maximum: float | None = None


SETTING_SPECS: tuple[_SettingSpec, ...] = (
    _SettingSpec("interval", "sync_interval", "SYNC_INTERVAL_MINUTES", "integer", 1, 1440),
    _SettingSpec("batch_size", "sync_batch_size", "SYNC_BATCH_SIZE", "integer", 10, 10000),
    _SettingSpec("auto_sync", "sync_auto_enabled", "SYNC_AUTO_SYNC", "boolean"),
    _SettingSpec("full_sync", "sync_full_sync", "SYNC_FULL_SYNC", "boolean"),
    _SettingSpec("retry_attempts", "sync_retry_attempts", "SYNC_RETRY_ATTEMPTS", "integer", 0, 10),
    _SettingSpec("retry_delay", "sync_retry_delay", "SYNC_RETRY_DELAY", "float", 0.1, 60),
)
_SPECS_BY_FIELD = {spec.field_name: spec for spec in SETTING_SPECS}


@dataclass(frozen=True)
class SyncSettings:
    """User-tunable sync settings. ``interval`` is in minutes, ``retry_delay`` in seconds."""

    interval: int = 15
    batch_size: int = 1000
    auto_sync: bool = True
    full_sync: bool = False
    retry_attempts: int = 3
    retry_delay: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SyncSettings":
        values: dict[str, Any] = {}
        for spec in SETTING_SPECS:
            if spec.config_key in config and config[spec.config_key] is not None:
                values[spec.field_name] = _coerce(spec, config[spec.config_key])
        return cls(**values)


def _coerce(spec: _SettingSpec, value: Any) -> Any:
    if spec.value_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on", "0", "false", "no", "off"}:
            return value.strip().lower() in {"1", "true", "yes", "on"}
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise SyncConfigError(f"'{spec.field_name}' must be a boolean.")
    if isinstance(value, bool):
        raise SyncConfigError(f"'{spec.field_name}' must be a number.")
    try:
        coerced: int | float = int(value) if spec.value_type == "integer" else float(value)
    except (TypeError, ValueError) as exc:
        raise SyncConfigError(f"'{spec.field_name}' must be a number.") from exc
    if spec.value_type == "integer" and isinstance(value, float) and not value.is_integer():
        raise SyncConfigError(f"'{spec.field_name}' must be a whole number.")
    if spec.minimum is not None and coerced < spec.minimum:
        raise SyncConfigError(f"'{spec.field_name}' must be at least {spec.minimum:g}.")
    if spec.maximum is not None and coerced > spec.maximum:
        raise SyncConfigError(f"'{spec.field_name}' must be at most {spec.maximum:g}.")
    return coerced


def validate_overrides(values: Mapping[str, Any]) -> dict[str, Any]:
    """
    Validate a partial settings mapping and return the coerced values.

    Raises ``SyncConfigError`` for unknown keys or out-of-range values.
    """

    if not isinstance(values, Mapping):
        raise SyncConfigError("Settings payload must be an object.")
    unknown = sorted(set(values) - set(_SPECS_BY_FIELD))
    if unknown:
        raise SyncConfigError(f"Unknown sync settings: {', '.join(unknown)}.")
    return {name: _coerce(_SPECS_BY_FIELD[name], value) for name, value in values.items()}


def load_overrides(session: Session | None = None) -> dict[str, Any]:
    session = session or db.session
    keys = {spec.setting_key: spec for spec in SETTING_SPECS}
    overrides: dict[str, Any] = {}
    for setting in session.scalars(select(SyncSetting).where(SyncSetting.key.in_(list(keys)))):
        spec = keys[setting.key]
        overrides[spec.field_name] = setting.get_value()
    return overrides


def resolve_settings(config: Mapping[str, Any], session: Session | None = None) -> SyncSettings:
    """Return config defaults with persisted overrides applied."""

    base = SyncSettings.from_config(config)
    overrides = load_overrides(session)
    if not overrides:
        return base
    merged = {**base.to_dict(), **overrides}
    return SyncSettings(**{item.name: merged[item.name] for item in fields(SyncSettings)})


def update_settings(
    values: Mapping[str, Any],
    config: Mapping[str, Any],
    session: Session | None = None,
) -> SyncSettings:
    """Validate and persist overrides, returning the new effective settings."""

    session = session or db.session
    validated = validate_overrides(values)
    for name, value in validated.items():
        spec = _SPECS_BY_FIELD[name]
        setting = session.scalar(select(SyncSetting).where(SyncSetting.key == spec.setting_key))
        if setting is None:
            setting = SyncSetting(key=spec.setting_key, value_type=spec.value_type)
            session.add(setting)
        setting.value_type = spec.value_type
        setting.set_value(value)
    session.commit()
    return resolve_settings(config, session)


def reset_settings(session: Session | None = None) -> None:
    """Remove every persisted override."""

    session = session or db.session
    keys = [spec.setting_key for spec in SETTING_SPECS]
    for setting in session.scalars(select(SyncSetting).where(SyncSetting.key.in_(keys))):
        session.delete(setting)
    session.commit()
