"""DB-backed settings with env-var fallback.

Resolution order: DB value > env var > default.
All settings are defined in SETTING_DEFS. Values are cached in memory
with a short TTL to avoid repeated DB reads.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlmodel import select

from .database import get_db
from .db_models import Setting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingDef:
    """Definition of a single setting."""

    key: str
    env_var: str
    default: str
    is_secret: bool
    description: str
    group: str  # "mxe" or "operational"


# ── Registry ─────────────────────────────────────────────────────────────────

SETTING_DEFS: dict[str, SettingDef] = {}


def _reg(key: str, env_var: str, default: str, is_secret: bool, description: str, group: str):
    SETTING_DEFS[key] = SettingDef(key, env_var, default, is_secret, description, group)


# Compute boundary key material (hex). Empty = generated per boot.
_reg(
    "mxe.x25519_private_key",
    "PCD_MXE_X25519_KEY",
    "",
    True,
    "X25519 private key used to open submissions (64 hex chars)",
    "mxe",
)
_reg(
    "mxe.signing_key",
    "PCD_MXE_SIGNING_KEY",
    "",
    True,
    "Ed25519 private key used to sign computation outputs (64 hex chars)",
    "mxe",
)
_reg(
    "mxe.sealing_key",
    "PCD_MXE_SEALING_KEY",
    "",
    True,
    "AES-256 key sealing session state at rest (64 hex chars)",
    "mxe",
)

# Operational
_reg(
    "operational.computation_mode",
    "PCD_COMPUTATION_MODE",
    "queued",
    False,
    "Computation delivery mode: queued (background worker) or inline",
    "operational",
)
_reg(
    "operational.session_ttl_seconds",
    "PCD_SESSION_TTL_SECONDS",
    "604800",
    False,
    "Seconds before an unfinished session expires",
    "operational",
)
_reg(
    "operational.computation_timeout_seconds",
    "PCD_COMPUTATION_TIMEOUT_SECONDS",
    "600",
    False,
    "Seconds a session may stay in Computing before its callback is considered lost",
    "operational",
)
_reg(
    "operational.expiry_sweep_interval",
    "PCD_EXPIRY_SWEEP_INTERVAL",
    "60",
    False,
    "Seconds between background expiry sweeps",
    "operational",
)


# ── TTL cache ────────────────────────────────────────────────────────────────

_CACHE_TTL = 5  # seconds
_cache: dict[str, str] = {}
_cache_time: float = 0.0


def _refresh_cache() -> None:
    """Bulk-load all settings from DB into the cache."""
    global _cache, _cache_time
    try:
        with get_db() as session:
            rows = session.exec(select(Setting)).all()
        _cache = {r.key: r.value for r in rows}
    except Exception:
        # DB not ready yet (e.g. before init_db)
        _cache = {}
    _cache_time = time.monotonic()


def invalidate_cache() -> None:
    """Force next get_setting() to re-read from DB."""
    global _cache_time
    _cache_time = 0.0


def _ensure_cache() -> None:
    if time.monotonic() - _cache_time > _CACHE_TTL:
        _refresh_cache()


# ── Accessors ────────────────────────────────────────────────────────────────


def _resolve(key: str) -> tuple[str, str]:
    """Return (value, source) for *key*; source is 'db', 'env' or 'default'."""
    defn = SETTING_DEFS.get(key)
    if defn is None:
        raise KeyError(f"Unknown setting: {key}")

    _ensure_cache()
    db_val = _cache.get(key)
    if db_val:
        return db_val, "db"

    env_val = os.environ.get(defn.env_var, "")
    if env_val:
        return env_val, "env"

    return defn.default, "default"


def get_setting(key: str) -> str:
    """Return the effective value for *key*.

    Resolution: DB (non-empty) > env var (non-empty) > default.
    Raises KeyError for unknown keys.
    """
    return _resolve(key)[0]


def get_setting_source(key: str) -> str:
    """Return where the effective value comes from: 'db', 'env', or 'default'."""
    return _resolve(key)[1]


def get_setting_int(key: str, fallback: int | None = None) -> int:
    """get_setting() coerced to int."""
    raw = get_setting(key)
    try:
        return int(raw)
    except (ValueError, TypeError):
        if fallback is not None:
            return fallback
        raise


def get_setting_choice(key: str, choices: set[str]) -> str:
    """get_setting() lowercased and checked against *choices*.

    Falls back to the registered default (with a warning) for unknown values.
    """
    value = get_setting(key).strip().lower()
    if value in choices:
        return value
    default = SETTING_DEFS[key].default
    logger.warning(f"Setting {key}={value!r} not in {sorted(choices)}; using {default!r}")
    return default


# ── CRUD ─────────────────────────────────────────────────────────────────────


def set_setting(key: str, value: str) -> None:
    """Write a setting to the DB (upsert)."""
    defn = SETTING_DEFS.get(key)
    if defn is None:
        raise KeyError(f"Unknown setting: {key}")

    with get_db() as session:
        existing = session.get(Setting, key)
        if existing:
            existing.value = value
            existing.is_secret = defn.is_secret
            existing.updated_at = datetime.now(timezone.utc)
            session.add(existing)
        else:
            session.add(
                Setting(
                    key=key,
                    value=value,
                    is_secret=defn.is_secret,
                    updated_at=datetime.now(timezone.utc),
                )
            )
    invalidate_cache()


def delete_setting(key: str) -> bool:
    """Remove a setting from the DB (reverts to env/default). Returns True if existed."""
    defn = SETTING_DEFS.get(key)
    if defn is None:
        raise KeyError(f"Unknown setting: {key}")

    with get_db() as session:
        existing = session.get(Setting, key)
        if existing:
            session.delete(existing)
            invalidate_cache()
            return True
    return False


def _mask_secret(value: str) -> str:
    """Mask a secret value for display."""
    if not value or len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def list_settings(group: str | None = None) -> list[dict]:
    """List all settings with metadata, values (masked if secret), and sources."""
    result = []
    for defn in SETTING_DEFS.values():
        if group and defn.group != group:
            continue
        value, source = _resolve(defn.key)
        result.append(
            {
                "key": defn.key,
                "value": _mask_secret(value) if defn.is_secret and value else value,
                "source": source,
                "is_secret": defn.is_secret,
                "description": defn.description,
                "group": defn.group,
                "env_var": defn.env_var,
            }
        )
    return result


def clear_settings() -> None:
    """Delete all settings from DB (for tests)."""
    with get_db() as session:
        for s in session.exec(select(Setting)).all():
            session.delete(s)
    invalidate_cache()


def log_settings_sources() -> None:
    """Log the source of each setting on startup."""
    for entry in list_settings():
        logger.info(
            f"Setting {entry['key']}: source={entry['source']}, value={entry['value'] or '(empty)'}"
        )
