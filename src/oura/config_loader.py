"""Load, validate, and hot-reload the Oura sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk, no restart required.

Usage::

    from src.oura.config_loader import get_sync_config

    config = get_sync_config()
    config.chunk_days("heartrate")   # 29
    config.retry.max_retries         # 3
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("oura_sync.oura.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

#: Oura rejects heartrate datetime ranges longer than this.
HEARTRATE_MAX_RANGE_DAYS = 30


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ChunkingConfig:
    default_days: int
    overrides: dict[str, int]


@dataclass
class RetryConfig:
    """Exponential backoff for 429 / 5xx responses."""

    max_retries: int
    base_delay_ms: int

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based): base, 2*base, 4*base..."""
        return self.base_delay_ms * (2 ** (attempt - 1)) / 1000.0


@dataclass
class CatalogConfig:
    ttl_seconds: int
    path_prefix: str
    sandbox_prefix: str
    force_date_window: frozenset[str]


@dataclass
class CredentialConfig:
    expiry_margin_seconds: int
    personal_token_ttl_seconds: int
    state_ttl_seconds: int

    @property
    def expiry_margin(self) -> timedelta:
        return timedelta(seconds=self.expiry_margin_seconds)

    @property
    def state_ttl(self) -> timedelta:
        return timedelta(seconds=self.state_ttl_seconds)


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:     Config schema version string.
        chunking:    Window span per resource.
        retry:       Backoff policy for transient HTTP failures.
        max_pages:   Pagination safeguard per window.
        batch_size:  Rows per merge-write batch.
        catalog:     Resource discovery settings.
        credentials: Token and OAuth state lifetimes.
    """

    version: str
    chunking: ChunkingConfig
    retry: RetryConfig
    max_pages: int
    batch_size: int
    catalog: CatalogConfig
    credentials: CredentialConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def chunk_days(self, resource: str) -> int:
        """Return the window span in days for ``resource``."""
        return self.chunking.overrides.get(resource, self.chunking.default_days)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected before raising so a bad edit is reported in
    one go.

    Raises:
        ConfigValidationError: If any value is missing or out of range.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, default: int, where: str) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{where}.{key} must be positive, got {number}")
        return number

    # ── Chunking ──
    ch_raw = raw.get("chunking", {}) or {}
    default_days = _positive_int(ch_raw, "default_days", 90, "chunking")
    overrides: dict[str, int] = {}
    for resource, days in (ch_raw.get("overrides") or {}).items():
        try:
            overrides[resource] = int(days)
        except (TypeError, ValueError):
            errors.append(f"chunking.overrides.{resource} must be an integer, got {days!r}")
            continue
        if overrides[resource] <= 0:
            errors.append(f"chunking.overrides.{resource} must be positive")
    # heartrate datetime ranges are capped by the API
    overrides.setdefault("heartrate", min(default_days, HEARTRATE_MAX_RANGE_DAYS - 1))
    hr_days = overrides["heartrate"]
    if hr_days >= HEARTRATE_MAX_RANGE_DAYS:
        errors.append(
            f"heartrate chunk of {hr_days} days exceeds the API's "
            f"{HEARTRATE_MAX_RANGE_DAYS}-day range limit"
        )

    # ── Retry ──
    rt_raw = raw.get("retry", {}) or {}
    max_retries = rt_raw.get("max_retries", 3)
    if not isinstance(max_retries, int) or max_retries < 0:
        errors.append(f"retry.max_retries must be a non-negative integer, got {max_retries!r}")
        max_retries = 3
    retry = RetryConfig(
        max_retries=max_retries,
        base_delay_ms=_positive_int(rt_raw, "base_delay_ms", 250, "retry"),
    )

    # ── Pagination / writes ──
    max_pages = _positive_int(raw.get("pagination", {}) or {}, "max_pages", 1000, "pagination")
    batch_size = _positive_int(raw.get("writes", {}) or {}, "batch_size", 500, "writes")

    # ── Catalog ──
    cat_raw = raw.get("catalog", {}) or {}
    catalog = CatalogConfig(
        ttl_seconds=_positive_int(cat_raw, "ttl_seconds", 86400, "catalog"),
        path_prefix=str(cat_raw.get("path_prefix", "/v2/usercollection/")),
        sandbox_prefix=str(cat_raw.get("sandbox_prefix", "/v2/sandbox/")),
        force_date_window=frozenset(cat_raw.get("force_date_window") or ()),
    )

    # ── Credentials ──
    cr_raw = raw.get("credentials", {}) or {}
    credentials = CredentialConfig(
        expiry_margin_seconds=_positive_int(cr_raw, "expiry_margin_seconds", 60, "credentials"),
        personal_token_ttl_seconds=_positive_int(
            cr_raw, "personal_token_ttl_seconds", 86400, "credentials"
        ),
        state_ttl_seconds=_positive_int(cr_raw, "state_ttl_seconds", 900, "credentials"),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        chunking=ChunkingConfig(default_days=default_days, overrides=overrides),
        retry=retry,
        max_pages=max_pages,
        batch_size=batch_size,
        catalog=catalog,
        credentials=credentials,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
