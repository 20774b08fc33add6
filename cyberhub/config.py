"""
Central configuration loader for CyberHub.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``CYBERHUB_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from cyberhub.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # cyberhub/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class DatabaseSettings:
    url: str = "sqlite+aiosqlite:///./cyberhub.db"
    pool_size: int = 10
    echo: bool = False


@dataclass
class ClientSettings:
    error_format: str = "colorless"
    log_levels: List[str] = field(default_factory=lambda: ["warn", "error"])
    accelerate_url: Optional[str] = None


@dataclass
class TransactionSettings:
    max_wait_ms: int = 2000
    timeout_ms: int = 5000
    isolation_level: Optional[str] = None


@dataclass
class PresenceSettings:
    offline_after_seconds: int = 30
    sweep_interval_seconds: int = 30


@dataclass
class CommandSettings:
    ack_timeout_seconds: int = 60


@dataclass
class BillingSettings:
    require_user_to_activate: bool = False


@dataclass
class AuthSettings:
    secret_key: str = "dev-secret-change-me-before-deploying"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24
    bcrypt_rounds: int = 12


@dataclass
class ApiSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    version: str = "1.0.0"


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "json"


@dataclass
class Settings:
    """Top-level settings container."""
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    transactions: TransactionSettings = field(default_factory=TransactionSettings)
    presence: PresenceSettings = field(default_factory=PresenceSettings)
    commands: CommandSettings = field(default_factory=CommandSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _apply_dict(target: object, data: Dict[str, Any]) -> None:
    """Apply *data* values onto a dataclass instance, ignoring unknown keys."""
    for key, value in data.items():
        if not hasattr(target, key):
            continue
        setattr(target, key, value)


# ---------------------------------------------------------------------------
# Env-var overrides  (CYBERHUB_SECTION_KEY  e.g. CYBERHUB_DATABASE_URL)
# ---------------------------------------------------------------------------

_FLAT_SECTIONS = [
    "database", "client", "transactions", "presence", "commands",
    "billing", "auth", "api", "logging",
]

_TYPE_MAP = {
    int: int,
    float: float,
    bool: lambda v: v.lower() in ("1", "true", "yes"),
    str: str,
    list: lambda v: [item.strip() for item in v.split(",") if item.strip()],
}


def _apply_env_overrides(settings: Settings) -> None:
    """Override flat scalar fields via ``CYBERHUB_<SECTION>_<KEY>`` env vars."""
    for section_name in _FLAT_SECTIONS:
        section = getattr(settings, section_name, None)
        if section is None:
            continue
        prefix = f"CYBERHUB_{section_name.upper()}_"
        for key in list(vars(section)):
            env_key = prefix + key.upper()
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            current = getattr(section, key)
            cast = _TYPE_MAP.get(type(current), str)
            try:
                setattr(section, key, cast(env_val))
                logger.debug("Env override applied: %s=%s", env_key, env_val)
            except (ValueError, TypeError):
                logger.warning("Invalid env override %s=%s", env_key, env_val)


_ERROR_FORMATS = ("pretty", "colorless", "minimal")
_LOG_FORMATS = ("json", "text")


def _validate(settings: Settings) -> None:
    """Reject values no component can work with.

    Raises:
        ConfigurationError: On the first invalid value found.
    """
    if settings.client.error_format not in _ERROR_FORMATS:
        raise ConfigurationError(
            f"client.error_format must be one of {_ERROR_FORMATS}, "
            f"got {settings.client.error_format!r}"
        )
    if settings.logging.format not in _LOG_FORMATS:
        raise ConfigurationError(
            f"logging.format must be one of {_LOG_FORMATS}, got {settings.logging.format!r}"
        )
    if settings.transactions.max_wait_ms <= 0 or settings.transactions.timeout_ms <= 0:
        raise ConfigurationError("transaction max_wait_ms and timeout_ms must be positive")
    if settings.presence.offline_after_seconds <= 0:
        raise ConfigurationError("presence.offline_after_seconds must be positive")


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the application-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``CYBERHUB_*`` environment-variable overrides.
    4. Validates the result.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.

    Raises:
        ConfigurationError: If the merged configuration is invalid.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        if _settings is not None and not _force_reload:
            return _settings

        dotenv_path = env_path or _project_path(".env")
        load_dotenv(dotenv_path, override=False)

        config_path = yaml_path or _project_path("config", "config.yaml")
        raw = _load_yaml(config_path)

        settings = Settings()
        for section_name in _FLAT_SECTIONS:
            section_data = raw.get(section_name)
            if isinstance(section_data, dict):
                _apply_dict(getattr(settings, section_name), section_data)

        _apply_env_overrides(settings)
        _validate(settings)

        _settings = settings
        logger.info("Settings loaded from %s", config_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

_STANDARD_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Install a root handler using ``settings.logging``.

    Args:
        settings: Settings to read; defaults to :func:`get_settings`.
    """
    cfg = (settings or get_settings()).logging
    handler = logging.StreamHandler(sys.stdout)
    if cfg.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(cfg.level.upper())
