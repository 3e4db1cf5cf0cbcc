"""Startup-time helpers for safe config logging."""

from pesapush.common.config import CommonSettings
from pesapush.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Redact secret-like settings; flag empty ones so misconfiguration is visible."""

    if value in (None, ""):
        return "<unset>"
    if any(marker in name.lower() for marker in _SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings plus the resolved provider base URL."""

    snapshot = {"service": config.service_name, "provider_base_url": config.provider_base_url}
    for field in fields:
        snapshot[field] = _safe_value(field, getattr(config, field, None))
    logger.info("startup_config=%s", snapshot)
