"""Startup-time helpers for safe config logging."""

from ultrapay.common.config import CommonSettings
from ultrapay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Return selected settings as strings, masking secret-like field names."""

    values = config.model_dump()
    redacted = {}
    for field in fields:
        if field not in values:
            redacted[field] = "<unset>"
        elif any(marker in field for marker in SECRET_MARKERS):
            redacted[field] = "<redacted>"
        else:
            redacted[field] = str(values[field])
    return redacted


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    logger.info(
        "startup_config=%s",
        {"service": config.service_name, **redacted_config(config, fields)},
    )
