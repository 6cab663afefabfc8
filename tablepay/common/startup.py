"""Startup config summary with secrets redacted."""

from tablepay.common.config import CommonSettings
from tablepay.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def redact(name: str, value) -> str:
    if value is None or value == "":
        return "<unset>"
    if any(marker in name.upper() for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def startup_summary(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Selected settings plus the behavior switches they imply."""

    summary = {"service": config.service_name}
    for name in fields:
        summary[name] = redact(name, getattr(config, name))
    summary["webhook_signature_check"] = "on" if config.mercadopago_webhook_secret else "off"
    summary["mock_payments"] = "on" if config.provider_mock_payments else "off"
    return summary


def log_startup_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    summary = startup_summary(config, fields)
    logger.info("startup_config=%s", summary)
    return summary
