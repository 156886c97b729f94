"""
Structured logging configuration.

All services log JSON through structlog: one event name per line plus
key/value context (request id, order id, gateway ids). Checkout signatures,
credentials and customer phone numbers never reach the log output.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from config import get_settings

REDACTED = "[redacted]"

# Exact keys whose values are secrets
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "password",
        "razorpay_signature",
        "signature",
        "smtp_password",
        "token",
    }
)

# Any key containing one of these fragments is treated as a secret
SENSITIVE_FRAGMENTS = ("secret", "api_key")


def _mask_phone(value: Any) -> Any:
    text = str(value)
    if len(text) <= 4:
        return REDACTED
    return f"{'*' * (len(text) - 4)}{text[-4:]}"


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Mask secrets and personal data before rendering.

    Signatures and credentials are replaced entirely; phone numbers keep
    their last four digits so support can still match a customer.
    """
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS or any(f in lowered for f in SENSITIVE_FRAGMENTS):
            if event_dict[key] is not None:
                event_dict[key] = REDACTED
        elif lowered in ("phone", "customer_phone") and event_dict[key]:
            event_dict[key] = _mask_phone(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Tag every event with the service name, environment and gateway mode."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["gateway_mode"] = "test" if settings.is_test_mode else "live"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Called once per process by the API and by each worker entry point.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive_fields,
            add_app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    # Third-party request logs would duplicate our own gateway/email events
    for noisy in ("httpx", "httpcore", "aiosmtplib", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
