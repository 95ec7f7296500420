import structlog
import logging
import sys
from config import get_settings

# Event keys that may carry a full customer number
PHONE_KEYS = ("phone", "wa_id", "to")

SERVICE_NAME = "whatsapp-inbox"


def add_service_context(app_env: str):
    """Stamp every event with the service and environment it came from."""
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("app_env", app_env)
        return event_dict
    return processor


def redact_phone_numbers(logger, method_name, event_dict):
    # Customer numbers only ever reach the logs as ...1234
    for key in PHONE_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = f"...{value[-4:]}"
    return event_dict


def configure_logger():
    settings = get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        add_service_context(settings.APP_ENV),
        redact_phone_numbers,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # Request-level chatter from the Graph API / storage clients and the ORM
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
