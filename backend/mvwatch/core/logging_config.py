"""
Structured JSON Logging Configuration

Every record leaves the process as one JSON object carrying:
- the event_id of the snapshot acquisition (or HTTP request) that emitted it
- the application version
- any `extra` fields, e.g. camera_id, provider, plate

Credentials travel in headers, query strings and exception text of the
Meraki, Plate Recognizer and OpenALPR calls; SecretMaskingFilter replaces
them with *** before any handler writes the record.

Handlers: console, logs/app.log, logs/error.log (ERROR and up, which
includes stolen vehicle alerts). Files rotate by size.
"""
import contextvars
import logging
import logging.handlers
import os
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Pattern, Tuple

from pythonjsonlogger import jsonlogger

from mvwatch.core.config import settings

MASK = "***"

# Configured secrets shorter than this are not masked by value
MIN_SECRET_LENGTH = 6

SECRET_PATTERNS: List[Tuple[Pattern, str]] = [
    # Meraki dashboard header, as a header line, dict repr or JSON
    (re.compile(r"""(X-Cisco-Meraki-API-Key['"]?\s*[:=]\s*['"]?)[^\s'",}]+""", re.IGNORECASE), r"\1" + MASK),
    # OpenALPR query parameter
    (re.compile(r"(secret_key=)[^&\s'\"]+", re.IGNORECASE), r"\1" + MASK),
    # Plate Recognizer Authorization header
    (re.compile(r"(\bToken\s+)[A-Za-z0-9._-]{8,}"), r"\1" + MASK),
]

LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), 'data', 'logs')

event_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('event_id', default=None)


def mask_secrets(text: str, secrets: Iterable[str] = ()) -> str:
    """Replace known credential shapes and the given secret values with ***, and flatten newlines."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    for secret in secrets:
        text = text.replace(secret, MASK)
    return text.replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ')


def configured_secrets() -> List[str]:
    """Credential values from settings long enough to mask by value."""
    values = [
        settings.MERAKI_API_KEY,
        settings.PLATE_RECOGNIZER_API_TOKEN,
        settings.OPENALPR_SECRET_KEY,
        settings.MQTT_PASSWORD,
    ]
    return [v for v in values if v and len(v) >= MIN_SECRET_LENGTH]


class EventIdFilter(logging.Filter):
    """
    Stamps event_id on every record.

    Acquisition tasks copy the context at creation, so the id set when an
    acquisition starts follows it through every retry and provider call.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.event_id = event_id_var.get() or "-"
        return True


class SecretMaskingFilter(logging.Filter):
    """Masks credentials in the rendered message and in exception text."""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self._secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_secrets(record.getMessage(), self._secrets)
        record.args = None

        if record.exc_info:
            # Render now so the traceback text can be masked
            record.exc_text = logging.Formatter().formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = mask_secrets(record.exc_text, self._secrets)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for pipeline records.

    Example:
    {
        "timestamp": "2019-11-01T00:23:55.359Z",
        "level": "INFO",
        "message": "plate_recognizer: plate=ABC123, GMT timestamp=2019-11-01T00:23:55.359Z",
        "logger": "mvwatch.services.analysis_dispatcher",
        "event_id": "3f9c2a7d1b04",
        "version": "1.0.0",
        "event_type": "plate_recognized",
        "camera_id": "ABC123",
        ...
    }
    """

    def __init__(self, *args, app_version: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.app_version = app_version

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_record['timestamp'] = created.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['event_id'] = getattr(record, 'event_id', '-')
        if self.app_version:
            log_record['version'] = self.app_version
        log_record.setdefault('message', record.getMessage())


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter,
            filters: List[logging.Filter]) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    for f in filters:
        handler.addFilter(f)
    root.addHandler(handler)


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
    app_version: Optional[str] = None,
    secrets: Optional[Iterable[str]] = None,
) -> logging.Logger:
    """
    Configure root logging for the service.

    Args:
        log_level: Override log level (default from settings; DEBUG=true wins)
        log_dir: Override log directory (default: backend/data/logs)
        app_version: Added to every record as "version"
        secrets: Values to mask (default: credentials from settings)

    Returns:
        Root logger
    """
    level = getattr(logging, (log_level or settings.effective_log_level).upper(), logging.INFO)
    directory = log_dir or LOG_DIR
    os.makedirs(directory, exist_ok=True)

    formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s', app_version=app_version)
    filters = [
        EventIdFilter(),
        SecretMaskingFilter(configured_secrets() if secrets is None else secrets),
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    _attach(root_logger, logging.StreamHandler(), level, formatter, filters)
    _attach(
        root_logger,
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'app.log'), maxBytes=100 * 1024 * 1024, backupCount=7, encoding='utf-8'
        ),
        level, formatter, filters,
    )
    _attach(
        root_logger,
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'error.log'), maxBytes=50 * 1024 * 1024, backupCount=5, encoding='utf-8'
        ),
        logging.ERROR, formatter, filters,
    )

    # httpx logs every request URL at INFO, OpenALPR's includes secret_key
    for noisy in ('uvicorn.access', 'httpx', 'httpcore', 'botocore', 'paho'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_event_id(event_id: Optional[str]) -> contextvars.Token:
    """Set the event ID for the current context; returns the reset token."""
    return event_id_var.set(event_id)


def get_event_id() -> Optional[str]:
    return event_id_var.get()


def clear_event_id(token: contextvars.Token) -> None:
    """Restore the event ID that was current before set_event_id."""
    event_id_var.reset(token)
