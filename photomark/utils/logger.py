"""
Logging Setup and Redaction
===========================

Photomark sends an API key with every request and megabytes of base64 image
data in every request body. This module makes sure neither reaches a log:

- ``SensitiveDataFilter`` sits on every handler ``setup_logging`` installs and
  masks Gemini keys, the ``x-goog-api-key`` header and bearer tokens.
- ``log_api_request`` / ``log_api_response`` replace ``inlineData`` payloads
  with their length before a body is written.

Author: Photomark Project
"""

import json
import logging
import re
import sys
import time
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Optional

LOG_FILE_NAME = "photomark.log"

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'

# Dictionary keys whose values are never logged in clear
SENSITIVE_FIELDS = {
    'password', 'passwd', 'pwd', 'secret', 'token', 'api_key', 'api-key',
    'apikey', 'auth', 'authorization', 'credentials',
}

# Keys that keep their last four characters so two keys can be told apart
_PARTIAL_MASK_HINTS = ('key', 'token')


def _tail(match: re.Match) -> str:
    return f"***{match.group(1)[-4:]}"


SENSITIVE_PATTERNS = [
    (re.compile(r'(AIza[0-9A-Za-z\-_]{20,})'), _tail),
    (re.compile(r'(x-goog-api-key["\']?\s*[:=]\s*["\']?)([^\s"\',}]+)', re.IGNORECASE), r'\1***'),
    (re.compile(r'(Bearer\s+[a-zA-Z0-9\-._~+/]+=*)'), 'Bearer ***'),
    (re.compile(r'([a-zA-Z0-9]{32,})'), _tail),
]

INLINE_DATA_KEYS = ('inlineData', 'inline_data')

# Longest body written to the log before truncation
MAX_LOGGED_BODY = 1000


# ============================================================================
# REDACTION
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """Masks credentials in the message and its arguments. Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _mask_string(record.msg)

        if isinstance(record.args, dict):
            record.args = mask_sensitive_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(
                mask_sensitive_data(arg) if isinstance(arg, (dict, str)) else arg
                for arg in record.args
            )
        return True


def _mask_string(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _is_sensitive(key: str) -> bool:
    return any(name in key for name in SENSITIVE_FIELDS)


def _mask_field(key: str, value: Any, mask_value: str) -> str:
    if any(hint in key for hint in _PARTIAL_MASK_HINTS) and isinstance(value, str) and len(value) > 4:
        return f"{mask_value}{value[-4:]}"
    return mask_value


def mask_sensitive_data(data: Any, mask_value: str = "***") -> Any:
    """
    Return a copy of ``data`` with credentials masked.

    Dictionaries are walked recursively; values under sensitive keys are
    replaced, strings anywhere are scanned for key-like patterns.
    """
    if isinstance(data, dict):
        return {
            key: (
                _mask_field(str(key).lower(), value, mask_value)
                if _is_sensitive(str(key).lower())
                else mask_sensitive_data(value, mask_value)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item, mask_value) for item in data)
    if isinstance(data, str):
        return _mask_string(data)
    return data


def elide_inline_data(data: Any) -> Any:
    """Replace base64 image payloads with a short placeholder."""
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if key in INLINE_DATA_KEYS and isinstance(value, dict) and isinstance(value.get('data'), str):
                value = dict(value, data=f"<{len(value['data'])} base64 chars>")
            result[key] = elide_inline_data(value)
        return result
    if isinstance(data, list):
        return [elide_inline_data(item) for item in data]
    return data


def _format_body(data: Any) -> str:
    text = json.dumps(mask_sensitive_data(elide_inline_data(data)), indent=2, default=str)
    if len(text) > MAX_LOGGED_BODY:
        text = text[:MAX_LOGGED_BODY] + "\n... (truncated)"
    return text


# ============================================================================
# SETUP
# ============================================================================

def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: int = logging.DEBUG,
    console_level: int = logging.INFO,
    log_format: Optional[str] = None
) -> Optional[Path]:
    """
    Configure the root logger for the CLI or an embedding application.

    The console handler writes to stderr. With ``log_dir`` a second handler
    writes ``photomark.log`` there, replacing the previous run's file. Both
    carry ``SensitiveDataFilter``.

    Returns:
        The log file path, or ``None`` when logging to the console only.
    """
    formatter = logging.Formatter(log_format or DEFAULT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    handlers = []
    log_file = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / LOG_FILE_NAME
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    handlers.append(console_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)

    # urllib3 logs every connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    if log_file:
        logging.debug(f"Photomark logging started - Log file: {log_file}")
    return log_file


def shutdown_logging():
    """Flush and close every root handler. Call before exit."""
    for handler in list(logging.root.handlers):
        handler.flush()
        handler.close()


# ============================================================================
# STRUCTURED HELPERS
# ============================================================================

def log_config(config_name: str, config_data: Dict[str, Any], logger: Optional[logging.Logger] = None):
    """Log a configuration dictionary with credentials masked."""
    logger = logger or logging.getLogger(__name__)
    logger.info(f"Configuration: {config_name}")
    logger.debug(f"{config_name} details: {json.dumps(mask_sensitive_data(config_data), indent=2, default=str)}")


def log_api_call(func: Optional[Callable] = None, *, api_name: str = "API"):
    """
    Decorator that logs a Gemini call's status and duration.

    Usable bare (``@log_api_call``) or with a label
    (``@log_api_call(api_name="Gemini")``). Exceptions are logged and
    re-raised unchanged.
    """
    def decorator(f: Callable) -> Callable:
        call_logger = logging.getLogger(f.__module__)

        @wraps(f)
        def wrapper(*args, **kwargs):
            call_logger.debug(f"{api_name} call: {f.__name__} - kwargs: {mask_sensitive_data(kwargs)}")
            start = time.monotonic()
            status = "FAILED"
            try:
                result = f(*args, **kwargs)
                status = "SUCCESS"
                return result
            except Exception as e:
                call_logger.error(f"{api_name} {f.__name__} failed: {type(e).__name__}: {e}")
                raise
            finally:
                call_logger.info(
                    f"{api_name} {f.__name__} completed - Status: {status}, "
                    f"Duration: {time.monotonic() - start:.3f}s"
                )

        return wrapper

    return decorator if func is None else decorator(func)


def log_api_request(
    logger: logging.Logger,
    method: str,
    endpoint: str,
    headers: Optional[Dict] = None,
    data: Optional[Any] = None,
    params: Optional[Dict] = None
):
    """Log an outgoing request. Headers are masked and image data is elided."""
    logger.info(f"API Request: {method} {endpoint}")
    if headers:
        logger.debug(f"Request headers: {mask_sensitive_data(dict(headers))}")
    if params:
        logger.debug(f"Request params: {mask_sensitive_data(params)}")
    if data:
        logger.debug(f"Request body: {_format_body(data)}")


def log_api_response(
    logger: logging.Logger,
    status_code: int,
    response_data: Optional[Any] = None,
    elapsed_time: Optional[float] = None
):
    timing = f" ({elapsed_time:.3f}s)" if elapsed_time else ""
    logger.info(f"API Response: {status_code}{timing}")
    if response_data:
        logger.debug(f"Response body: {_format_body(response_data)}")
