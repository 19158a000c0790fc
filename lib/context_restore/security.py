"""Redaction of sensitive data in logs and notifications."""
import logging
import re
from typing import Any, List, Pattern

SENSITIVE_PATTERNS: List[Pattern] = [
    re.compile(r'(api[_-]?key|token|secret|password|passwd|pwd)\s*[:=]\s*[\'"]?[\w\-]+[\'"]?', re.IGNORECASE),
    re.compile(r'sk-[A-Za-z0-9]{32,}'),
    re.compile(r'sk-ant-[A-Za-z0-9\-]{32,}'),
    re.compile(r'AKIA[A-Z0-9]{16}'),
    re.compile(r'gh[pousr]_[A-Za-z0-9_]{36,}'),
    re.compile(r'bearer\s+[\w\-_.~+/]+=*', re.IGNORECASE),
    re.compile(r'(mongodb|postgres|mysql|redis|rediss)://[^:/@\s]*:[^@\s]+@', re.IGNORECASE),
]

SENSITIVE_KEYS = (
    'password', 'passwd', 'pwd', 'secret', 'token', 'api_key', 'apikey',
    'authorization', 'credential', 'private_key', 'access_key', 'secret_key',
)

REDACTED = '[REDACTED]'


def sanitize(message: str) -> str:
    """Remove sensitive data from a message."""
    if not message:
        return message

    result = message
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)

    return result


def sanitize_dict(data: dict) -> dict:
    """Recursively sanitize a mapping, redacting values under sensitive keys."""

    def _sanitize_value(key: Any, value: Any) -> Any:
        key_lower = key.lower() if isinstance(key, str) else ''
        if key_lower and any(sk in key_lower for sk in SENSITIVE_KEYS):
            return REDACTED
        if isinstance(value, dict):
            return {k: _sanitize_value(k, v) for k, v in value.items()}
        if isinstance(value, list):
            return [_sanitize_value('', item) for item in value]
        if isinstance(value, str):
            return sanitize(value)
        return value

    return {k: _sanitize_value(k, v) for k, v in data.items()}


class SecureLogger:
    """Logger wrapper that sanitizes all output."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _sanitize_args(self, args):
        return tuple(sanitize(arg) if isinstance(arg, str) else arg for arg in args)

    def debug(self, msg, *args, **kwargs):
        self._logger.debug(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def info(self, msg, *args, **kwargs):
        self._logger.info(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._logger.warning(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def error(self, msg, *args, **kwargs):
        self._logger.error(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._logger.exception(sanitize(msg), *self._sanitize_args(args), **kwargs)


def get_logger(name: str) -> SecureLogger:
    """Return a sanitizing logger for a module."""
    return SecureLogger(logging.getLogger(name))
