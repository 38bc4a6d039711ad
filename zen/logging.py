"""Named loggers for zen and redaction of secrets in log output."""

import logging
import re

_zen_logger = logging.getLogger("zen")

# Patterns for credentials that must never reach a log line
_SENSITIVE_PATTERNS = [
    (re.compile(r"(Bearer|token|Basic)\s+[A-Za-z0-9._\-+/=]{8,}", re.IGNORECASE), r"\1 [REDACTED]"),
    (re.compile(r"(Authorization|Private-Token)['\"]?\s*[:=]\s*['\"]?[^'\",\s}]+", re.IGNORECASE), r"\1: [REDACTED]"),
    (re.compile(r"(secret|token|password|api_key|encryption_key)=([^&\s]+)", re.IGNORECASE), r"\1=[REDACTED]"),
    (re.compile(r"\b(ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}\b"), "[REDACTED]"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"), "[REDACTED]"),
    (re.compile(r"\bglpat-[A-Za-z0-9_\-]{20,}\b"), "[REDACTED]"),
]

_DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(
    level: int | str = logging.WARNING,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> None:
    """Install a single handler on the ``zen`` logger.

    Calling this again replaces the previously installed handler rather than
    stacking a second one, so the CLI callback can run once per invocation.
    """
    if isinstance(level, str):
        level = LEVELS.get(level.lower(), logging.INFO)

    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string or _DEFAULT_FORMAT))

    for existing in list(_zen_logger.handlers):
        if getattr(existing, "_zen_installed", False):
            _zen_logger.removeHandler(existing)
    handler._zen_installed = True  # type: ignore[attr-defined]

    _zen_logger.addHandler(handler)
    _zen_logger.setLevel(level)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return ``zen`` or a ``zen.<name>`` child logger."""
    if name is None:
        return _zen_logger
    return logging.getLogger(f"zen.{name}")


def mask_sensitive_data(text: str) -> str:
    """Replace bearer tokens, auth headers and secret assignments with placeholders."""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_secret(value: str | None, keep: int = 4) -> str:
    """Render a secret for display as ``***`` or ``...abcd``."""
    if not value:
        return "(not set)"
    if len(value) <= keep + 4:
        return "***"
    return f"...{value[-keep:]}"
