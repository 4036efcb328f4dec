from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for the per-request correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose string values never reach a log line
CREDENTIAL_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "oob_code",
        "private_key",
        "api_key",
        "authorization",
        "cookie",
    }
)

REDACTED = "[redacted]"

# Credentials that show up inside free text such as provider error bodies
_CREDENTIAL_VALUE_PATTERNS = [
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(
        r"(?i)\b(oobCode|oob_code|idToken|id_token|refreshToken|refresh_token"
        r"|access_token|key)=[^&\s\"']+"
    ),
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
]


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def hash_email(email: Optional[str]) -> Optional[str]:
    """Stable, non-reversible identifier for an email address in logs."""
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def scrub_credentials(text: str) -> str:
    """Mask bearer tokens, JWTs, reset codes and PEM keys embedded in text."""
    for pattern in _CREDENTIAL_VALUE_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def _is_credential_key(lower_key: str) -> bool:
    # password_hash is an argon2 digest, still never logged
    return any(marker in lower_key for marker in CREDENTIAL_KEYS)


def _is_email_key(lower_key: str) -> bool:
    return lower_key == "email" or lower_key.endswith("_email")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials and replaces emails with their hash.

    Keys naming a credential lose their value outright. Email fields are
    swapped for ``hash_email`` so lines can still be correlated per account.
    Other string values are scrubbed for credentials embedded in free text.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if lower_key.endswith("_hash") and "password" not in lower_key:
            continue
        if _is_credential_key(lower_key):
            event_dict[key] = REDACTED
        elif _is_email_key(lower_key):
            event_dict[key] = hash_email(value)
        else:
            event_dict[key] = scrub_credentials(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Messages returned to API clients lose anything that reveals storage,
# filesystem layout or identity-provider internals
_CLIENT_MESSAGE_PATTERNS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,50}"),
    re.compile(r"(?i)\b(psycopg|postgres(ql)?|redis)\b[^\n]{0,80}"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)https?://[^\s]*(googleapis|firebase)[^\s]*"),
    re.compile(r"(?i)(password|secret|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = REDACTED) -> str:
    """Sanitize an error message before it is logged or returned to clients.

    Strips credentials first, then SQL, driver names, filesystem paths and
    identity-provider endpoints, and caps the message at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = scrub_credentials(error)
    for pattern in _CLIENT_MESSAGE_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
