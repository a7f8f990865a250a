"""
Reconciliation Core - Sentry Integration

Error tracking for batch runs and the API. Enabled only when a DSN is set.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = [
    "password", "token", "secret", "api_key", "api-key", "authorization",
    "database_url", "customer_email", "email", "cookie"
]


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            sample_rate=sample_rate,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
            ignore_errors=[
                "ConnectionResetError",
                "BrokenPipeError",
            ],
        )

        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def _redact(d: Any) -> Any:
    if isinstance(d, list):
        return [_redact(v) for v in d]
    if not isinstance(d, dict):
        return d

    result = {}
    for key, value in d.items():
        key_lower = str(key).lower()
        if any(s in key_lower for s in _SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        else:
            result[key] = _redact(value)
    return result


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter credentials and customer contact data from Sentry events.
    """
    if "request" in event:
        if "headers" in event["request"]:
            event["request"]["headers"] = _redact(event["request"]["headers"])
        if "data" in event["request"]:
            event["request"]["data"] = _redact(event["request"]["data"])

    if "extra" in event:
        event["extra"] = _redact(event["extra"])

    return event


def set_run_tags(command: str, dry_run: bool):
    """Tag subsequent Sentry events with the command being run."""
    sentry_sdk.set_tag("command", command)
    sentry_sdk.set_tag("dry_run", str(dry_run).lower())
