"""Configuration loading from environment variables.

Environment variables (all optional):
- HEALTHWATCH_CHECK_INTERVAL_MS: Base interval between checks (default: 300000)
- HEALTHWATCH_MAX_BACKOFF_MS: Backoff ceiling (default: 3600000)
- HEALTHWATCH_MAX_JITTER_MS: Upper bound of scheduling jitter (default: 30000)
- HEALTHWATCH_DEDUP_WINDOW_SECONDS: Job dedup window, at least 300 (default: 300)
- HEALTHWATCH_PROBE_TIMEOUT: Provider probe timeout in seconds (default: 10.0)
- HEALTHWATCH_CIRCUIT_BREAKER_ENABLED: Enable provider circuit breakers (default: true)
- HEALTHWATCH_CIRCUIT_BREAKER_FAILURE_THRESHOLD: Failures before opening (default: 5)
- HEALTHWATCH_CIRCUIT_BREAKER_RECOVERY_TIMEOUT: Seconds before half-open (default: 60)
- HEALTHWATCH_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: Calls allowed half-open (default: 3)
- HEALTHWATCH_ALERT_WEBHOOK_URL: Operator alert webhook; alerts are only logged if unset
- HEALTHWATCH_ALERT_TIMEOUT: Webhook timeout in seconds (default: 5.0)
- HEALTHWATCH_ENCRYPTION_KEY: Secret used to decrypt stored credentials
- HEALTHWATCH_LOG_LEVEL, HEALTHWATCH_LOG_JSON, HEALTHWATCH_DIAGNOSTIC_TAGS
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Job dedup must cover at least one base check interval.
MIN_DEDUP_WINDOW_SECONDS = 300


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation.
    """

    # Scheduling
    check_interval_ms: int = 300_000  # 5 minutes
    max_backoff_ms: int = 3_600_000  # 1 hour
    max_jitter_ms: int = 30_000
    dedup_window_seconds: int = MIN_DEDUP_WINDOW_SECONDS

    # Probing
    probe_timeout: float = 10.0

    # Circuit breaker
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 60.0
    circuit_breaker_half_open_max_calls: int = 3

    # Alerting
    alert_webhook_url: str = ""
    alert_timeout: float = 5.0

    # Credentials
    encryption_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    diagnostic_tags: str = ""

    @property
    def webhook_alerts_configured(self) -> bool:
        """Check if operator alerts should be delivered through a webhook."""
        return bool(self.alert_webhook_url)


def _parse_positive_int(value: str, name: str, default: int) -> int:
    """Parse a string as a positive integer with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive integer, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = int(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %d is not positive, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_positive_float(value: str, name: str, default: float) -> float:
    """Parse a string as a positive float, falling back to ``default``."""
    try:
        parsed = float(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %f is not positive, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _parse_dedup_window(value: str, default: int = MIN_DEDUP_WINDOW_SECONDS) -> int:
    """Parse the dedup window, enforcing the lower bound.

    Returns:
        The parsed window in seconds, raised to ``MIN_DEDUP_WINDOW_SECONDS``
        when configured lower.
    """
    parsed = _parse_positive_int(value, "HEALTHWATCH_DEDUP_WINDOW_SECONDS", default)
    if parsed < MIN_DEDUP_WINDOW_SECONDS:
        logging.warning(
            "Invalid HEALTHWATCH_DEDUP_WINDOW_SECONDS: %d is below the minimum, using %d",
            parsed,
            MIN_DEDUP_WINDOW_SECONDS,
        )
        return MIN_DEDUP_WINDOW_SECONDS
    return parsed


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid HEALTHWATCH_LOG_LEVEL: '%s' is not valid, using default '%s'. "
            "Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _parse_bool(value: str) -> bool:
    """Return True if value is "true", "1", or "yes" (case-insensitive)."""
    return value.lower() in ("true", "1", "yes")


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Values are validated and defaults are used for invalid inputs.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    check_interval_ms = _parse_positive_int(
        os.getenv("HEALTHWATCH_CHECK_INTERVAL_MS", "300000"),
        "HEALTHWATCH_CHECK_INTERVAL_MS",
        300_000,
    )
    max_backoff_ms = _parse_positive_int(
        os.getenv("HEALTHWATCH_MAX_BACKOFF_MS", "3600000"),
        "HEALTHWATCH_MAX_BACKOFF_MS",
        3_600_000,
    )
    if max_backoff_ms < check_interval_ms:
        logging.warning(
            "Invalid HEALTHWATCH_MAX_BACKOFF_MS: %d is below the check interval %d, using %d",
            max_backoff_ms,
            check_interval_ms,
            check_interval_ms,
        )
        max_backoff_ms = check_interval_ms

    max_jitter_ms = _parse_positive_int(
        os.getenv("HEALTHWATCH_MAX_JITTER_MS", "30000"),
        "HEALTHWATCH_MAX_JITTER_MS",
        30_000,
    )
    dedup_window_seconds = _parse_dedup_window(
        os.getenv("HEALTHWATCH_DEDUP_WINDOW_SECONDS", str(MIN_DEDUP_WINDOW_SECONDS)),
    )
    probe_timeout = _parse_positive_float(
        os.getenv("HEALTHWATCH_PROBE_TIMEOUT", "10.0"),
        "HEALTHWATCH_PROBE_TIMEOUT",
        10.0,
    )

    circuit_breaker_enabled = _parse_bool(
        os.getenv("HEALTHWATCH_CIRCUIT_BREAKER_ENABLED", "true")
    )
    circuit_breaker_failure_threshold = _parse_positive_int(
        os.getenv("HEALTHWATCH_CIRCUIT_BREAKER_FAILURE_THRESHOLD", "5"),
        "HEALTHWATCH_CIRCUIT_BREAKER_FAILURE_THRESHOLD",
        5,
    )
    circuit_breaker_recovery_timeout = _parse_positive_float(
        os.getenv("HEALTHWATCH_CIRCUIT_BREAKER_RECOVERY_TIMEOUT", "60.0"),
        "HEALTHWATCH_CIRCUIT_BREAKER_RECOVERY_TIMEOUT",
        60.0,
    )
    circuit_breaker_half_open_max_calls = _parse_positive_int(
        os.getenv("HEALTHWATCH_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS", "3"),
        "HEALTHWATCH_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS",
        3,
    )

    alert_timeout = _parse_positive_float(
        os.getenv("HEALTHWATCH_ALERT_TIMEOUT", "5.0"),
        "HEALTHWATCH_ALERT_TIMEOUT",
        5.0,
    )

    return Config(
        check_interval_ms=check_interval_ms,
        max_backoff_ms=max_backoff_ms,
        max_jitter_ms=max_jitter_ms,
        dedup_window_seconds=dedup_window_seconds,
        probe_timeout=probe_timeout,
        circuit_breaker_enabled=circuit_breaker_enabled,
        circuit_breaker_failure_threshold=circuit_breaker_failure_threshold,
        circuit_breaker_recovery_timeout=circuit_breaker_recovery_timeout,
        circuit_breaker_half_open_max_calls=circuit_breaker_half_open_max_calls,
        alert_webhook_url=os.getenv("HEALTHWATCH_ALERT_WEBHOOK_URL", "").strip(),
        alert_timeout=alert_timeout,
        encryption_key=os.getenv("HEALTHWATCH_ENCRYPTION_KEY", ""),
        log_level=_validate_log_level(os.getenv("HEALTHWATCH_LOG_LEVEL", "INFO")),
        log_json=_parse_bool(os.getenv("HEALTHWATCH_LOG_JSON", "")),
        diagnostic_tags=os.getenv("HEALTHWATCH_DIAGNOSTIC_TAGS", ""),
    )
