"""Startup configuration.

Checks that all required environment variables are set before the server
accepts webhooks, so that a missing key causes a clear startup failure rather
than an emergency alert that silently goes nowhere.
"""

import os
import sys
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "NOTIFY_SMS_URL",
    "NOTIFY_ALERTS_URL",
    "NOTIFY_WEBHOOK_SECRET",
]

OPTIONAL_VARS = [
    "DEFAULT_TIMEZONE",
    "DURATION_REFRESH_SECONDS",
    "ENDED_CALL_GRACE_SECONDS",
    "EMERGENCY_ETA",
    "LOG_LEVEL",
    "TELEPHONY_WEBHOOK_SECRET",
]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or your deployment's secret store.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set, using default", var)


@dataclass(frozen=True)
class Settings:
    sms_url: str = ""
    alerts_url: str = ""
    webhook_secret: str = ""
    telephony_webhook_secret: str = ""
    default_timezone: str = "America/Chicago"
    duration_refresh_seconds: float = 5.0
    ended_call_grace_seconds: float = 300.0
    emergency_eta: str = "2 hours"
    log_level: str = "INFO"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sms_url=os.getenv("NOTIFY_SMS_URL", ""),
            alerts_url=os.getenv("NOTIFY_ALERTS_URL", ""),
            webhook_secret=os.getenv("NOTIFY_WEBHOOK_SECRET", ""),
            telephony_webhook_secret=os.getenv("TELEPHONY_WEBHOOK_SECRET", ""),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "America/Chicago"),
            duration_refresh_seconds=float(os.getenv("DURATION_REFRESH_SECONDS", "5")),
            ended_call_grace_seconds=float(os.getenv("ENDED_CALL_GRACE_SECONDS", "300")),
            emergency_eta=os.getenv("EMERGENCY_ETA", "2 hours"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8080")),
        )

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.sms_url and self.alerts_url)


def configure_logging(level: str | None = None) -> None:
    """Send calldesk logs to stdout at LOG_LEVEL (INFO by default)."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
