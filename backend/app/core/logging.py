import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or "INFO",
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    )


def init_sentry(*integrations) -> bool:
    """Initialise Sentry from SENTRY_DSN; returns False when no DSN is configured."""
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        return False

    try:
        traces_sample_rate = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    except ValueError:
        traces_sample_rate = 0.1

    sentry_sdk.init(
        dsn=dsn,
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        release=os.getenv("SENTRY_RELEASE") or os.getenv("RENDER_GIT_COMMIT") or "unknown",
        traces_sample_rate=traces_sample_rate,
        integrations=[
            *integrations,
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
    )
    return True


logger = logging.getLogger("ysba_live")
