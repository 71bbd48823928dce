# daq/conf.py
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# ----------------------------------------------------------------------
# Paths (all under assets/)
# ----------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent
ASSETS_DIR = ROOT_DIR / "assets"

SERVER_DB_PATH = ASSETS_DIR / "server.db"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _int_env(name: str, default: int) -> int:
    return int(_float_env(name, default))


# ----------------------------------------------------------------------
# Upstream DAQ API
# ----------------------------------------------------------------------
DAQ_API_BASE = os.getenv("DAQ_API_BASE", "http://localhost:5090")
DAQ_API_TIMEOUT = _float_env("DAQ_API_TIMEOUT", 10.0)

# ----------------------------------------------------------------------
# Status poller
# ----------------------------------------------------------------------
CLIENT_POLL_INTERVAL = _float_env("DAQ_CLIENT_POLL_INTERVAL", 5.0)
DATA_POLL_INTERVAL = _float_env("DAQ_DATA_POLL_INTERVAL", 1.0)
POLL_MAX_CONCURRENCY = _int_env("DAQ_POLL_MAX_CONCURRENCY", 16)
LOG_HISTORY_LIMIT = _int_env("DAQ_LOG_HISTORY_LIMIT", 500)

# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------
# "client": at most one RUNNING run per client; "global": one overall
RUN_EXCLUSIVITY = os.getenv("RUN_EXCLUSIVITY", "client").strip().lower()
RUN_ALIVE_GRACE_SECONDS = _float_env("RUN_ALIVE_GRACE_SECONDS", 2.0)
HOUSEKEEPING_INTERVAL = _float_env("RUN_HOUSEKEEPING_INTERVAL", 5.0)

# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------
WEBHOOK_TIMEOUT = _float_env("WEBHOOK_TIMEOUT", 10.0)


def get_database_url() -> str:
    """Return the server database URL (defaults to a SQLite file under assets/)."""
    return os.getenv("DATABASE_URL") or f"sqlite:///{SERVER_DB_PATH}"


def is_development() -> bool:
    return os.getenv("APP_ENV", "production").strip().lower() == "development"


# ----------------------------------------------------------------------
# Debug output when run directly
# ----------------------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    logger.info("DAQ control – effective configuration")
    logger.info("-" * 60)
    logger.info("DAQ API base     : %s (timeout %ss)", DAQ_API_BASE, DAQ_API_TIMEOUT)
    logger.info("Client poll      : every %ss", CLIENT_POLL_INTERVAL)
    logger.info("Data poll        : every %ss (max %d concurrent)", DATA_POLL_INTERVAL, POLL_MAX_CONCURRENCY)
    logger.info("Run exclusivity  : %s", RUN_EXCLUSIVITY)
    logger.info("Database         : %s", get_database_url())
    logger.info("Development mode : %s", is_development())
