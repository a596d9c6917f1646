"""
safevoice.__main__ — Entry point for ``python -m safevoice``
============================================================

Wiring:
1. Load .env (JWT secret, database URL).
2. Load config.yaml (soft settings) and fail fast if it's missing.
3. Serve the FastAPI app with uvicorn.  The app's lifespan creates the
   tables, loads every namespace, deletes posts that expired while the
   server was down and re-arms the remaining timers.

Run with::

    python -m safevoice
"""

from __future__ import annotations

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from safevoice.config import load_config

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("safevoice")


def main() -> None:
    """Validate the environment and run the API server."""

    # 1. Environment variables (secrets).
    load_dotenv()

    if not os.getenv("JWT_SECRET"):
        logger.critical(
            "JWT_SECRET is not set.  "
            "Copy .env.example → .env and set a strong secret."
        )
        sys.exit(1)

    # 2. Soft configuration.
    config_path = os.getenv("SAFEVOICE_CONFIG", "config.yaml")
    try:
        cfg = load_config(config_path)
    except FileNotFoundError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Serve (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting SafeVoice API on port %d…", cfg.dashboard_port)
    uvicorn.run("safevoice.api.main:app", host="0.0.0.0", port=cfg.dashboard_port, log_config=None)


if __name__ == "__main__":
    main()
