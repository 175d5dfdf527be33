#!/usr/bin/env python3
"""
Start the HemoBank API under uvicorn.

Each worker process starts its own background scheduler when
SCHEDULER_ENABLED is set; the jobs tolerate running in several processes.
"""
import sys

import uvicorn

from hemobank.core.config import settings
from hemobank.core.logging import logger


def server_options() -> dict:
    options = {
        "app": "hemobank.main:app",
        "host": settings.HOST,
        "port": settings.PORT,
        "log_level": settings.LOG_LEVEL.lower(),
        "access_log": True,
    }
    if settings.DEBUG:
        options.update(reload=True, use_colors=True)
    else:
        options.update(workers=settings.WORKERS, loop="uvloop", http="httptools", lifespan="on")
    return options


def main() -> int:
    options = server_options()
    logger.info(
        f"Starting {settings.APP_NAME} v{settings.APP_VERSION} on {options['host']}:{options['port']} "
        f"({settings.ENVIRONMENT}, debug={settings.DEBUG})"
    )
    try:
        uvicorn.run(**options)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
