"""Run the relay with uvicorn: ``python -m relay``.

Exits with status 1 before binding the port if no database URL is configured.
"""
import logging
import sys

import uvicorn

from relay.config import get_config, require_database_url
from relay.errors import ConfigError

logger = logging.getLogger("relay")


def main() -> int:
    config = get_config()
    try:
        require_database_url(config)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"ERROR: {e.message}")
        return 1

    uvicorn.run(
        "relay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
