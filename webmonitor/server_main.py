"""Server entry point for the telemetry ingestion service."""

import logging
import os

from webmonitor.config import ServerConfig
from webmonitor.server import create_app


def main():
    config = ServerConfig.from_env()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", config["logging"]["level"]),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    app = create_app(config)
    server_cfg = config["server"]
    logger.info(
        "Starting ingestion server on %s:%d", server_cfg["host"], server_cfg["port"]
    )
    # For gunicorn: `gunicorn 'webmonitor.server:create_app()'`
    app.run(
        host=server_cfg["host"],
        port=server_cfg["port"],
        debug=server_cfg["debug"],
        threaded=True,
    )


if __name__ == "__main__":
    main()
