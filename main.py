"""Run the PictoCache server.

Loads ``config.json`` (creating it from defaults when missing), configures
logging from its ``logging.level`` entry and serves the Flask app.
"""
import logging
import os

import config_manager
from app import create_app


def configure_logging(config: dict) -> None:
    logging_config = config.get("logging") or {}
    level_name = str(logging_config.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main() -> None:
    config = config_manager.load_config()
    configure_logging(config)
    app = create_app(config)
    port = int(os.environ.get("PORT", "3000"))
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
