from __future__ import annotations

import logging

import uvicorn

from library_sync import create_app
from library_sync.config import AppConfig


def main() -> None:
    config = AppConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
