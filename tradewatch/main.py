from __future__ import annotations

import logging

from fastapi import FastAPI

from .api_server import configure_logging, create_app
from .config import load_settings
from .runtime import RuntimeEngine


logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings.app.log_level)
engine = RuntimeEngine(settings)
app: FastAPI = create_app(engine)


def run() -> None:
    import uvicorn

    logger.info("Serving on %s:%d", settings.api.host, settings.api.port)
    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_config=None)


if __name__ == "__main__":
    run()
