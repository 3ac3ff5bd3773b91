"""Process entry points.

``serve`` runs the API under uvicorn with the host, port and worker count
from the environment; ``purge_carts`` deletes expired carts and is meant to
be scheduled (cron, k8s CronJob).
"""

import logging

import uvicorn

from gateway.logging_filters import configure_logging

from .config import Settings
from .db import init_db, make_engine
from .providers import build_services

logger = logging.getLogger(__name__)


def serve() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(
        "checkout.api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        log_level=settings.log_level.lower(),
    )


def purge_carts() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = make_engine(settings.database_url)
    init_db(engine)
    deleted = build_services(settings, engine=engine).carts.purge_expired()
    logger.info("cart purge finished", extra={"deleted": deleted})


if __name__ == "__main__":
    serve()
