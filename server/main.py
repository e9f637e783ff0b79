"""Entry point: starts the NiceGUI server with the REST API mounted."""

import logging
import logging.handlers
import os

from nicegui import app, ui

from api import router
from database import init_db
from invalidation import get_invalidation_service

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "timeline-server.log")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("timelineserver")

# Quiet noisy libraries
logging.getLogger("watchfiles").setLevel(logging.WARNING)
logging.getLogger("multipart").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def _start_invalidation_worker():
    get_invalidation_service().start_worker()
    logger.info("Timeline invalidation worker started")


app.include_router(router)

app.on_startup(init_db)
app.on_startup(_start_invalidation_worker)

# Import pages so their @ui.page decorators register routes
import pages  # noqa: F401, E402

ui.run(
    title="Timeline",
    port=int(os.environ.get("PORT", "8080")),
    show=False,
)
