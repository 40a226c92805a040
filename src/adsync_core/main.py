"""adsync FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.routes import get_settings, router as api_router
from .storage.schema import connect, init_database


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Schema must exist before the first request opens a per-request connection
    settings = get_settings()
    conn = connect(settings.db_path)
    try:
        init_database(conn)
    finally:
        conn.close()
    logger.info("adsync API ready (db=%s)", settings.db_path)
    yield


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="adsync API",
        version="0.1.0",
        description="Dual-track advertising performance reconciliation",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app


app = create_app()
