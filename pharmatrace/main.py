import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pharmatrace.api.v1.router import v1_router
from pharmatrace.core.config import get_settings
from pharmatrace.core.deps import get_chain_adapter
from pharmatrace.core.logging import configure_logging
from pharmatrace.core.middleware import RequestIdMiddleware
from pharmatrace.db.session import SessionLocal
from pharmatrace.services.reconciliation_loop import ReconciliationLoop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    loop = None
    if settings.reconciliation_enabled:
        loop = ReconciliationLoop(
            adapter=get_chain_adapter(),
            session_factory=SessionLocal,
            interval_seconds=settings.reconciliation_interval_seconds,
            initial_delay_seconds=settings.reconciliation_initial_delay_seconds,
        )
        loop.start()
    else:
        logger.info("reconciliation loop disabled by configuration")
    app.state.reconciliation_loop = loop

    yield

    if loop is not None:
        await loop.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
    )
    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
