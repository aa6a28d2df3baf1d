"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lock_reconciler.api.routes import router as api_router, set_manager
from lock_reconciler.config import settings
from lock_reconciler.core.manager import ReconciliationManager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting lock reconciler application...")

    manager = ReconciliationManager(settings)
    await manager.initialize()
    set_manager(manager)
    await manager.start()

    logger.info("Application started successfully")

    yield

    logger.info("Shutting down lock reconciler application...")
    await manager.stop()
    set_manager(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Lock Reconciler",
    description="Issues fresh guest passcodes on smart locks for upcoming reservations",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "lock_reconciler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
