"""FastAPI application for the publication engine."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from db.connection import db
from publishing.service import build_publication_service
from api.publishing import router as publishing_router
from config.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    configure_logging()
    logger.info("Starting publishing API")

    # Connect to database
    await db.connect()

    # Build the engine once and share it through app.state
    service = build_publication_service(database=db)
    app.state.publication_service = service

    # Start publishing scheduler
    await service.start()

    yield

    # Shutdown
    logger.info("Shutting down publishing API")

    # Stop scheduler
    await service.stop()

    # Disconnect database
    await db.disconnect()


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create the API app. Tests pass use_lifespan=False and set app.state themselves."""
    app = FastAPI(
        title="Publishing API",
        description="Scheduled multi-channel publication and delivery",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(publishing_router)

    @app.get("/health")
    async def health(request: Request):
        """Database reachability and scheduler state."""
        service = getattr(request.app.state, "publication_service", None)
        database_ok = await db.ping()
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "scheduler": {
                "running": service.scheduler.running if service else False,
                "phase": service.scheduler.phase.value if service else None,
            },
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
