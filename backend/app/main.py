"""opsync sync server - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from opsync.errors import RemoteUnavailableError

from .config import get_settings
from .database import get_store_instance
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import sync_router

logger = get_logger("opsync.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.debug)
    logger.info(f"Starting opsync server (store={settings.store_backend}, debug={settings.debug})")
    yield
    logger.info("Shutting down opsync server")


async def _store_unavailable_handler(request: Request, exc: RemoteUnavailableError):
    logger.error(f"Store unavailable: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="opsync sync server",
        description="Append-only encrypted operation log",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RemoteUnavailableError, _store_unavailable_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router)

    @app.get("/")
    async def root():
        return {
            "service": "opsync-server",
            "version": "0.1.0",
            "status": "ok",
        }

    @app.get("/health")
    def health():
        """Health check with an actual store read."""
        try:
            store_status = get_store_instance().health()
            return {"status": "ok", "store": store_status}
        except (OSError, ValueError, RemoteUnavailableError) as e:
            return {"status": "degraded", "store": {"error": str(e)[:100]}}

    return app


app = create_app()
