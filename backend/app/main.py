"""
BYOK Chat Backend - FastAPI Application
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import keys, models, threads
from app.core.config import settings
from app.core.database import close_db, init_db
from app.core.errors import AppError, InvalidRequestError
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import RateLimiter
from app.services.chat import ConversationLocks
from app.services.credentials import PassthroughSealer, SecretSealer

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    logger.info("Starting BYOK Chat Backend", version="1.0.0")
    if isinstance(app.state.sealer, PassthroughSealer):
        logger.warning("Provider keys are stored unsealed; configure a SecretSealer for production")
    await init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down BYOK Chat Backend")
    await close_db()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error_code=exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidRequestError(details={"errors": jsonable_encoder(exc.errors())})
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


def create_app(
    sealer: Optional[SecretSealer] = None,
    rate_limiter: Optional[RateLimiter] = None,
    use_lifespan: bool = True,
) -> FastAPI:
    """Build the application; collaborators can be swapped for tests."""
    app = FastAPI(
        title="BYOK Chat API",
        description="Bring-your-own-key chat across OpenAI, Anthropic and Gemini",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )

    app.state.sealer = sealer or PassthroughSealer()
    if rate_limiter is None:
        rate_limiter = RateLimiter(
            limit=settings.RATE_LIMIT_PER_MINUTE,
            interval_seconds=settings.RATE_LIMIT_INTERVAL_SECONDS,
        )
    app.state.rate_limiter = rate_limiter
    app.state.conversation_locks = ConversationLocks()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Include routers
    app.include_router(keys.router, prefix="/api/providers", tags=["keys"])
    app.include_router(models.router, prefix="/api/providers", tags=["models"])
    app.include_router(threads.router, prefix="/api/threads", tags=["threads"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "byok-chat-backend"}

    return app


app = create_app()
