"""
Main FastAPI application
Entry point for the Contest Trading Engine API
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from contest_engine import __version__
from contest_engine.api import contests, market
from contest_engine.core.config import Settings, settings as default_settings
from contest_engine.core.exceptions import ContestEngineError
from contest_engine.core.security import configure_limits, get_security_headers, limiter
from contest_engine.models.common import Clock, utcnow
from contest_engine.services.engine import ContestEngine
from contest_engine.services.quote_providers import QuoteProvider

# Configure logging
logging.basicConfig(
    level=logging.INFO if not default_settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================================================
# LIFESPAN CONTEXT MANAGER
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: ContestEngine = app.state.engine
    config = engine.settings

    logger.info("Starting Contest Trading Engine")
    logger.info(f"Environment: {config.ENVIRONMENT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    await engine.start()
    logger.info("Application startup complete")

    yield  # Application runs here

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down Contest Trading Engine")
    await engine.stop()
    logger.info("Shutdown complete")


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    quote_provider: Optional[QuoteProvider] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    config = settings or default_settings

    app = FastAPI(
        title="Contest Trading Engine API",
        description="Virtual stock-trading contests with live leaderboards",
        version=__version__,
        docs_url="/docs" if config.DEBUG else None,
        redoc_url="/redoc" if config.DEBUG else None,
        lifespan=lifespan
    )
    app.state.engine = ContestEngine(config, quote_provider=quote_provider, clock=clock)

    # Add rate limiter
    limiter.enabled = config.RATE_LIMIT_ENABLED
    configure_limits(trades=config.RATE_LIMIT_TRADES)
    app.state.limiter = limiter

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for key, value in get_security_headers().items():
            response.headers[key] = value
        return response

    # ========================================================================
    # EXCEPTION HANDLERS
    # ========================================================================

    @app.exception_handler(ContestEngineError)
    async def engine_error_handler(request: Request, exc: ContestEngineError):
        if exc.status_code >= 500:
            logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
        return JSONResponse(
            status_code=400,
            content={
                "message": message,
                "code": "VALIDATION_ERROR",
                "retryable": False,
                "details": {"errors": jsonable_encoder(errors)},
            },
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={
                "message": "Rate limit exceeded. Please try again later.",
                "code": "RATE_LIMITED",
                "retryable": True,
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        content = {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "retryable": False,
        }
        if config.DEBUG:
            content["details"] = {"error": str(exc), "type": type(exc).__name__}
        return JSONResponse(status_code=500, content=content)

    # ========================================================================
    # ROOT ENDPOINTS
    # ========================================================================

    @app.get("/")
    async def root():
        engine: ContestEngine = app.state.engine
        return {
            "message": "Contest Trading Engine API",
            "version": __version__,
            "status": "operational",
            "price_feed_status": "running" if engine.running else "idle",
            "redis_status": "connected" if engine.mirror is not None else "disabled",
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "services": app.state.engine.health(),
        }

    # ========================================================================
    # API ROUTES
    # ========================================================================

    app.include_router(contests.router, prefix=config.API_PREFIX, tags=["Contests"])
    app.include_router(market.router, prefix=config.API_PREFIX, tags=["Market Data"])
    app.include_router(market.ws_router, tags=["Live"])

    return app


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main() -> None:
    import uvicorn
    uvicorn.run(
        "contest_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG
    )


if __name__ == "__main__":
    main()
