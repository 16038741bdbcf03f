"""
FastAPI Application Entry Point

Integrates:
  - WeChat MP webhook (catch-all router, one path per configured account)
  - Pairing approval API (<webhook path>/api/pair)
  - Health checks
  - Middleware for logging & error handling

Run: uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from infra.bootstrap import WebhookRuntime, bootstrap_runtime
from transport.wechat_mp.webhook import router as wechat_mp_router

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(runtime: Optional[WebhookRuntime] = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: Pre-built runtime (tests). When omitted, one is bootstrapped
            from Config at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("=" * 60)
        logger.info("WeChat MP gateway starting up...")
        logger.info(f"Environment: {Config.ENVIRONMENT}")
        logger.info(f"Data dir: {Config.WEMP_DATA_DIR}")
        if not Config.validate():
            logger.warning("Configuration has problems; see the warnings above")

        owned = runtime is None
        app.state.runtime = runtime if runtime is not None else await bootstrap_runtime()
        logger.info(f"Runtime: {app.state.runtime!r}")
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("WeChat MP gateway shutting down...")
        if owned:
            await app.state.runtime.aclose()

    app = FastAPI(
        title="WeChat MP Gateway",
        description="Webhook gateway for WeChat Official Accounts",
        version="1.0.0",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # Middleware for logging
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        logger.debug(f"{request.method} {request.url.path}")
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Request error: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error"},
            )

    # Health check endpoints
    @app.get("/health/live")
    async def health_live():
        """Live health check (Kubernetes liveness check)."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """Readiness: valid configuration and at least one webhook target registered."""
        if not Config.validate():
            return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "invalid configuration"})
        runtime_ = getattr(request.app.state, "runtime", None)
        if runtime_ is None or len(runtime_.registry) == 0:
            return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "no accounts registered"})
        return {"status": "ready", "paths": runtime_.registry.paths()}

    # Catch-all webhook router goes last so the routes above win
    app.include_router(wechat_mp_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=Config.GATEWAY_PORT,
    )
