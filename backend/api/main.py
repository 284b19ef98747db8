"""
StockPulse API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings, get_settings
from core.errors import InventoryError
from core.runtime import InventoryCore

logger = structlog.get_logger()

STATUS_BY_KIND = {
    "validation": 422,
    "domain": 409,
    "not_found": 404,
    "concurrency": 409,
    "consistency": 500,
    "integration": 503,
}


def create_app(settings: Settings | None = None, core: InventoryCore | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        owned = getattr(app.state, "core", None) is None
        if owned:
            app.state.core = InventoryCore(settings)
            await app.state.core.start()
        logger.info("StockPulse API starting up", version=settings.app_version)
        yield
        logger.info("StockPulse API shutting down")
        if owned:
            await app.state.core.stop()
            app.state.core = None

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Real-time inventory core: stock, costing, reservations, alerts",
        lifespan=lifespan,
    )
    app.state.core = core

    @app.exception_handler(InventoryError)
    async def inventory_error_handler(request: Request, exc: InventoryError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        log = logger.warning if status_code < 500 else logger.error
        log("api.inventory_error", path=request.url.path, code=exc.code, kind=exc.kind, status=status_code)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "retryable": False,
                    "details": {
                        "fields": [
                            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                            for err in exc.errors()
                        ]
                    },
                }
            },
        )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Import and register routers
    from api.v1.routers import alerts, inventory, ledger, reservations, transfers
    from realtime.websocket import router as ws_router

    app.include_router(inventory.router)
    app.include_router(transfers.router)
    app.include_router(reservations.router)
    app.include_router(ledger.router)
    app.include_router(alerts.router)
    app.include_router(ws_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for load balancers."""
        return {"status": "healthy", "version": settings.app_version}

    return app


app = create_app()
