"""
WhatsApp CRM - FastAPI Application Entry Point

Run with: uvicorn whatsapp_crm.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clients import create_capi_client, create_notification_client
from .config import CRMSettings, get_crm_settings, is_notification_configured
from .errors import CRMError, StorageUnavailableError
from .models import CRMErrorResponse
from .routes import crm_router
from .storage import KVStore, RedisKVStore
from . import __version__

load_dotenv()

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=CRMErrorResponse(error=code).model_dump())


def create_app(store: Optional[KVStore] = None, settings: Optional[CRMSettings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        store: Key-value store to use; a Redis store is opened from settings
            when omitted
        settings: CRM settings (default: process settings)
    """
    settings = settings or get_crm_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown."""
        owns_store = store is None
        if owns_store:
            app.state.kv_store = RedisKVStore.from_url(
                settings.redis_url, socket_timeout=settings.redis_socket_timeout
            )
        if not hasattr(app.state, "notifier"):
            app.state.notifier = (
                create_notification_client(settings) if is_notification_configured(settings) else None
            )
        if not hasattr(app.state, "capi_client"):
            app.state.capi_client = create_capi_client(settings) if settings.capi_reporting_enabled else None

        logger.info(f"Starting WhatsApp CRM v{__version__}")
        logger.info(f"Key prefix: {settings.crm_key_prefix or '(none)'}")
        if app.state.notifier is None:
            logger.warning("CONFIGURATION_MISSING: notification webhook disabled")

        yield

        logger.info("Shutting down WhatsApp CRM")
        for client in (app.state.notifier, app.state.capi_client):
            if client is not None:
                await client.close()
        if owns_store:
            await app.state.kv_store.close()

    app = FastAPI(
        title="WhatsApp CRM",
        description="WhatsApp contacts, conversations, purchases and ad attribution",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if store is not None:
        app.state.kv_store = store

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CRMError)
    async def crm_error_handler(request: Request, exc: CRMError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.code} ({exc})")
        return _error(exc.status_code, exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Invalid payload on {request.url.path}: {exc.errors()}")
        return _error(400, "INVALID_PAYLOAD")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error(500, "SERVER_ERROR")

    # Include API routes
    app.include_router(crm_router)

    @app.get("/health")
    async def health():
        """Simple health check."""
        return {"status": "ok", "version": __version__}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness check: the key-value store answers."""
        try:
            await request.app.state.kv_store.ping()
        except StorageUnavailableError:
            return JSONResponse(status_code=503, content={"status": "unavailable", "store": "down"})
        return {"status": "ready", "store": "ok"}

    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


configure_logging(get_crm_settings().log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("whatsapp_crm.main:app", host="0.0.0.0", port=8000, reload=True)
