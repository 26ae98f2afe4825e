"""
FastAPI application entry point.
Builds the storage, handshake, catalog and webhook components, reloads persisted
state on startup and maps domain errors to HTTP responses.
"""

from typing import Dict, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings
from app.exceptions import (
    AuthenticationError,
    FetchCancelled,
    PersistenceError,
    SessionMissing,
    UpstreamError,
    ValidationError,
)
from app.routers import products, shopify_auth, webhooks
from app.services.catalog_pager import CatalogPager
from app.services.nonce_ledger import NonceLedger
from app.services.oauth_service import ShopifyOAuthService
from app.services.session_vault import SessionVault
from app.services.shopify_api_client import ShopifyAPIClient
from app.services.signature_verifier import SignatureVerifier
from app.services.storage import CachedCollection, KeyValueStore, build_stores
from app.services.subscription_registrar import SubscriptionRegistrar
from app.services.webhook_ingestor import WebhookIngestor
from app.utils.logger import configure_logging
from app.utils.token_encryption import TokenCipher

logger = structlog.get_logger()

SERVICE_NAME = "Shopify Storefront Bridge"
VERSION = "1.0.0"

# Client closed the connection (nginx convention)
HTTP_CLIENT_CLOSED_REQUEST = 499


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def register_exception_handlers(app: FastAPI):
    """Map the error taxonomy onto HTTP status codes."""

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
        )
        return _error(status.HTTP_400_BAD_REQUEST, f"Invalid request: {problems}")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(SessionMissing)
    async def session_missing_handler(request: Request, exc: SessionMissing):
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc), upstream_status=exc.status_code)

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error("Storage failure while handling request", path=request.url.path, error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Storage unavailable")

    @app.exception_handler(FetchCancelled)
    async def fetch_cancelled_handler(request: Request, exc: FetchCancelled):
        return _error(HTTP_CLIENT_CLOSED_REQUEST, str(exc))


def create_app(
    settings: Optional[Settings] = None,
    *,
    stores: Optional[Dict[str, KeyValueStore]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the global settings)
        stores: Backing stores keyed by collection name (defaults to the configured backend)
        http_client: httpx client for Shopify calls (tests pass one with a mock transport)

    Returns:
        Configured FastAPI app; components are exposed on app.state
    """
    if settings is None:
        from app.config import settings as default_settings

        settings = default_settings

    configure_logging(settings)

    stores = stores or build_stores(settings)
    collections = {name: CachedCollection(store, name) for name, store in stores.items()}

    api_client = ShopifyAPIClient(
        http_client,
        api_version=settings.shopify_api_version,
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        timeout=settings.http_timeout_seconds,
    )
    verifier = SignatureVerifier(settings.shopify_api_secret)
    nonces = NonceLedger(collections["nonces"], ttl_seconds=settings.nonce_ttl_seconds)
    sessions = SessionVault(collections["sessions"], TokenCipher(settings.token_encryption_key))
    registrar = SubscriptionRegistrar(api_client, settings.app_url)

    app = FastAPI(
        title=SERVICE_NAME,
        description="Shopify OAuth install, catalog paging and product webhook ingestion",
        version=VERSION,
    )
    app.state.settings = settings
    app.state.collections = collections
    app.state.api_client = api_client
    app.state.nonces = nonces
    app.state.sessions = sessions
    app.state.oauth = ShopifyOAuthService(
        settings, nonces, sessions, verifier, api_client, registrar
    )
    app.state.pager = CatalogPager(api_client, sessions)
    app.state.ingestor = WebhookIngestor(
        collections["webhook_events"], verifier, shop_domain_suffix=settings.shop_domain_suffix
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(shopify_auth.router)  # Shopify OAuth endpoints
    app.include_router(shopify_auth.api_router)  # Session status
    app.include_router(products.router)  # Catalog pages
    app.include_router(webhooks.router)  # Product webhooks

    @app.on_event("startup")
    async def startup_event():
        """Reload all persisted state before serving; a storage failure aborts startup."""
        for collection in collections.values():
            await collection.load()
        await nonces.purge_expired()
        logger.info(
            "Shopify Storefront Bridge started",
            storage_backend=settings.storage_backend,
            sessions=collections["sessions"].size,
            webhook_events=collections["webhook_events"].size,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event."""
        await api_client.close()
        logger.info("Shopify Storefront Bridge shutting down")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:create_app", factory=True, host="0.0.0.0", port=8000)
