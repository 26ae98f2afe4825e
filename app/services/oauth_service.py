"""
Shopify OAuth install handshake.
begin() issues a state nonce and builds the authorize URL; complete() checks the
callback, exchanges the code for a token, stores the session and registers webhooks.
"""
from datetime import datetime, timezone
from typing import Mapping
from urllib.parse import urlencode

import structlog

from app.config import Settings
from app.exceptions import AuthenticationError, UpstreamError, ValidationError
from app.models.database import Session
from app.models.shopify import (
    AccessTokenResponse,
    AuthorizationRedirect,
    HandshakeResult,
)
from app.services.nonce_ledger import NonceLedger
from app.services.session_vault import SessionVault
from app.services.shopify_api_client import ShopifyAPIClient
from app.services.signature_verifier import QueryValue, SignatureVerifier
from app.services.subscription_registrar import SubscriptionRegistrar
from app.utils.shop_domain import validate_shop_domain

logger = structlog.get_logger()

CALLBACK_PATH = "/auth/callback"


def _first(value: QueryValue | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value[0] if value else None


class ShopifyOAuthService:
    """Drives the install handshake for one Shopify app."""

    def __init__(
        self,
        settings: Settings,
        nonces: NonceLedger,
        sessions: SessionVault,
        verifier: SignatureVerifier,
        api_client: ShopifyAPIClient,
        registrar: SubscriptionRegistrar,
    ):
        self.settings = settings
        self.nonces = nonces
        self.sessions = sessions
        self.verifier = verifier
        self.api_client = api_client
        self.registrar = registrar

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.app_url}{CALLBACK_PATH}"

    async def begin(self, raw_shop: str | None) -> AuthorizationRedirect:
        """
        Start an install for raw_shop.

        Args:
            raw_shop: Shop domain from the install request

        Returns:
            AuthorizationRedirect with the Shopify authorize URL and issued state

        Raises:
            InvalidDomain: If raw_shop is not a shop domain
        """
        shop = validate_shop_domain(raw_shop, self.settings.shop_domain_suffix)
        state = await self.nonces.issue(shop)

        params = {
            "client_id": self.settings.shopify_api_key,
            "scope": ",".join(self.settings.scopes),
            "redirect_uri": self.redirect_uri,
            "state": state.nonce,
        }
        if self.settings.access_mode == "per-user":
            params["grant_options[]"] = "per-user"

        url = f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"
        logger.info("Initiating Shopify OAuth", shop=shop, access_mode=self.settings.access_mode)
        return AuthorizationRedirect(url=url, state=state.nonce, shop=shop)

    async def exchange_token(self, shop_domain: str, code: str) -> Session:
        """
        Exchange an authorization code for an access token.
        Made once, without retries: a code is single-use.

        Raises:
            UpstreamError: If Shopify rejects the exchange or omits the token
        """
        response = await self.api_client.request(
            "POST",
            f"https://{shop_domain}/admin/oauth/access_token",
            json={
                "client_id": self.settings.shopify_api_key,
                "client_secret": self.settings.shopify_api_secret,
                "code": code,
            },
            retry=False,
        )
        try:
            token = AccessTokenResponse.model_validate(response.json())
        except ValueError as e:
            # pydantic's ValidationError is a ValueError, as is a JSON decode failure
            raise UpstreamError(
                "No access token in response",
                status_code=response.status_code,
                body=response.text,
            ) from e

        return Session(
            shop_domain=shop_domain,
            access_token=token.access_token,
            scope=token.scope,
            created_at=datetime.now(timezone.utc),
            access_mode=self.settings.access_mode,
            expires_in=token.expires_in,
            associated_user_scope=token.associated_user_scope,
        )

    async def complete(self, query_params: Mapping[str, QueryValue]) -> HandshakeResult:
        """
        Finish an install from the OAuth callback query.

        Order: shop domain, state nonce, HMAC, token exchange, session write,
        webhook registration. The nonce is consumed before the HMAC check so
        a state value can never be tried twice.

        Args:
            query_params: Every callback query parameter (code, shop, state, hmac, timestamp, ...)

        Returns:
            HandshakeResult with the granted scopes and webhook registration report

        Raises:
            ValidationError: Missing shop/code or malformed shop
            AuthenticationError: Bad state or HMAC
            UpstreamError: Token exchange failed
            PersistenceError: Session could not be stored
        """
        raw_shop = _first(query_params.get("shop"))
        code = _first(query_params.get("code"))
        if not raw_shop or not code:
            raise ValidationError("Missing shop or code in callback.")

        shop = validate_shop_domain(raw_shop, self.settings.shop_domain_suffix)

        if not await self.nonces.consume(_first(query_params.get("state")), shop):
            raise AuthenticationError("Invalid, expired, or missing state parameter.")

        if not self.verifier.verify_callback(query_params):
            logger.warning("Failed HMAC validation on OAuth callback", shop=shop)
            raise AuthenticationError("Failed HMAC validation.")

        session = await self.exchange_token(shop, code)
        await self.sessions.put(session)
        logger.info("Shopify OAuth token received", shop=shop)

        report = await self.registrar.register_all(shop, session.access_token)
        if not report.ok:
            logger.warning(
                "Some webhook subscriptions failed to register",
                shop=shop,
                failed=sorted(report.failed),
            )

        scopes = [s for s in session.scope.split(",") if s] or self.settings.scopes
        return HandshakeResult(shop=shop, scopes=scopes, subscriptions=report)
