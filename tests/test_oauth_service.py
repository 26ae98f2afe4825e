"""Tests for the OAuth install handshake."""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from app.exceptions import AuthenticationError, InvalidDomain, UpstreamError, ValidationError
from app.services.nonce_ledger import NonceLedger
from app.services.oauth_service import ShopifyOAuthService
from app.services.session_vault import SessionVault
from app.services.shopify_api_client import ShopifyAPIClient
from app.services.signature_verifier import SignatureVerifier
from app.services.storage import MemoryStore
from app.services.subscription_registrar import SubscriptionRegistrar
from conftest import (
    SHOP_A,
    SHOP_B,
    TEST_API_KEY,
    TEST_APP_URL,
    TEST_SECRET,
    FakeClock,
    FakeShopify,
    SleepRecorder,
    make_collection,
    make_settings,
)

TOKEN_PATH = "/admin/oauth/access_token"
WEBHOOKS_PATH = "/admin/api/2024-04/webhooks.json"


class Harness:
    """OAuth service wired to in-memory stores and a fake Shopify."""

    def __init__(self, fake: FakeShopify, clock: FakeClock, **overrides):
        self.fake = fake
        self.settings = make_settings(**overrides)
        self.nonce_store = MemoryStore()
        self.session_store = MemoryStore()
        self.nonces = NonceLedger(make_collection("nonces", self.nonce_store), clock=clock)
        self.sessions = SessionVault(make_collection("sessions", self.session_store))
        self.verifier = SignatureVerifier(TEST_SECRET)
        api_client = ShopifyAPIClient(fake.client(), sleep=SleepRecorder())
        self.service = ShopifyOAuthService(
            self.settings,
            self.nonces,
            self.sessions,
            self.verifier,
            api_client,
            SubscriptionRegistrar(api_client, self.settings.app_url),
        )

    def callback(self, state: str, shop: str = SHOP_A, code: str = "auth-code", **extra) -> dict:
        params = {"code": code, "shop": shop, "state": state, "timestamp": "1700000000", **extra}
        params["hmac"] = self.verifier.sign_callback(params)
        return params


@pytest.fixture
def harness(fake_shopify: FakeShopify, clock: FakeClock) -> Harness:
    fake_shopify.add("POST", TOKEN_PATH, (200, {"access_token": "shpat_new", "scope": "read_products"}))
    fake_shopify.add("POST", WEBHOOKS_PATH, (201, {"webhook": {}}))
    return Harness(fake_shopify, clock)


# ---------------------------------------------------------------------------
# begin
# ---------------------------------------------------------------------------


class TestBegin:
    @pytest.mark.asyncio
    async def test_authorize_url(self, harness: Harness) -> None:
        redirect = await harness.service.begin(SHOP_A)

        url = urlparse(redirect.url)
        query = parse_qs(url.query)
        assert url.scheme == "https"
        assert url.netloc == SHOP_A
        assert url.path == "/admin/oauth/authorize"
        assert query["client_id"] == [TEST_API_KEY]
        assert query["scope"] == ["read_products"]
        assert query["redirect_uri"] == [f"{TEST_APP_URL}/auth/callback"]
        assert query["state"] == [redirect.state]
        assert "grant_options[]" not in query
        assert redirect.state in harness.nonce_store.data

    @pytest.mark.asyncio
    async def test_per_user_mode(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        harness = Harness(fake_shopify, clock, access_mode="per-user", shopify_scopes="read_products, write_products")
        redirect = await harness.service.begin(SHOP_A)

        query = parse_qs(urlparse(redirect.url).query)
        assert query["grant_options[]"] == ["per-user"]
        assert query["scope"] == ["read_products,write_products"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("shop", [None, "", "evil.com", "https://shop-a.myshopify.com"])
    async def test_invalid_shop_issues_nothing(self, harness: Harness, shop) -> None:
        with pytest.raises(InvalidDomain):
            await harness.service.begin(shop)
        assert harness.nonce_store.data == {}

    @pytest.mark.asyncio
    async def test_each_begin_issues_new_state(self, harness: Harness) -> None:
        first = await harness.service.begin(SHOP_A)
        second = await harness.service.begin(SHOP_A)
        assert first.state != second.state
        assert len(harness.nonce_store.data) == 2


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_happy_path(self, harness: Harness) -> None:
        redirect = await harness.service.begin(SHOP_A)

        result = await harness.service.complete(harness.callback(redirect.state))

        assert result.shop == SHOP_A
        assert result.scopes == ["read_products"]
        assert result.subscriptions.registered == [
            "products/create",
            "products/update",
            "products/delete",
        ]
        session = await harness.sessions.get(SHOP_A)
        assert session.access_token == "shpat_new"
        assert session.scope == "read_products"

        exchange = harness.fake.calls("POST", TOKEN_PATH)
        assert len(exchange) == 1
        assert json.loads(exchange[0].content) == {
            "client_id": TEST_API_KEY,
            "client_secret": TEST_SECRET,
            "code": "auth-code",
        }
        assert len(harness.fake.calls("POST", WEBHOOKS_PATH)) == 3

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, harness: Harness) -> None:
        redirect = await harness.service.begin(SHOP_A)
        params = harness.callback(redirect.state)
        await harness.service.complete(params)

        with pytest.raises(AuthenticationError):
            await harness.service.complete(params)
        assert len(harness.fake.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_unknown_state_rejected_without_exchange(self, harness: Harness) -> None:
        await harness.service.begin(SHOP_A)

        with pytest.raises(AuthenticationError, match="state"):
            await harness.service.complete(harness.callback("forged-state"))

        assert harness.fake.calls("POST", TOKEN_PATH) == []
        assert await harness.sessions.get(SHOP_A) is None

    @pytest.mark.asyncio
    async def test_state_bound_to_other_shop(self, harness: Harness) -> None:
        redirect = await harness.service.begin(SHOP_A)
        with pytest.raises(AuthenticationError):
            await harness.service.complete(harness.callback(redirect.state, shop=SHOP_B))
        assert harness.fake.calls("POST", TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_expired_state(self, harness: Harness, clock: FakeClock) -> None:
        redirect = await harness.service.begin(SHOP_A)
        clock.advance(301)
        with pytest.raises(AuthenticationError):
            await harness.service.complete(harness.callback(redirect.state))

    @pytest.mark.asyncio
    async def test_bad_hmac_consumes_state(self, harness: Harness) -> None:
        redirect = await harness.service.begin(SHOP_A)
        params = harness.callback(redirect.state)
        params["timestamp"] = "1700000001"

        with pytest.raises(AuthenticationError, match="HMAC"):
            await harness.service.complete(params)

        assert redirect.state not in harness.nonce_store.data
        assert harness.fake.calls("POST", TOKEN_PATH) == []
        # A correctly signed retry with the same state is now rejected too
        with pytest.raises(AuthenticationError, match="state"):
            await harness.service.complete(harness.callback(redirect.state))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["shop", "code"])
    async def test_missing_shop_or_code(self, harness: Harness, missing: str) -> None:
        redirect = await harness.service.begin(SHOP_A)
        params = harness.callback(redirect.state)
        del params[missing]

        with pytest.raises(ValidationError, match="Missing shop or code"):
            await harness.service.complete(params)
        # State was not consumed
        assert redirect.state in harness.nonce_store.data

    @pytest.mark.asyncio
    async def test_malformed_shop(self, harness: Harness) -> None:
        with pytest.raises(InvalidDomain):
            await harness.service.complete(harness.callback("s", shop="evil.com"))

    @pytest.mark.asyncio
    async def test_exchange_failure_is_not_retried(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        fake_shopify.add("POST", TOKEN_PATH, (500, {"errors": "internal"}))
        harness = Harness(fake_shopify, clock)
        redirect = await harness.service.begin(SHOP_A)

        with pytest.raises(UpstreamError) as exc_info:
            await harness.service.complete(harness.callback(redirect.state))

        assert exc_info.value.status_code == 500
        assert len(fake_shopify.calls("POST", TOKEN_PATH)) == 1
        assert harness.session_store.data == {}
        assert fake_shopify.calls("POST", WEBHOOKS_PATH) == []

    @pytest.mark.asyncio
    async def test_exchange_without_token(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        fake_shopify.add("POST", TOKEN_PATH, (200, {"scope": "read_products"}))
        harness = Harness(fake_shopify, clock)
        redirect = await harness.service.begin(SHOP_A)

        with pytest.raises(UpstreamError, match="No access token"):
            await harness.service.complete(harness.callback(redirect.state))
        assert harness.session_store.data == {}

    @pytest.mark.asyncio
    async def test_partial_registration_still_succeeds(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        fake_shopify.add("POST", TOKEN_PATH, (200, {"access_token": "shpat_new", "scope": "read_products"}))
        fake_shopify.add("POST", WEBHOOKS_PATH, (201, {}), (422, {"errors": "taken"}), (201, {}))
        harness = Harness(fake_shopify, clock)
        redirect = await harness.service.begin(SHOP_A)

        result = await harness.service.complete(harness.callback(redirect.state))

        assert result.subscriptions.registered == ["products/create", "products/delete"]
        assert list(result.subscriptions.failed) == ["products/update"]
        assert (await harness.sessions.get(SHOP_A)).access_token == "shpat_new"

    @pytest.mark.asyncio
    async def test_scopes_fall_back_to_requested(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        fake_shopify.add("POST", TOKEN_PATH, (200, {"access_token": "shpat_new"}))
        fake_shopify.add("POST", WEBHOOKS_PATH, (201, {}))
        harness = Harness(fake_shopify, clock, shopify_scopes="read_products,read_inventory")
        redirect = await harness.service.begin(SHOP_A)

        result = await harness.service.complete(harness.callback(redirect.state))
        assert result.scopes == ["read_products", "read_inventory"]

    @pytest.mark.asyncio
    async def test_reinstall_replaces_session(self, harness: Harness) -> None:
        harness.fake.routes[("POST", TOKEN_PATH)] = [
            (200, {"access_token": "t1", "scope": "read_products"}),
            (200, {"access_token": "t2", "scope": "read_products"}),
        ]
        for _ in range(2):
            redirect = await harness.service.begin(SHOP_A)
            await harness.service.complete(harness.callback(redirect.state))

        assert (await harness.sessions.get(SHOP_A)).access_token == "t2"
        assert list(harness.session_store.data) == [SHOP_A]

    @pytest.mark.asyncio
    async def test_per_user_token_fields(self, fake_shopify: FakeShopify, clock: FakeClock) -> None:
        fake_shopify.add(
            "POST",
            TOKEN_PATH,
            (
                200,
                {
                    "access_token": "online",
                    "scope": "read_products",
                    "expires_in": 86399,
                    "associated_user_scope": "read_products",
                },
            ),
        )
        fake_shopify.add("POST", WEBHOOKS_PATH, (201, {}))
        harness = Harness(fake_shopify, clock, access_mode="per-user")
        redirect = await harness.service.begin(SHOP_A)

        await harness.service.complete(harness.callback(redirect.state))

        session = await harness.sessions.get(SHOP_A)
        assert session.access_mode == "per-user"
        assert session.expires_in == 86399
