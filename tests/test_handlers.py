"""
HTTP tests for the web application.

The application is built by `start_web_server` with its startup context replaced, so the
handlers run against the in-memory registry and a mocked OAuth client.
"""

import os
from unittest.mock import patch

import pytest
import pytest_asyncio

from social.graze.handles.app.config import (
    ClaimRegistryAppKey,
    MetricsClientAppKey,
    Settings,
    ShredderFlowAppKey,
)
from social.graze.handles.app.metrics import NoOpMetricsClient
from social.graze.handles.app.server import start_web_server
from social.graze.handles.atproto.oauth import OAuthSession
from social.graze.handles.claims.registry import ClaimRegistry
from social.graze.handles.errors import (
    OAuthCallbackError,
    PersistenceError,
    ResolutionError,
)
from social.graze.handles.shredder.flow import ShredderFlow

API_KEY = "secret"
ADMIN = {"Authorization": f"Bearer {API_KEY}"}


@pytest.fixture
def settings():
    return Settings(api_key=API_KEY)


@pytest.fixture
def app_registry(registry):
    return registry


@pytest_asyncio.fixture
async def client(aiohttp_client, monkeypatch, settings, app_registry, mock_oauth_client):
    monkeypatch.chdir(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

    async def fake_background_tasks(app):
        app[MetricsClientAppKey] = NoOpMetricsClient()
        app[ClaimRegistryAppKey] = app_registry
        app[ShredderFlowAppKey] = ShredderFlow(mock_oauth_client, app_registry)
        yield

    with patch(
        "social.graze.handles.app.server.background_tasks", fake_background_tasks
    ):
        app = await start_web_server(settings)
    return await aiohttp_client(app)


class TestWellKnown:
    async def test_unclaimed_host(self, client):
        resp = await client.get(
            "/.well-known/atproto-did", headers={"Host": "nobody.example.com"}
        )
        assert resp.status == 404
        assert await resp.text() == 'User "nobody.example.com" not found!'

    async def test_claimed_host(self, client, registry):
        await registry.claim("alice.example.com", "alice.bsky.social")

        resp = await client.get(
            "/.well-known/atproto-did", headers={"Host": "Alice.Example.com:443"}
        )
        assert resp.status == 200
        assert resp.content_type == "text/plain"
        assert await resp.text() == "did:plc:AAA"

    async def test_index_redirects_to_profile(self, client, registry):
        await registry.claim("alice.example.com", "alice.bsky.social")

        resp = await client.get(
            "/", headers={"Host": "alice.example.com"}, allow_redirects=False
        )
        assert resp.status == 302
        assert resp.headers["Location"] == "https://bsky.app/profile/did:plc:AAA"


class TestAdmin:
    """Admin endpoints require the bearer credential."""

    @pytest.mark.parametrize(
        "method, path",
        [("GET", "/reload"), ("POST", "/add"), ("POST", "/remove")],
    )
    async def test_requires_credential(self, client, method, path):
        resp = await client.request(
            method, path, json={}, headers={"Authorization": "Bearer wrong"}
        )
        assert resp.status == 401
        assert await resp.text() == "error-claim-1000 Unauthorized"

    async def test_add(self, client, registry):
        resp = await client.post(
            "/add",
            json={"domain": "alice.other.org", "did": "did:plc:AAA"},
            headers=ADMIN,
        )
        assert resp.status == 200
        assert await resp.text() == "Added did"
        assert registry.get_by_domain("alice.other.org") == "did:plc:AAA"

    async def test_add_missing_did(self, client):
        resp = await client.post("/add", json={"domain": "a.example.com"}, headers=ADMIN)
        assert resp.status == 400
        assert "Missing domain or did" in await resp.text()

    async def test_add_taken_domain(self, client, registry):
        await registry.claim("alice.example.com", "alice.bsky.social")

        resp = await client.post(
            "/add",
            json={"domain": "alice.example.com", "did": "did:plc:BBB"},
            headers=ADMIN,
        )
        assert resp.status == 409

    async def test_remove(self, client, registry):
        await registry.claim("alice.example.com", "alice.bsky.social")

        resp = await client.post("/remove", json={"domain": "alice.example.com"}, headers=ADMIN)
        assert await resp.text() == "Removed domain"

        resp = await client.post("/remove", json={"domain": "alice.example.com"}, headers=ADMIN)
        assert resp.status == 200
        assert await resp.text() == "Nothing to remove"

    async def test_reload(self, client, memory_binding_store, registry):
        memory_binding_store.bindings = {"bob.example.com": "did:plc:BBB"}

        resp = await client.get("/reload", headers=ADMIN)
        assert resp.status == 200
        assert await resp.text() == "Reloaded db"
        assert registry.get_by_domain("bob.example.com") == "did:plc:BBB"

    async def test_reload_failure(self, client, memory_binding_store):
        memory_binding_store.fail_reads = PersistenceError.malformed("db.json")

        resp = await client.get("/reload", headers=ADMIN)
        assert resp.status == 500
        assert (await resp.text()).startswith("Failed to reload db:")


class TestClaim:
    async def test_public_claim(self, client):
        resp = await client.post(
            "/claim", json={"domain": "Alice.Example.com", "handle": "@alice.bsky.social"}
        )
        assert resp.status == 200
        assert await resp.json() == {"domain": "alice.example.com", "did": "did:plc:AAA"}

    async def test_claimed_twice(self, client):
        body = {"domain": "alice.example.com", "handle": "alice.bsky.social"}
        await client.post("/claim", json=body)

        resp = await client.post("/claim", json={**body, "handle": "bob.bsky.social"})
        assert resp.status == 409
        assert (await resp.text()).startswith("error-claim-1002")

    async def test_outside_allow_list(self, client):
        resp = await client.post(
            "/claim", json={"domain": "alice.other.org", "handle": "alice.bsky.social"}
        )
        assert resp.status == 401

    async def test_admin_claim_outside_allow_list(self, client):
        resp = await client.post(
            "/claim",
            json={"domain": "alice.other.org", "handle": "alice.bsky.social"},
            headers=ADMIN,
        )
        assert resp.status == 200

    async def test_unresolvable_handle(self, client):
        resp = await client.post(
            "/claim", json={"domain": "carol.example.com", "handle": "carol.bsky.social"}
        )
        assert resp.status == 400
        assert (await resp.text()).startswith("error-resolve-1001")

    async def test_missing_fields(self, client):
        resp = await client.post("/claim", json={"domain": "carol.example.com"})
        assert resp.status == 400

    async def test_invalid_json(self, client):
        resp = await client.post(
            "/claim", data="{nope", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
        assert await resp.text() == "Invalid JSON body"


class TestShredder:
    async def test_form(self, client):
        resp = await client.get("/shredder")
        assert resp.status == 200
        assert 'name="handle"' in await resp.text()

    async def test_submit_redirects_to_authorization_server(self, client, mock_oauth_client):
        resp = await client.post(
            "/shredder", data={"handle": "alice.bsky.social"}, allow_redirects=False
        )
        assert resp.status == 302
        assert resp.headers["Location"].startswith("https://auth.example.com/oauth/authorize")
        mock_oauth_client.authorize.assert_awaited_once_with("alice.bsky.social", "atproto")

    async def test_submit_without_handle(self, client):
        resp = await client.post("/shredder", data={"handle": ""}, allow_redirects=False)
        assert resp.status == 400
        assert "Missing handle" in await resp.text()

    async def test_submit_unresolvable_handle(self, client, mock_oauth_client):
        mock_oauth_client.authorize.side_effect = ResolutionError.handle_did_not_resolve(
            "nobody.invalid"
        )

        resp = await client.post("/shredder", data={"handle": "nobody.invalid"})
        assert resp.status == 400
        assert "handle did not resolve" in await resp.text()

    async def test_callback_releases_and_redirects(self, client, registry, mock_oauth_client):
        await registry.claim("alice.example.com", "alice.bsky.social")
        mock_oauth_client.callback.return_value = OAuthSession(
            did="did:plc:AAA",
            handle="alice.bsky.social",
            issuer="https://auth.example.com",
            scope="atproto",
            access_token="at",
            dpop_jwk={},
        )

        resp = await client.get(
            "/shredder/callback?state=s&iss=https://auth.example.com&code=c",
            allow_redirects=False,
        )
        assert resp.status == 302
        assert resp.headers["Location"] == "/shredder/done"
        assert registry.get_by_domain("alice.example.com") is None

    async def test_callback_failure(self, client, mock_oauth_client):
        mock_oauth_client.callback.side_effect = OAuthCallbackError.unknown_state()

        resp = await client.get("/shredder/callback?state=s&iss=i&code=c")
        assert resp.status == 400
        assert "no matching state" in await resp.text()

    async def test_done(self, client):
        resp = await client.get("/shredder/done")
        assert resp.status == 200

    async def test_client_metadata(self, client):
        resp = await client.get("/client-metadata.json")
        metadata = await resp.json()

        assert metadata["client_id"].startswith("http://localhost?redirect_uri=")
        assert metadata["grant_types"] == ["authorization_code"]


class TestInternal:
    async def test_alive(self, client):
        assert (await client.get("/internal/alive")).status == 200

    async def test_ready(self, client):
        assert (await client.get("/internal/ready")).status == 200


class TestNotReady:
    @pytest.fixture
    def app_registry(self, memory_binding_store, fake_resolver, matcher):
        return ClaimRegistry(memory_binding_store, fake_resolver, matcher)

    async def test_ready_before_load(self, client):
        assert (await client.get("/internal/ready")).status == 503

    async def test_claim_before_load(self, client):
        resp = await client.post(
            "/claim", json={"domain": "alice.example.com", "handle": "alice.bsky.social"}
        )
        assert resp.status == 500
        assert (await resp.text()).startswith("error-store-1003")

    async def test_remove_before_load(self, client):
        resp = await client.post("/remove", json={"domain": "alice.example.com"}, headers=ADMIN)
        assert resp.status == 500
        assert (await resp.text()).startswith("error-store-1003")

    async def test_shredder_callback_before_load(
        self, client, memory_binding_store, mock_oauth_client
    ):
        memory_binding_store.bindings = {"alice.example.com": "did:plc:AAA"}
        mock_oauth_client.callback.return_value = OAuthSession(
            did="did:plc:AAA",
            handle="alice.bsky.social",
            issuer="https://auth.example.com",
            scope="atproto",
            access_token="at",
            dpop_jwk={},
        )

        with patch("social.graze.handles.shredder.flow.sentry_sdk") as mock_sentry:
            resp = await client.get(
                "/shredder/callback?state=s&iss=https://auth.example.com&code=c",
                allow_redirects=False,
            )

        assert resp.status == 302
        mock_sentry.capture_exception.assert_called_once()
        assert memory_binding_store.bindings == {"alice.example.com": "did:plc:AAA"}
