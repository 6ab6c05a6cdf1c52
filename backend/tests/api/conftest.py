"""API-specific test fixtures.

Routes run in-process through httpx's ASGITransport so the service graph,
the SQLite engine and the test share one event loop.
"""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from pantry_billing.api.routes import api_router
from pantry_billing.core.auth import ClerkUser, require_auth
from pantry_billing.main import register_exception_handlers, wire_services


def override_auth(user: ClerkUser):
    """Dependency override factory for require_auth."""

    async def _override():
        return user

    return _override


@pytest.fixture
def test_user() -> ClerkUser:
    return ClerkUser(user_id="user_1", claims={"sub": "user_1", "email": "user_1@example.com"})


@pytest.fixture
def api_app(session_factory, test_settings, test_user) -> FastAPI:
    """App with routes, exception handlers and services wired against the test database."""
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    wire_services(app, session_factory, None, test_settings)
    app.state.shutting_down = False
    app.dependency_overrides[require_auth] = override_auth(test_user)
    return app


@pytest.fixture
async def api_client(api_app, test_settings):
    with patch("pantry_billing.api.routes.billing.get_settings", return_value=test_settings):
        transport = ASGITransport(app=api_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
