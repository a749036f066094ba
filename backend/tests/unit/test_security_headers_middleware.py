"""Unit tests for security headers middleware."""

from unittest.mock import Mock, patch

import pytest
from starlette.responses import Response

from linkbio.middleware.security_headers import API_CSP, SecurityHeadersMiddleware


def _request(hostname="linkbio.test"):
    request = Mock()
    request.url.hostname = hostname
    return request


@pytest.mark.unit
class TestSecurityHeadersMiddleware:

    @pytest.fixture
    def middleware(self):
        return SecurityHeadersMiddleware(Mock())

    @pytest.mark.asyncio
    async def test_defaults_applied(self, middleware):
        async def call_next(request):
            return Response("ok")

        response = await middleware.dispatch(_request(), call_next)

        assert response.headers["Content-Security-Policy"] == API_CSP
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"

    @pytest.mark.asyncio
    async def test_route_headers_are_kept(self, middleware):
        async def call_next(request):
            return Response(
                "page",
                headers={"Content-Security-Policy": "script-src 'nonce-abc'", "Referrer-Policy": "no-referrer"},
            )

        response = await middleware.dispatch(_request(), call_next)

        assert response.headers["Content-Security-Policy"] == "script-src 'nonce-abc'"
        assert response.headers["Referrer-Policy"] == "no-referrer"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "environment, hostname, expected",
        [
            ("production", "linkbio.test", True),
            ("production", "localhost", False),
            ("development", "linkbio.test", False),
        ],
    )
    async def test_hsts(self, middleware, environment, hostname, expected):
        async def call_next(request):
            return Response("ok")

        with patch("linkbio.middleware.security_headers.settings") as mock_settings:
            mock_settings.ENVIRONMENT = environment
            response = await middleware.dispatch(_request(hostname), call_next)

        assert ("Strict-Transport-Security" in response.headers) is expected
