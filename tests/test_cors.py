"""
Tests for CORS headers and configuration parsing.
"""

from dev.stevedylan.edge.app.config import Settings
from dev.stevedylan.edge.app.cors import get_cors_headers

ALLOWED = ["https://stevedylan.dev", "http://localhost:4321"]


class TestGetCorsHeaders:
    """Test get_cors_headers."""

    def test_allowed_origin(self):
        """Allowed origins are echoed back with credentials."""
        headers = get_cors_headers("https://stevedylan.dev", ALLOWED)

        assert headers["Access-Control-Allow-Origin"] == "https://stevedylan.dev"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
        assert headers["Access-Control-Allow-Headers"] == "Content-Type"
        assert headers["Vary"] == "Origin"

    def test_unknown_origin(self):
        """Unknown origins get no allow-origin and no credentials."""
        headers = get_cors_headers("https://evil.example", ALLOWED)

        assert "Access-Control-Allow-Origin" not in headers
        assert "Access-Control-Allow-Credentials" not in headers

    def test_missing_origin(self):
        """Requests without Origin get no allow-origin."""
        assert "Access-Control-Allow-Origin" not in get_cors_headers(None, ALLOWED)


class TestSettings:
    """Test settings parsing."""

    def test_allowed_origins_from_comma_separated_string(self):
        """Comma separated origins are split and normalized."""
        settings = Settings(
            allowed_origins="https://stevedylan.dev/, http://localhost:4321"
        )

        assert settings.allowed_origins == ALLOWED

    def test_urls_lose_trailing_slash(self):
        """Configured URLs are stored without a trailing slash."""
        settings = Settings(api_url="https://api.example.com/")

        assert settings.api_url == "https://api.example.com"
