"""
Root-level pytest configuration for the comms sync engine.

Configures:
- pytest-asyncio for async test support
- Custom markers (integration, etc.)
- Fresh rate limiters per test
"""

import pytest

from utils.rate_limiter import reset_limiters


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    # Register custom markers to avoid warnings
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may require network access)"
    )


# asyncio_mode is "auto" (pyproject.toml) so async tests don't need @pytest.mark.asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture(autouse=True)
def fresh_rate_limiters():
    """Limiters are process-wide; tests must not share buckets."""
    reset_limiters()
    yield
    reset_limiters()
