import asyncio
import inspect
import os

# Must be set before trustcore.logging configures structlog on import
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

from trustcore.config import Settings, reset_settings_cache  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Settings with both providers configured and a cheap hash cost."""
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="trustcore-test",
        access_token_ttl_seconds=900,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
        password_hash_cost=1,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
