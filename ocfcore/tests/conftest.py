from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before any ocfcore module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="ocfcore-tests-")
os.environ["DATABASE"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'ocfcore.db')}"
os.environ["IDP_JWT_KEY"] = "ocfcore-test-signing-secret-0123456789abcdef"
os.environ["IDP_JWT_ALGORITHMS"] = "HS256"
os.environ["IDP_ENDPOINT"] = "http://idp.test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_ocfcore"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_ocfcore_test"
os.environ["FRONTEND_URL"] = "http://frontend.test"

import pytest  # noqa: E402

from ocfcore.core.config import get_settings  # noqa: E402
from ocfcore.domain.models import Base  # noqa: E402
from ocfcore.persistence.db import engine  # noqa: E402
from ocfcore.services.auth.identity import reset_identity_client  # noqa: E402
from ocfcore.services.authz.policy_store import reset_policy_store  # noqa: E402
from ocfcore.services.billing.stripe_gateway import reset_gateway  # noqa: E402
from ocfcore.services.notifications.mailer import reset_mailer  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database_between_tests() -> None:
    # Recreate the schema lazily and wipe every table so each test starts empty.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
        for table in reversed(Base.metadata.sorted_tables):
            await connection.execute(table.delete())
    yield


@pytest.fixture(autouse=True)
def reset_singletons_between_tests() -> None:
    # Cached clients hold loop-bound primitives; rebuild them per test.
    get_settings.cache_clear()
    reset_policy_store()
    reset_identity_client()
    reset_gateway()
    reset_mailer()
    yield
    reset_policy_store()
    reset_identity_client()
    reset_gateway()
    reset_mailer()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
