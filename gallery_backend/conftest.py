# gallery_backend/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert

# Every test runs against its own in-memory SQLite database
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from gallery_backend.core import database  # noqa: E402
from gallery_backend.core.config import settings  # noqa: E402
from gallery_backend.core.metrics import METRICS  # noqa: E402


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def lifecycle_db(monkeypatch):
    """
    Fresh schema per test.

    A new StaticPool engine means a new in-memory database, so nothing
    leaks between tests. Outbound collaborators are disabled unless a test
    opts in by setting the key again.
    """
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", None)
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_NOTIFICATION_EMAIL", None)
    monkeypatch.setattr(settings, "NOTIFY_ON_CANCELLATION", True)
    monkeypatch.setattr(settings, "GRACE_PERIOD_DAYS", 21)
    monkeypatch.setattr(settings, "DELETION_HORIZON_DAYS", 90)
    monkeypatch.setattr(settings, "DELETION_WARNING_LEAD_DAYS", 7)
    monkeypatch.setattr(settings, "FREE_PLAN_GALLERY_LIMIT", 3)

    database.dispose_engine()
    database.init_engine("sqlite:///:memory:")
    database.create_all_tables()
    METRICS.reset()
    yield
    database.dispose_engine()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_account():
    """Insert an account row. Defaults to an active pro subscriber."""
    def _make(
        account_id: str = "acct_alice",
        *,
        plan: str = "pro",
        status: str = "active",
        stripe_customer_id=None,
        email: str = "alice@example.com",
        display_name: str = "Alice",
    ) -> str:
        with database.get_db_session() as session:
            session.execute(
                insert(database.accounts).values(
                    account_id=account_id,
                    stripe_customer_id=stripe_customer_id,
                    email=email,
                    display_name=display_name,
                    plan=plan,
                    subscription_status=status,
                    payment_failure_count=0,
                    created_at=NOW - timedelta(days=365),
                    updated_at=NOW - timedelta(days=365),
                )
            )
        return account_id
    return _make


@pytest.fixture
def make_galleries():
    """Insert `count` galleries, oldest first, one day apart. Returns their ids."""
    def _make(account_id: str, count: int, *, start: datetime = NOW - timedelta(days=300)) -> list:
        ids = []
        with database.get_db_session() as session:
            for i in range(count):
                gallery_id = f"{account_id}_g{i:02d}"
                session.execute(
                    insert(database.galleries).values(
                        gallery_id=gallery_id,
                        account_id=account_id,
                        title=f"Session {i}",
                        created_at=start + timedelta(days=i),
                    )
                )
                ids.append(gallery_id)
        return ids
    return _make
