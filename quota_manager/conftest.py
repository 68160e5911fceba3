# quota_manager/conftest.py
import logging
import sys
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from quota_manager.core.database import create_all_tables, dispose_engine, get_db_session, init_engine
from quota_manager.core.metrics import reset_metrics
from quota_manager.features.quota.ledger import add_lot
from quota_manager.features.quota.store import InMemoryQuotaStore, set_quota_store
from quota_manager.features.quota.unit import quota_unit
from quota_manager.features.strategy.repository import create_strategy
from quota_manager.features.users.service import upsert_user_info
from quota_manager.models.strategy import StrategyCreate
from quota_manager.models.user import UserInfo


@pytest.fixture(scope="function", autouse=True)
def quota_db(tmp_path, monkeypatch):
    """
    Fresh file-backed SQLite database per test.

    A file (not :memory:) so that threads get their own connections and
    concurrent quota units really queue on the write lock.
    """
    url = f"sqlite:///{tmp_path / 'quota.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Drop handlers bound to a previous test's captured streams."""
    yield
    logging.getLogger("quota_manager").handlers = []


@pytest.fixture(scope="function", autouse=True)
def clear_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store():
    """In-memory quota store, also installed as the process-wide default."""
    s = InMemoryQuotaStore()
    set_quota_store(s)
    yield s
    set_quota_store(None)


@pytest.fixture
def past():
    return datetime.now(timezone.utc) - timedelta(days=1)


@pytest.fixture
def future():
    return datetime.now(timezone.utc) + timedelta(days=30)


@pytest.fixture
def grant_lot(store):
    """Grant a lot through the ledger so the store total follows it."""

    def _grant(user_id, amount, expiry_date, strategy=None, lot_store=None):
        with quota_unit(user_id, store=lot_store or store) as unit:
            return add_lot(unit, amount, expiry_date, strategy=strategy)

    return _grant


@pytest.fixture
def make_strategy():
    def _make(name="test-strategy", **overrides):
        data = dict(name=name, title=name.replace("-", " ").title(), amount=100.0)
        data.update(overrides)
        with get_db_session() as session:
            return create_strategy(session, StrategyCreate(**data))

    return _make


@pytest.fixture
def make_user():
    def _make(user_id, **attrs):
        return upsert_user_info(UserInfo(user_id=user_id, **attrs))

    return _make
