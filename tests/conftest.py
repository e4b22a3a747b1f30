"""Shared pytest fixtures for the message gateway."""
import pytest
import pytest_asyncio

from config.settings import (
    GatewayConfig, RateLimitConfig, ReceiptConfig, Settings, TierLimits, WorkerConfig,
)
from support import SECRET, ChatDbFixture, FakeClock, FakeSender, RecordingReporter


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        gateway=GatewayConfig(secret=SECRET, web_base_url="http://web.test"),
        worker=WorkerConfig(poll_interval_ms=10, batch_size=10, max_jobs_per_cycle=1),
        rate_limit=RateLimitConfig(free=TierLimits(0, 2), paid=TierLimits(0, 30)),
        receipts=ReceiptConfig(enabled=False, chat_db_path=str(tmp_path / "missing-chat.db")),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def chat_db_file(tmp_path) -> ChatDbFixture:
    return ChatDbFixture(str(tmp_path / "chat.db"))


# ──────────────────────────────────────────────────────────────
#  Stores
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def memory_store():
    from database.store_memory import InMemoryJobStore
    return InMemoryJobStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    from database.session import Database
    from database.store import SqlJobStore
    db = Database(f"sqlite:///{tmp_path / 'gateway.db'}")
    await db.create_all()
    store = SqlJobStore(db)
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Store-contract tests run against both backends."""
    if request.param == "memory":
        from database.store_memory import InMemoryJobStore
        yield InMemoryJobStore()
        return
    from database.session import Database
    from database.store import SqlJobStore
    db = Database(f"sqlite:///{tmp_path / 'contract.db'}")
    await db.create_all()
    sql = SqlJobStore(db)
    yield sql
    await sql.close()
