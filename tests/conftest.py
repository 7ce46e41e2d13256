"""Shared test fixtures for the outbound action queue."""
import pytest
import pytest_asyncio

from database.store_memory import InMemoryJobStore
from executors import build_registry
from executors.credentials import StaticCredentialResolver
from executors.records import InMemoryContentRecords
from executors.telemetry import MemoryTelemetrySink
from job_queue.rate_limit import RateLimitSignal
from job_queue.scanner import QueueScanner
from models.schemas import RepostSource

from tests.support import FakeMonotonic, FakePlatformClient, FrozenClock


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def records():
    recs = InMemoryContentRecords()
    recs.add_repost_source(RepostSource(
        permission_record_id="perm-1",
        media_url="https://cdn.example.com/ugc.jpg",
        username="maria",
        caption="sunset at the pier",
    ))
    return recs


@pytest.fixture
def telemetry():
    return MemoryTelemetrySink()


@pytest.fixture
def resolver():
    return StaticCredentialResolver({
        "dest-a": {"account_ref": "acct-a", "access_token": "token-a"},
        "dest-b": {"account_ref": "acct-b", "access_token": "token-b"},
    })


@pytest.fixture
def rate_limits(monotonic):
    return RateLimitSignal(default_cooldown=3600, clock=monotonic)


@pytest.fixture
def registry(platform, store, records):
    return build_registry(platform, store, records)


@pytest.fixture
def scanner(store, registry, resolver, rate_limits, telemetry, clock):
    return QueueScanner(
        store=store,
        registry=registry,
        resolve_credentials=resolver,
        rate_limits=rate_limits,
        telemetry=telemetry,
        batch_size=20,
        max_retries=5,
        clock=clock,
    )


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SqlJobStore against a throwaway SQLite file."""
    from database.session import close_db, use_database
    from database.store import SqlJobStore

    await use_database(f"sqlite:///{tmp_path / 'queue_test.db'}")
    yield SqlJobStore()
    await close_db()
