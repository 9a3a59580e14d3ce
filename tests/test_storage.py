"""
Tests for the SQLAlchemy key-value backend.

Tests cover:
- get / put / overwrite / delete
- Absolute and relative expiry
- Prefix listing and purge of expired rows
- Insert-if-absent, including concurrent callers
- Health check against the schema
- The chat store running on the SQL backend
"""

import asyncio

import pytest

from whatsapp_ai.chat_store import ChatStore
from whatsapp_ai.errors import StorageError
from whatsapp_ai.storage import (
    Base,
    MemoryKeyValueBackend,
    SQLKeyValueBackend,
    SessionLocal,
    check_db_health,
    engine,
    init_db,
)


class FakeTime:
    def __init__(self, now: float = 1_800_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def backend(tables, fake_time):
    return SQLKeyValueBackend(SessionLocal, clock=fake_time)


class TestSQLKeyValueBackend:

    @pytest.mark.asyncio
    async def test_put_get_roundtrip(self, backend):
        await backend.put("metadata:+1", '{"a": 1}')
        assert await backend.get("metadata:+1") == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_missing_key(self, backend):
        assert await backend.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, backend):
        await backend.put("k", "v1")
        await backend.put("k", "v2")
        assert await backend.get("k") == "v2"
        assert await backend.list_keys() == ["k"]

    @pytest.mark.asyncio
    async def test_delete(self, backend):
        await backend.put("k", "v")
        await backend.delete("k")
        await backend.delete("never-existed")
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_expire_after_seconds(self, backend, fake_time):
        await backend.put("k", "v", expire_after_seconds=60)

        fake_time.now += 59
        assert await backend.get("k") == "v"

        fake_time.now += 1
        assert await backend.get("k") is None
        assert await backend.list_keys() == []

    @pytest.mark.asyncio
    async def test_expire_at(self, backend, fake_time):
        await backend.put("k", "v", expire_at=int(fake_time.now) + 10)
        fake_time.now += 11
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_rewrite_refreshes_expiry(self, backend, fake_time):
        await backend.put("k", "v", expire_after_seconds=60)
        fake_time.now += 50
        await backend.put("k", "v", expire_after_seconds=60)
        fake_time.now += 50
        assert await backend.get("k") == "v"

    @pytest.mark.asyncio
    async def test_list_keys_by_prefix(self, backend):
        for key in ("chunk:+1:0", "chunk:+1:1", "chunk:+2:0", "metadata:+1", "chunk_%:x"):
            await backend.put(key, "v")

        assert await backend.list_keys("chunk:+1:") == ["chunk:+1:0", "chunk:+1:1"]
        assert await backend.list_keys("metadata:") == ["metadata:+1"]
        # LIKE wildcards in the prefix are matched literally
        assert await backend.list_keys("chunk_%") == ["chunk_%:x"]

    @pytest.mark.asyncio
    async def test_add_only_if_absent(self, backend):
        assert await backend.add("inbound:wamid.1", "1", expire_after_seconds=60) is True
        assert await backend.add("inbound:wamid.1", "2", expire_after_seconds=60) is False
        assert await backend.get("inbound:wamid.1") == "1"

    @pytest.mark.asyncio
    async def test_add_over_expired_entry(self, backend, fake_time):
        await backend.add("inbound:wamid.1", "old", expire_after_seconds=60)
        fake_time.now += 61

        assert await backend.add("inbound:wamid.1", "new", expire_after_seconds=60) is True
        assert await backend.get("inbound:wamid.1") == "new"

    @pytest.mark.asyncio
    async def test_concurrent_add_has_one_winner(self, backend):
        results = await asyncio.gather(*(backend.add("inbound:wamid.race", "1") for _ in range(8)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_purge_expired(self, backend, fake_time):
        await backend.put("short", "v", expire_after_seconds=10)
        await backend.put("long", "v", expire_after_seconds=1000)
        await backend.put("forever", "v")
        fake_time.now += 100

        assert await backend.purge_expired() == 1
        assert await backend.list_keys() == ["forever", "long"]

    @pytest.mark.asyncio
    async def test_missing_table_raises_storage_error(self, fake_time):
        Base.metadata.drop_all(bind=engine)
        backend = SQLKeyValueBackend(SessionLocal, clock=fake_time)

        with pytest.raises(StorageError):
            await backend.get("k")
        with pytest.raises(StorageError):
            await backend.put("k", "v")


class TestMemoryKeyValueBackend:

    @pytest.mark.asyncio
    async def test_add_only_if_absent(self, fake_time):
        backend = MemoryKeyValueBackend(clock=fake_time)

        assert await backend.add("inbound:wamid.1", "1", expire_after_seconds=60) is True
        assert await backend.add("inbound:wamid.1", "2") is False

        fake_time.now += 60
        assert await backend.add("inbound:wamid.1", "3") is True
        assert await backend.get("inbound:wamid.1") == "3"

    @pytest.mark.asyncio
    async def test_concurrent_add_has_one_winner(self):
        backend = MemoryKeyValueBackend()
        results = await asyncio.gather(*(backend.add("inbound:wamid.race", "1") for _ in range(8)))
        assert results.count(True) == 1


class TestHealth:

    def test_healthy_after_init(self, tables):
        init_db()
        assert check_db_health() is True

    def test_unhealthy_without_schema(self):
        Base.metadata.drop_all(bind=engine)
        assert check_db_health() is False


class TestChatStoreOnSQL:

    @pytest.mark.asyncio
    async def test_store_and_read_back(self, tables):
        store = ChatStore(SQLKeyValueBackend())

        for i in range(55):
            await store.store_message("+14155550100", f"m{i}", i % 2 == 0)

        metadata = await store.get_metadata("+14155550100")
        assert metadata.total_messages == 55
        assert metadata.total_chunks == 2
        messages = await store.get_messages_for_ai("+14155550100", 6)
        assert [m.content for m in messages] == [f"m{i}" for i in range(49, 55)]
        assert await store.delete_all_messages("+14155550100") is True
        assert await store.list_phone_numbers() == []
