"""Tests for engine creation and the session scope."""
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from impact_settlement.core.config_store import ConfigStore
from impact_settlement.database import (
    GlobalConfig,
    close_db,
    create_engine_from_settings,
    get_engine,
    init_db,
    session_scope,
)


@pytest_asyncio.fixture
async def database(test_settings) -> AsyncGenerator[Any, Any]:
    await init_db(test_settings)
    yield test_settings
    await close_db()


class TestEngine:

    @pytest.mark.unit
    def test_sqlite_shares_one_connection(self, test_settings) -> None:
        engine = create_engine_from_settings(test_settings)
        assert isinstance(engine.pool, StaticPool)

    @pytest.mark.unit
    def test_server_database_uses_configured_pool(self, test_settings) -> None:
        settings = test_settings.model_copy(
            update={
                "database_url": "postgresql+asyncpg://user:pw@localhost/impact",
                "database_pool_size": 7,
            }
        )
        engine = create_engine_from_settings(settings)
        assert engine.pool.size() == 7

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_engine_is_reused_until_closed(self, database) -> None:
        first = get_engine(database)
        assert get_engine() is first

        await close_db()
        assert get_engine(database) is not first


class TestSessionScope:
    """Unit-of-work sessions for callers outside the engine."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_committed_work_is_visible_to_next_scope(self, database) -> None:
        store = ConfigStore()
        async with session_scope(database) as db:
            inserted = await store.ensure_defaults(db)
        assert inserted

        async with session_scope(database) as db:
            snapshot = await store.snapshot(db)
        assert snapshot.csr_price > 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, database) -> None:
        with pytest.raises(RuntimeError):
            async with session_scope(database) as db:
                db.add(GlobalConfig(key="BANNER_TEXT", value="hello"))
                await db.flush()
                raise RuntimeError("request failed")

        async with session_scope(database) as db:
            assert await db.get(GlobalConfig, "BANNER_TEXT") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_uncommitted_work_is_discarded(self, database) -> None:
        async with session_scope(database) as db:
            db.add(GlobalConfig(key="BANNER_TEXT", value="hello"))
            await db.flush()

        async with session_scope(database) as db:
            assert await db.get(GlobalConfig, "BANNER_TEXT") is None
