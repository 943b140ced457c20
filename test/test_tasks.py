import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.db import Base
from app.ledger import tasks as ledger_tasks
from app.tuition import tasks as tuition_tasks


@pytest.fixture
def pooled_engine(tmp_path, monkeypatch):
    """A pooled engine like the worker's, shared by both task modules"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}")

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(create_tables())
    sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    for module in (tuition_tasks, ledger_tasks):
        monkeypatch.setattr(module, "async_engine", engine)
        monkeypatch.setattr(module, "AsyncSessionLocal", sessions)
    yield engine
    asyncio.run(engine.dispose())


def test_drain_task_leaves_no_pooled_connection_behind(pooled_engine):
    for _ in range(2):
        result = tuition_tasks.drain_recompute_requests.apply().get()
        assert (result["status"], result["processed"]) == ("success", 0)
        assert pooled_engine.pool.checkedin() == 0


def test_integrity_task_runs_in_consecutive_event_loops(pooled_engine):
    for _ in range(2):
        result = ledger_tasks.check_ledger_integrity.apply().get()
        assert (result["status"], result["imbalanced_tx_ids"]) == ("ok", [])
        assert pooled_engine.pool.checkedin() == 0
