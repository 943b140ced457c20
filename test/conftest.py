import os

# Must be set before anything under `app` is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401
from app.core.db import Base, get_async_db
from app.ledger.models import LedgerEntry
from app.ledger.schemas import AccountCode
from app.ledger.services import LedgerService
from app.students.models import ClassGroup, Enrollment, Family, Student
from app.utils.logger import get_logger

logger = get_logger(__name__)

SEPT = "2025-09"
OCT = "2025-10"
AUG = "2025-08"
MID_SEPT = datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


class Roster:
    """Creates roster rows, each committed in its own session"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _save(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
            return obj.id

    async def family(self, name="Tran", sibling_percent_override=None) -> int:
        return await self._save(Family(name=name, sibling_percent_override=sibling_percent_override))

    async def student(self, full_name="Alice Tran", family_id=None, is_active=True) -> int:
        return await self._save(Student(full_name=full_name, family_id=family_id, is_active=is_active))

    async def klass(self, name="Math", session_rate=100_000, schedule_days=(1, 3), is_active=True) -> int:
        return await self._save(
            ClassGroup(name=name, session_rate=session_rate, schedule_days=list(schedule_days), is_active=is_active)
        )

    async def enroll(self, student_id, class_id, start_date=date(2025, 9, 1), end_date=None, **extra) -> int:
        return await self._save(
            Enrollment(student_id=student_id, class_id=class_id, start_date=start_date, end_date=end_date, **extra)
        )

    async def enrolled_student(self, full_name="Alice Tran", family_id=None, **enrollment) -> int:
        """A student in a Mon/Wed class at 100,000 per session (9 sessions in Sept 2025)"""
        student_id = await self.student(full_name, family_id=family_id)
        class_id = await self.klass()
        await self.enroll(student_id, class_id, **enrollment)
        return student_id


@pytest.fixture
def roster(session_factory):
    return Roster(session_factory)


async def balance(db, student_id: int, code: AccountCode, through_month=None) -> int:
    return await LedgerService(db).account_balance(student_id, code, through_month)


async def ledger_totals(db):
    """(sum of debits, sum of credits) over the whole ledger"""
    result = await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.debit), 0), func.coalesce(func.sum(LedgerEntry.credit), 0))
    )
    return tuple(int(v) for v in result.one())


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client against the app with its DB dependency pointed at the test database"""
    from app.main import tuition_app

    async def override_get_async_db():
        async with session_factory() as session:
            yield session

    tuition_app.dependency_overrides[get_async_db] = override_get_async_db
    async with AsyncClient(transport=ASGITransport(app=tuition_app), base_url="http://test") as http:
        yield http
    tuition_app.dependency_overrides.clear()


@pytest.fixture
def run(session_factory):
    """Run `fn(db)` in its own session, the way each request gets one"""
    async def _run(fn):
        async with session_factory() as db:
            return await fn(db)
    return _run
