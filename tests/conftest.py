import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")

import uuid
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from lesson_ledger.auth.security import create_access_token
from lesson_ledger.core.config import settings
from lesson_ledger.core.models import Lesson, PackagePurchase, School, Student
from lesson_ledger.db.session import Base, get_db
from lesson_ledger.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEACHER_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def client(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app; each request gets its own session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def school(db_session: AsyncSession) -> School:
    school = School(name="Lingua School")
    db_session.add(school)
    await db_session.commit()
    return school


@pytest.fixture()
async def other_school(db_session: AsyncSession) -> School:
    school = School(name="Other School")
    db_session.add(school)
    await db_session.commit()
    return school


@pytest.fixture()
async def student(db_session: AsyncSession, school: School) -> Student:
    student = Student(school_id=school.id, name="Anna Nowak", email="anna@example.com")
    db_session.add(student)
    await db_session.commit()
    return student


@pytest.fixture()
async def lesson(db_session: AsyncSession, school: School, student: Student) -> Lesson:
    lesson = Lesson(
        school_id=school.id,
        teacher_id=TEACHER_ID,
        student_id=student.id,
        title="English B1",
        date=date(2026, 10, 12),
    )
    db_session.add(lesson)
    await db_session.commit()
    return lesson


@pytest.fixture()
def make_package(db_session: AsyncSession, school: School, student: Student) -> Callable:
    async def _make(
        lessons_total: int = 10,
        lessons_used: int = 0,
        purchase_date: date = date(2026, 9, 1),
        status: str = "active",
        expires_at: Optional[date] = None,
        total_amount: Decimal = Decimal("500.00"),
        price_per_lesson: Optional[Decimal] = None,
        student_id: Optional[uuid.UUID] = None,
        **extra,
    ) -> PackagePurchase:
        pkg = PackagePurchase(
            school_id=school.id,
            student_id=student_id or student.id,
            lessons_total=lessons_total,
            lessons_used=lessons_used,
            purchase_date=purchase_date,
            status=status,
            expires_at=expires_at,
            total_amount=total_amount,
            price_per_lesson=price_per_lesson,
            **extra,
        )
        db_session.add(pkg)
        await db_session.commit()
        return pkg

    return _make


@pytest.fixture()
def make_headers(school: School) -> Callable[..., Dict[str, str]]:
    def _make(
        role: str = "TEACHER",
        user_id: uuid.UUID = TEACHER_ID,
        school_id: Optional[uuid.UUID] = None,
        service_key: bool = True,
        expires_minutes: Optional[int] = None,
    ) -> Dict[str, str]:
        token = create_access_token(
            subject={
                "sub": str(user_id),
                "school_id": str(school_id or school.id),
                "role": role,
            },
            expires_minutes=expires_minutes,
        )
        headers = {"Authorization": f"Bearer {token}"}
        if service_key:
            headers["apikey"] = settings.service_api_key
        return headers

    return _make
