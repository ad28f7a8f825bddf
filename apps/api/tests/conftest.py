from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.generation_queue import drain_inline_tasks
from services.session_token import create_session_token


class FakeQueueJob:
    def __init__(self, job_id: str):
        self.id = job_id
        self.origin = "generation_jobs"


def enqueue_noop(job_id: str):
    return FakeQueueJob(f"generation:{job_id}")


def auth_header(account_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(account_id)['token']}"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed SQLite store wired into every module that opens its own session."""
    db_path = tmp_path / "muse.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"timeout": 30},
    )
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with (
        patch("services.jobs.async_session_maker", maker),
        patch("services.generation.async_session_maker", maker),
        patch("services.generation.enqueue_generation_job", enqueue_noop),
    ):
        yield maker
        await drain_inline_tasks()

    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)
