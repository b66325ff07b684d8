# conftest.py
import sys
import os
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from experiment_service.deps import get_store
from experiment_service.main import app
from experiment_service.models import Base, Experiment, ExperimentGoal, ExperimentVariant, Flag
from experiment_service.services.cache import flag_cache
from experiment_service.services.storage import SqlStore, Store, StorageUnavailable

PROJECT_ID = "proj-1"


# -----------------------------
# Fresh SQLite database per test
# -----------------------------
@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'experiments.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture(scope="function")
def store(session_factory):
    return SqlStore(session_factory, timeout=10)


@pytest.fixture(autouse=True)
def clear_flag_cache():
    flag_cache.store.clear()
    yield
    flag_cache.store.clear()


# -----------------------------
# Row factories
# -----------------------------
@pytest.fixture
def add_flag(session_factory):
    async def _add(**overrides) -> Flag:
        values = {
            "project_id": PROJECT_ID,
            "key": "new-ui",
            "flag_type": "boolean",
            "is_enabled": True,
            "default_value": "true",
            "rollout_percentage": 100,
            "targeting_rules": [],
        }
        values.update(overrides)
        async with session_factory() as db:
            flag = Flag(**values)
            db.add(flag)
            await db.commit()
            await db.refresh(flag)
            return flag
    return _add


@pytest.fixture
def add_experiment(session_factory):
    async def _add(
        experiment_id: str = "exp-checkout",
        *,
        project_id: str = PROJECT_ID,
        status: str = "running",
        traffic_allocation: int = 100,
        variants=None,
        goals=None,
    ) -> Experiment:
        if variants is None:
            variants = [
                {"variant_key": "control", "traffic_percentage": 50, "is_control": True},
                {"variant_key": "treatment", "traffic_percentage": 50},
            ]
        async with session_factory() as db:
            experiment = Experiment(
                id=experiment_id,
                project_id=project_id,
                key=f"{experiment_id}-key",
                name=f"Experiment {experiment_id}",
                status=status,
                traffic_allocation=traffic_allocation,
            )
            for position, variant in enumerate(variants):
                experiment.variants.append(ExperimentVariant(position=position, **variant))
            for goal in goals or []:
                experiment.goals.append(ExperimentGoal(**goal))
            db.add(experiment)
            await db.commit()
            return experiment
    return _add


# -----------------------------
# A store whose backend is down
# -----------------------------
class UnavailableStore(Store):
    def __init__(self):
        self.calls = []

    async def _fail(self, name):
        self.calls.append(name)
        raise StorageUnavailable(f"{name} failed")

    async def get_flag(self, project_id, key):
        return await self._fail("get_flag")

    async def get_flags(self, project_id, keys):
        return await self._fail("get_flags")

    async def list_running_experiments(self, project_id):
        return await self._fail("list_running_experiments")

    async def get_assignments(self, experiment_ids, visitor_id):
        return await self._fail("get_assignments")

    async def upsert_assignments(self, rows):
        return await self._fail("upsert_assignments")

    async def append_evaluation(self, entry):
        return await self._fail("append_evaluation")

    async def resolve_variant_ids(self, pairs):
        return await self._fail("resolve_variant_ids")

    async def insert_events(self, rows):
        return await self._fail("insert_events")

    async def ping(self):
        return await self._fail("ping")


@pytest.fixture
def unavailable_store():
    return UnavailableStore()


# -----------------------------
# HTTP clients bound to a store
# -----------------------------
@pytest_asyncio.fixture(scope="function")
async def client(store):
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def unavailable_client(unavailable_store):
    app.dependency_overrides[get_store] = lambda: unavailable_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
