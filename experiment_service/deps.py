# deps.py
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from experiment_service.config import settings
from experiment_service.services.storage import SqlStore, Store

# -------------------------
# Database setup
# -------------------------
engine = create_async_engine(settings.db_dsn, future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


# -------------------------
# Storage adapter
# -------------------------
_store = SqlStore(SessionLocal)


def get_store() -> Store:
    """Evaluation routes depend on the Store interface, not on a session."""
    return _store
