# experiment_service/services/storage.py
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, text, tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from experiment_service.config import settings
from experiment_service.models import (
    Experiment,
    ExperimentAssignment,
    ExperimentEvent,
    ExperimentGoal,
    ExperimentVariant,
    Flag,
    FlagEvaluation,
)

logger = logging.getLogger(__name__)

# Batch evaluation reads a narrower projection than single evaluation; the
# schedule columns are deliberately not part of it.
BATCH_FLAG_COLUMNS = (
    Flag.id,
    Flag.project_id,
    Flag.key,
    Flag.flag_type,
    Flag.is_enabled,
    Flag.default_value,
    Flag.rollout_percentage,
    Flag.targeting_rules,
)


class StorageUnavailable(Exception):
    """Storage could not be reached, failed, or did not answer in time."""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def flag_to_dict(flag: Flag) -> Dict[str, Any]:
    return {
        "id": flag.id,
        "project_id": flag.project_id,
        "key": flag.key,
        "flag_type": flag.flag_type,
        "is_enabled": flag.is_enabled,
        "default_value": flag.default_value,
        "rollout_percentage": flag.rollout_percentage,
        "targeting_rules": flag.targeting_rules or [],
        "scheduled_start": as_utc(flag.scheduled_start),
        "scheduled_end": as_utc(flag.scheduled_end),
    }


def variant_to_dict(variant: ExperimentVariant) -> Dict[str, Any]:
    return {
        "id": variant.id,
        "key": variant.variant_key,
        "weight": variant.traffic_percentage,
        "is_control": variant.is_control,
        "changes": variant.visual_changes or [],
        "page_url": variant.page_url,
    }


def goal_to_dict(goal: ExperimentGoal) -> Dict[str, Any]:
    return {
        "id": goal.id,
        "name": goal.name,
        "type": goal.goal_type,
        "selector": goal.target_selector,
        "url": goal.target_url,
    }


class Store(ABC):
    """Row-store interface consumed by the evaluation services."""

    @abstractmethod
    async def get_flag(self, project_id: Optional[str], key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_flags(self, project_id: Optional[str], keys: List[str]) -> Dict[str, Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_running_experiments(self, project_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_assignments(self, experiment_ids: List[str], visitor_id: str) -> Dict[str, str]:
        ...

    @abstractmethod
    async def upsert_assignments(self, rows: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def append_evaluation(self, entry: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def resolve_variant_ids(
        self, pairs: Iterable[Tuple[str, str]]
    ) -> Dict[Tuple[str, str], str]:
        ...

    @abstractmethod
    async def insert_events(self, rows: List[Dict[str, Any]]) -> int:
        ...

    @abstractmethod
    async def ping(self) -> None:
        ...


class SqlStore(Store):
    """
    Store backed by SQLAlchemy's async engine. Each call runs in its own
    short-lived session and is bounded by ``timeout`` seconds; driver errors
    and timeouts surface as StorageUnavailable.
    """

    def __init__(self, session_factory: async_sessionmaker, timeout: Optional[float] = None):
        self._session_factory = session_factory
        self._timeout = timeout if timeout is not None else settings.storage_timeout_seconds

    async def _run(self, op, *args):
        try:
            return await asyncio.wait_for(self._with_session(op, *args), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Storage call %s timed out after %ss", op.__name__, self._timeout)
            raise StorageUnavailable(f"{op.__name__} timed out after {self._timeout}s") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Storage call %s failed", op.__name__, exc_info=True)
            raise StorageUnavailable(f"{op.__name__} failed: {exc.__class__.__name__}") from exc

    async def _with_session(self, op, *args):
        async with self._session_factory() as session:
            return await op(session, *args)

    # ---------- flags ----------
    async def get_flag(self, project_id, key):
        return await self._run(self._get_flag, project_id, key)

    @staticmethod
    async def _get_flag(db: AsyncSession, project_id: Optional[str], key: str):
        q = select(Flag).where(Flag.key == key)
        if project_id:
            q = q.where(Flag.project_id == project_id)
        res = await db.execute(q.order_by(Flag.id).limit(1))
        flag = res.scalars().first()
        return flag_to_dict(flag) if flag else None

    async def get_flags(self, project_id, keys):
        if not keys:
            return {}
        return await self._run(self._get_flags, project_id, list(keys))

    @staticmethod
    async def _get_flags(db: AsyncSession, project_id: Optional[str], keys: List[str]):
        q = select(*BATCH_FLAG_COLUMNS).where(Flag.key.in_(keys))
        if project_id:
            q = q.where(Flag.project_id == project_id)
        res = await db.execute(q.order_by(Flag.id))
        flags: Dict[str, Dict[str, Any]] = {}
        for row in res.mappings():
            # first row per key wins when no project scopes the lookup
            flags.setdefault(row["key"], dict(row))
        return flags

    # ---------- experiments ----------
    async def list_running_experiments(self, project_id):
        return await self._run(self._list_running_experiments, project_id)

    @staticmethod
    async def _list_running_experiments(db: AsyncSession, project_id: str):
        res = await db.execute(
            select(Experiment)
            .where(Experiment.project_id == project_id, Experiment.status == "running")
            .order_by(Experiment.created_at, Experiment.id)
        )
        experiments = res.scalars().all()
        if not experiments:
            return []

        ids = [e.id for e in experiments]
        variants_res = await db.execute(
            select(ExperimentVariant)
            .where(ExperimentVariant.experiment_id.in_(ids))
            .order_by(ExperimentVariant.position, ExperimentVariant.variant_key)
        )
        goals_res = await db.execute(
            select(ExperimentGoal)
            .where(ExperimentGoal.experiment_id.in_(ids))
            .order_by(ExperimentGoal.name)
        )

        variants_by_exp: Dict[str, List[Dict[str, Any]]] = {i: [] for i in ids}
        for v in variants_res.scalars().all():
            variants_by_exp[v.experiment_id].append(variant_to_dict(v))
        goals_by_exp: Dict[str, List[Dict[str, Any]]] = {i: [] for i in ids}
        for g in goals_res.scalars().all():
            goals_by_exp[g.experiment_id].append(goal_to_dict(g))

        return [
            {
                "id": e.id,
                "key": e.key,
                "name": e.name,
                "status": e.status,
                "traffic_allocation": e.traffic_allocation,
                "variants": variants_by_exp[e.id],
                "goals": goals_by_exp[e.id],
            }
            for e in experiments
        ]

    # ---------- assignments ----------
    async def get_assignments(self, experiment_ids, visitor_id):
        if not experiment_ids:
            return {}
        return await self._run(self._get_assignments, list(experiment_ids), visitor_id)

    @staticmethod
    async def _get_assignments(db: AsyncSession, experiment_ids: List[str], visitor_id: str):
        res = await db.execute(
            select(ExperimentAssignment.experiment_id, ExperimentAssignment.variant_id).where(
                ExperimentAssignment.experiment_id.in_(experiment_ids),
                ExperimentAssignment.visitor_id == visitor_id,
            )
        )
        return {row.experiment_id: row.variant_id for row in res}

    async def upsert_assignments(self, rows):
        if not rows:
            return None
        return await self._run(self._upsert_assignments, rows)

    @staticmethod
    async def _upsert_assignments(db: AsyncSession, rows: List[Dict[str, Any]]):
        now = datetime.now(timezone.utc)
        values = [
            {
                "id": row.get("id") or str(uuid.uuid4()),
                "experiment_id": row["experiment_id"],
                "variant_id": row["variant_id"],
                "visitor_id": row["visitor_id"],
                "user_id": row.get("user_id"),
                "context": row.get("context") or {},
                "assigned_at": row.get("assigned_at") or now,
            }
            for row in rows
        ]
        dialect = db.bind.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(ExperimentAssignment).values(values)
        elif dialect == "sqlite":
            stmt = sqlite_insert(ExperimentAssignment).values(values)
        else:
            raise StorageUnavailable(f"conflict-key upsert not supported on {dialect}")
        # first writer wins; concurrent duplicates collapse onto one row
        stmt = stmt.on_conflict_do_nothing(index_elements=["experiment_id", "visitor_id"])
        await db.execute(stmt)
        await db.commit()

    # ---------- logs & events ----------
    async def append_evaluation(self, entry):
        return await self._run(self._append_evaluation, entry)

    @staticmethod
    async def _append_evaluation(db: AsyncSession, entry: Dict[str, Any]):
        db.add(
            FlagEvaluation(
                flag_id=entry["flag_id"],
                project_id=entry["project_id"],
                visitor_id=entry["visitor_id"],
                user_id=entry.get("user_id"),
                value=entry.get("value"),
                reason=entry["reason"],
                context=entry.get("context") or {},
            )
        )
        await db.commit()

    async def resolve_variant_ids(self, pairs):
        pairs = list(dict.fromkeys(pairs))
        if not pairs:
            return {}
        return await self._run(self._resolve_variant_ids, pairs)

    @staticmethod
    async def _resolve_variant_ids(db: AsyncSession, pairs: List[Tuple[str, str]]):
        res = await db.execute(
            select(
                ExperimentVariant.id,
                ExperimentVariant.experiment_id,
                ExperimentVariant.variant_key,
            ).where(
                tuple_(ExperimentVariant.experiment_id, ExperimentVariant.variant_key).in_(pairs)
            )
        )
        return {(row.experiment_id, row.variant_key): row.id for row in res}

    async def insert_events(self, rows):
        if not rows:
            return 0
        return await self._run(self._insert_events, rows)

    @staticmethod
    async def _insert_events(db: AsyncSession, rows: List[Dict[str, Any]]):
        db.add_all([ExperimentEvent(**row) for row in rows])
        await db.commit()
        return len(rows)

    async def ping(self):
        return await self._run(self._ping)

    @staticmethod
    async def _ping(db: AsyncSession):
        await db.execute(text("SELECT 1"))
