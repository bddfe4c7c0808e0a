"""SQLAlchemy-backed state store."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..errors import ConflictError, StoreUnavailableError
from ..events import EventBus
from ..models import DesiredSpec, ReplicaInstance, Revision, RolloutState
from .base import StateStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class SpecRecord(Base):
    """Desired spec record."""

    __tablename__ = "rollout_specs"

    workload = Column(String(253), primary_key=True)
    generation = Column(Integer, nullable=False, default=0)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class RolloutStateRecord(Base):
    """Versioned rollout state record."""

    __tablename__ = "rollout_states"

    workload = Column(String(253), primary_key=True)
    version = Column(Integer, nullable=False)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class RevisionRecord(Base):
    """Immutable revision record."""

    __tablename__ = "rollout_revisions"

    id = Column(String(300), primary_key=True)
    workload = Column(String(253), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    data = Column(JSON, nullable=False)


class InstanceRecord(Base):
    """Replica instance record."""

    __tablename__ = "rollout_instances"

    id = Column(String(300), primary_key=True)
    workload = Column(String(253), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SQLStateStore(StateStore):
    """
    State store persisted through SQLAlchemy.

    Works with any async driver URL (``postgresql+asyncpg://``,
    ``sqlite+aiosqlite://``). Every operation runs in its own session and
    database errors are reported as ``StoreUnavailableError`` so the
    reconciler treats them as transient.
    """

    def __init__(self, database_url: str, bus: Optional[EventBus] = None, echo: bool = False):
        """
        Initialize SQL state store.

        Args:
            database_url: SQLAlchemy async database URL
            bus: Event bus receiving change notifications
            echo: Log SQL statements
        """
        super().__init__(bus)
        url = database_url.replace("postgresql://", "postgresql+asyncpg://")
        self.engine = create_async_engine(url, echo=echo)
        self._session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_maker() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (ConflictError, ValueError):
            raise
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"State store error: {e}") from e

    async def get_spec(self, workload: str) -> Optional[DesiredSpec]:
        async with self._session() as session:
            record = await session.get(SpecRecord, workload)
            return DesiredSpec.model_validate(record.data) if record else None

    async def list_workloads(self) -> list[str]:
        async with self._session() as session:
            specs = (await session.execute(select(SpecRecord.workload))).scalars().all()
            states = (
                await session.execute(select(RolloutStateRecord.workload))
            ).scalars().all()
        return sorted(set(specs) | set(states))

    async def _save_spec(self, spec: DesiredSpec) -> None:
        async with self._session() as session:
            record = await session.get(SpecRecord, spec.workload)
            data = spec.model_dump(mode="json")
            if record:
                record.generation = spec.generation
                record.data = data
            else:
                session.add(
                    SpecRecord(workload=spec.workload, generation=spec.generation, data=data)
                )

    async def _remove_spec(self, workload: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(SpecRecord).where(SpecRecord.workload == workload)
            )
            return result.rowcount > 0

    async def get_rollout_state(self, workload: str) -> Optional[RolloutState]:
        async with self._session() as session:
            record = await session.get(RolloutStateRecord, workload)
            if not record:
                return None
            state = RolloutState.model_validate(record.data)
            state.version = record.version
            return state

    async def put_rollout_state(self, state: RolloutState) -> RolloutState:
        key = f"rollout/{state.workload}"
        stored = state.model_copy(
            deep=True,
            update={"version": state.version + 1, "updated_at": datetime.utcnow()},
        )
        data = stored.model_dump(mode="json")

        try:
            async with self._session() as session:
                if state.version == 0:
                    session.add(
                        RolloutStateRecord(
                            workload=state.workload, version=stored.version, data=data
                        )
                    )
                    await session.flush()
                else:
                    result = await session.execute(
                        update(RolloutStateRecord)
                        .where(
                            RolloutStateRecord.workload == state.workload,
                            RolloutStateRecord.version == state.version,
                        )
                        .values(version=stored.version, data=data)
                    )
                    if result.rowcount == 0:
                        current = await session.get(RolloutStateRecord, state.workload)
                        raise ConflictError(
                            key, state.version, current.version if current else 0
                        )
        except IntegrityError as e:
            raise ConflictError(key, state.version, -1) from e

        return stored

    async def delete_rollout_state(self, workload: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(RolloutStateRecord).where(RolloutStateRecord.workload == workload)
            )
            return result.rowcount > 0

    async def create_revision(self, revision: Revision) -> Revision:
        try:
            async with self._session() as session:
                session.add(
                    RevisionRecord(
                        id=revision.id,
                        workload=revision.workload,
                        sequence=revision.sequence,
                        data=revision.model_dump(mode="json"),
                    )
                )
                await session.flush()
        except IntegrityError as e:
            raise ValueError(f"Revision {revision.id} already exists") from e
        return revision

    async def list_revisions(self, workload: str) -> list[Revision]:
        async with self._session() as session:
            records = (
                await session.execute(
                    select(RevisionRecord)
                    .where(RevisionRecord.workload == workload)
                    .order_by(RevisionRecord.sequence)
                )
            ).scalars().all()
            return [Revision.model_validate(r.data) for r in records]

    async def delete_revision(self, workload: str, revision_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(RevisionRecord).where(
                    RevisionRecord.workload == workload, RevisionRecord.id == revision_id
                )
            )
            return result.rowcount > 0

    async def list_instances(self, workload: str) -> list[ReplicaInstance]:
        async with self._session() as session:
            records = (
                await session.execute(
                    select(InstanceRecord)
                    .where(InstanceRecord.workload == workload)
                    .order_by(InstanceRecord.created_at, InstanceRecord.id)
                )
            ).scalars().all()
            return [ReplicaInstance.model_validate(r.data) for r in records]

    async def _save_instance(self, instance: ReplicaInstance) -> bool:
        async with self._session() as session:
            record = await session.get(InstanceRecord, instance.id)
            data = instance.model_dump(mode="json")
            if record:
                record.data = data
                return False
            session.add(
                InstanceRecord(
                    id=instance.id,
                    workload=instance.workload,
                    data=data,
                    created_at=instance.created_at,
                )
            )
            return True

    async def _remove_instance(self, workload: str, instance_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(InstanceRecord).where(
                    InstanceRecord.workload == workload, InstanceRecord.id == instance_id
                )
            )
            return result.rowcount > 0

    async def close(self) -> None:
        """Dispose of the engine connection pool."""
        await self.engine.dispose()
        logger.info("SQL state store closed")
