"""Relational datastore for users, projects, sessions and their action history."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from ..errors import InfrastructureError
from ..models import (
    ActionStatus,
    ProjectRecord,
    ProjectSummary,
    SessionActionRecord,
    SessionRecord,
    SessionStatus,
    UserRecord,
)

LOGGER = logging.getLogger(__name__)

_UNSET = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps, normalised to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[no-untyped-def]
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):  # type: ignore[no-untyped-def]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())


class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        index=True,
    )
    status: Mapped[str] = mapped_column(String(16), default=SessionStatus.CREATED.value)
    start_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    container_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime())


class SessionActionRow(Base):
    __tablename__ = "session_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"),
        index=True,
    )
    action_type: Mapped[str] = mapped_column(String(32))
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16))
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())


class Datastore:
    """Async access layer over the relational schema.

    Every public method runs in its own transaction. Driver failures are
    re-raised as :class:`InfrastructureError` so callers never see SQLAlchemy
    exceptions.
    """

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = create_async_engine(url, echo=echo)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        self._clock = clock

    async def create_all(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise InfrastructureError(f"Could not create schema: {exc}") from exc

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            LOGGER.exception("Datastore operation failed")
            raise InfrastructureError(str(exc)) from exc

    # Users -------------------------------------------------------------------

    async def get_or_create_user(self, user_id: str, email: Optional[str] = None) -> UserRecord:
        async with self._transaction() as db:
            row = await db.get(UserRow, user_id)
            if row is None:
                row = UserRow(id=user_id, email=email, created_at=self._clock())
                db.add(row)
                LOGGER.info("Created user record for %s", email or user_id)
            return UserRecord.model_validate(row)

    # Projects ----------------------------------------------------------------

    async def create_project(self, user_id: str, name: str) -> ProjectRecord:
        now = self._clock()
        async with self._transaction() as db:
            row = ProjectRow(
                id=str(uuid.uuid4()),
                name=name,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            return ProjectRecord.model_validate(row)

    async def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        async with self._transaction() as db:
            row = await db.get(ProjectRow, project_id)
            return ProjectRecord.model_validate(row) if row else None

    async def list_projects(self, user_id: str) -> list[ProjectSummary]:
        counts = (
            select(SessionRow.project_id, func.count(SessionRow.id).label("session_count"))
            .group_by(SessionRow.project_id)
            .subquery()
        )
        stmt = (
            select(ProjectRow, func.coalesce(counts.c.session_count, 0))
            .outerjoin(counts, counts.c.project_id == ProjectRow.id)
            .where(ProjectRow.user_id == user_id)
            .order_by(ProjectRow.created_at.desc())
        )
        async with self._transaction() as db:
            result = await db.execute(stmt)
            return [
                ProjectSummary(
                    **ProjectRecord.model_validate(row).model_dump(),
                    session_count=count,
                )
                for row, count in result.all()
            ]

    async def list_project_session_ids(self, project_id: str) -> list[str]:
        async with self._transaction() as db:
            result = await db.execute(
                select(SessionRow.id).where(SessionRow.project_id == project_id)
            )
            return list(result.scalars().all())

    async def delete_project(self, project_id: str) -> bool:
        async with self._transaction() as db:
            session_ids = select(SessionRow.id).where(SessionRow.project_id == project_id)
            await db.execute(
                delete(SessionActionRow).where(SessionActionRow.session_id.in_(session_ids))
            )
            await db.execute(delete(SessionRow).where(SessionRow.project_id == project_id))
            result = await db.execute(delete(ProjectRow).where(ProjectRow.id == project_id))
            return result.rowcount > 0

    # Sessions ----------------------------------------------------------------

    async def create_session(
        self,
        project_id: str,
        start_url: Optional[str],
        *,
        session_id: Optional[str] = None,
    ) -> SessionRecord:
        now = self._clock()
        async with self._transaction() as db:
            row = SessionRow(
                id=session_id or str(uuid.uuid4()),
                project_id=project_id,
                status=SessionStatus.CREATED.value,
                start_url=start_url,
                created_at=now,
                last_used_at=now,
            )
            db.add(row)
            return SessionRecord.model_validate(row)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._transaction() as db:
            row = await db.get(SessionRow, session_id)
            return SessionRecord.model_validate(row) if row else None

    async def get_session_with_owner(
        self,
        session_id: str,
    ) -> Optional[tuple[SessionRecord, str]]:
        """Return the session joined with the user id owning its project."""

        stmt = (
            select(SessionRow, ProjectRow.user_id)
            .join(ProjectRow, ProjectRow.id == SessionRow.project_id)
            .where(SessionRow.id == session_id)
        )
        async with self._transaction() as db:
            result = await db.execute(stmt)
            found = result.first()
            if found is None:
                return None
            row, owner_id = found
            return SessionRecord.model_validate(row), owner_id

    async def list_sessions(
        self,
        user_id: str,
        *,
        project_id: Optional[str] = None,
    ) -> list[SessionRecord]:
        stmt = (
            select(SessionRow)
            .join(ProjectRow, ProjectRow.id == SessionRow.project_id)
            .where(ProjectRow.user_id == user_id)
            .order_by(SessionRow.created_at.desc())
        )
        if project_id is not None:
            stmt = stmt.where(SessionRow.project_id == project_id)
        async with self._transaction() as db:
            result = await db.execute(stmt)
            return [SessionRecord.model_validate(row) for row in result.scalars().all()]

    async def compare_and_set_status(
        self,
        session_id: str,
        *,
        expected: SessionStatus,
        new: SessionStatus,
        container_id: object = _UNSET,
    ) -> bool:
        """Move the session to ``new`` only if it is still in ``expected``.

        Also refreshes ``last_used_at``. Returns False when another writer got
        there first or the session no longer exists.
        """

        values: dict[str, object] = {"status": new.value, "last_used_at": self._clock()}
        if container_id is not _UNSET:
            values["container_id"] = container_id
        stmt = (
            update(SessionRow)
            .where(SessionRow.id == session_id, SessionRow.status == expected.value)
            .values(**values)
        )
        async with self._transaction() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction() as db:
            await db.execute(
                delete(SessionActionRow).where(SessionActionRow.session_id == session_id)
            )
            result = await db.execute(delete(SessionRow).where(SessionRow.id == session_id))
            return result.rowcount > 0

    # Actions -----------------------------------------------------------------

    async def record_action(
        self,
        session_id: str,
        *,
        action_type: str,
        details: Optional[str],
        status: ActionStatus,
        message: Optional[str],
    ) -> SessionActionRecord:
        """Append an audit entry and refresh the session's activity timestamp."""

        now = self._clock()
        async with self._transaction() as db:
            row = SessionActionRow(
                id=str(uuid.uuid4()),
                session_id=session_id,
                action_type=action_type,
                details=details,
                status=status.value,
                message=message,
                created_at=now,
            )
            db.add(row)
            await db.execute(
                update(SessionRow).where(SessionRow.id == session_id).values(last_used_at=now)
            )
            return SessionActionRecord.model_validate(row)

    async def list_actions(self, session_id: str) -> list[SessionActionRecord]:
        stmt = (
            select(SessionActionRow)
            .where(SessionActionRow.session_id == session_id)
            .order_by(SessionActionRow.created_at.asc())
        )
        async with self._transaction() as db:
            result = await db.execute(stmt)
            return [SessionActionRecord.model_validate(row) for row in result.scalars().all()]
