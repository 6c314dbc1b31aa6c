"""Persistence and SQLModel definitions for MoneySeed.

Every write issued through :class:`Database` is a single-row operation in its
own session and is followed by a :class:`~moneyseed.realtime.ChangeEvent` on the
database's change feed.  Nothing in the services relies on multi-row
transactions.
"""
from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import DateTime, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, StatementError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .config import DATABASE_URL
from .dates import ensure_utc
from .exceptions import BackendUnavailableError, ConflictError, NotFoundError, ValidationError
from .models import (
    AllowanceTransaction,
    MissionInstance,
    MissionTemplate,
    Profile,
    RewardHistoryEntry,
    StreakSettings,
    UserStreakProgress,
)
from .ops import StructuredLogger
from .realtime import ChangeEvent, ChangeFeed, ChangeType, InMemoryChangeFeed

RowT = TypeVar("RowT", bound=SQLModel)


def new_id() -> str:
    return str(uuid4())


def storage_time(moment: Optional[dt.datetime] = None) -> dt.datetime:
    """Timezone-aware UTC timestamp as stored in the database."""

    return ensure_utc(moment) if moment is not None else dt.datetime.now(dt.timezone.utc)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class ProfileRow(SQLModel, table=True):
    __tablename__ = "profiles"

    id: str = Field(default_factory=new_id, primary_key=True)
    full_name: str
    user_type: str = "child"  # parent|child
    parent_id: Optional[str] = Field(default=None, index=True)
    family_code: Optional[str] = Field(default=None, index=True)
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class FamilyRow(SQLModel, table=True):
    __tablename__ = "families"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_code: str = Field(unique=True)
    family_name: str
    created_by: str
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class FamilyMemberRow(SQLModel, table=True):
    __tablename__ = "family_members"

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(index=True)
    user_id: str = Field(index=True)
    role: str  # father|mother|child
    nickname: Optional[str] = None
    is_active: bool = True
    joined_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class MissionTemplateRow(SQLModel, table=True):
    __tablename__ = "mission_templates"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    description: Optional[str] = None
    reward: int
    category: str
    mission_type: str = "daily"  # daily|event
    recurring_pattern: Optional[str] = None
    is_active: bool = True
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))
    updated_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class MissionInstanceRow(SQLModel, table=True):
    __tablename__ = "mission_instances"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    template_id: Optional[str] = Field(default=None, index=True)
    date: dt.date = Field(index=True)
    title: str
    description: Optional[str] = None
    reward: int
    category: str
    mission_type: str = "event"
    is_completed: bool = False
    completed_at: Optional[dt.datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    is_transferred: bool = False
    transferred_at: Optional[dt.datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class AllowanceTransactionRow(SQLModel, table=True):
    __tablename__ = "allowance_transactions"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    amount: int
    type: str  # income|expense
    category: str = Field(index=True)
    description: Optional[str] = None
    date: dt.date
    mission_id: Optional[str] = Field(default=None, unique=True)
    reward_id: Optional[str] = Field(default=None, unique=True)
    parent_note: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class UserProgressRow(SQLModel, table=True):
    __tablename__ = "user_progress"

    user_id: str = Field(primary_key=True)
    streak_count: int = 0
    last_completion_date: Optional[dt.date] = None
    streak_started_on: Optional[dt.date] = None
    best_streak: int = 0
    total_missions_completed: int = 0
    total_streak_bonus_earned: int = 0
    updated_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class RewardSettingsRow(SQLModel, table=True):
    __tablename__ = "reward_settings"

    user_id: str = Field(primary_key=True)
    streak_target_days: int = 7
    streak_bonus_amount: int = 1000
    streak_repeat: bool = True
    streak_enabled: bool = True
    updated_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


class RewardHistoryRow(SQLModel, table=True):
    __tablename__ = "reward_history"
    __table_args__ = (
        UniqueConstraint("user_id", "reward_type", "streak_started_on", "trigger_value"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    reward_type: str = "streak_bonus"
    amount: int
    trigger_value: int
    streak_started_on: Optional[dt.date] = None
    description: str = ""
    is_claimed: bool = False
    claimed_at: Optional[dt.datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    transaction_id: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=storage_time, sa_type=DateTime(timezone=True))


# ---------------------------------------------------------------------------
# Row -> record conversion
# ---------------------------------------------------------------------------
_RECORD_TYPES: Dict[type, type] = {
    ProfileRow: Profile,
    MissionTemplateRow: MissionTemplate,
    MissionInstanceRow: MissionInstance,
    AllowanceTransactionRow: AllowanceTransaction,
    UserProgressRow: UserStreakProgress,
    RewardSettingsRow: StreakSettings,
    RewardHistoryRow: RewardHistoryEntry,
}


def to_record(row: SQLModel) -> Any:
    """Translate a database row into its typed domain record."""

    try:
        record_cls = _RECORD_TYPES[type(row)]
    except KeyError as exc:
        raise TypeError(f"No record type registered for {type(row).__name__}") from exc
    values: Dict[str, Any] = {}
    for item in fields(record_cls):
        value = getattr(row, item.name)
        if isinstance(value, dt.datetime):
            value = ensure_utc(value)
        values[item.name] = value
    return record_cls(**values)


# ---------------------------------------------------------------------------
# Database client wrapper
# ---------------------------------------------------------------------------
def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            return create_engine(url, echo=False, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, echo=False, connect_args=connect_args)
    return create_engine(url, echo=False, pool_pre_ping=True)


def _primary_key(model: Type[SQLModel]):
    return list(model.__table__.primary_key.columns)[0]


class Database:
    """Narrow row CRUD contract used by every MoneySeed service."""

    def __init__(
        self,
        url: str | None = None,
        *,
        engine: Engine | None = None,
        feed: ChangeFeed | None = None,
        logger: StructuredLogger | None = None,
        create: bool = True,
    ) -> None:
        self._logger = logger or StructuredLogger()
        self.engine = engine or build_engine(url or DATABASE_URL)
        self.feed = feed or InMemoryChangeFeed(logger=self._logger)
        if create:
            self.create_all()

    def create_all(self) -> None:
        try:
            SQLModel.metadata.create_all(self.engine)
        except (OperationalError, DBAPIError) as exc:
            raise BackendUnavailableError("Could not initialise the database.") from exc

    def drop_all(self) -> None:
        SQLModel.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except IntegrityError as exc:
            raise ConflictError(str(exc.orig)) from exc
        except (OperationalError, DBAPIError) as exc:
            self._logger.log("backend_error", error=str(exc))
            raise BackendUnavailableError("The database is unavailable; please try again.") from exc
        except StatementError as exc:
            # Parameter processing failed before anything reached the database.
            raise ValidationError(f"The database rejected a value: {exc.orig}") from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except (OperationalError, DBAPIError):
            return False
        return True

    # Reads -----------------------------------------------------------------
    def get(self, model: Type[RowT], key: Any) -> Optional[RowT]:
        with self.session() as session:
            return session.get(model, key)

    def require(self, model: Type[RowT], key: Any, *, label: str | None = None) -> RowT:
        row = self.get(model, key)
        if row is None:
            raise NotFoundError(f"{label or model.__tablename__} {key!r} does not exist.")
        return row

    def find(
        self,
        model: Type[RowT],
        *criteria: Any,
        order_by: Sequence[Any] = (),
        limit: int | None = None,
    ) -> List[RowT]:
        statement = select(model)
        for criterion in criteria:
            statement = statement.where(criterion)
        if order_by:
            statement = statement.order_by(*order_by)
        if limit is not None:
            statement = statement.limit(limit)
        with self.session() as session:
            return list(session.exec(statement).all())

    def first(self, model: Type[RowT], *criteria: Any, order_by: Sequence[Any] = ()) -> Optional[RowT]:
        rows = self.find(model, *criteria, order_by=order_by, limit=1)
        return rows[0] if rows else None

    # Writes ----------------------------------------------------------------
    def insert(self, row: RowT) -> RowT:
        with self.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
        self._publish(ChangeType.INSERT, row, new=row.model_dump())
        return row

    def update(
        self,
        model: Type[RowT],
        key: Any,
        values: Mapping[str, Any],
        *,
        where: Sequence[Any] = (),
    ) -> Optional[RowT]:
        """Update one row; return ``None`` when no row matches ``key`` and ``where``."""

        statement = select(model).where(_primary_key(model) == key)
        for criterion in where:
            statement = statement.where(criterion)
        with self.session() as session:
            row = session.exec(statement).first()
            if row is None:
                return None
            old = row.model_dump()
            for name, value in values.items():
                setattr(row, name, value)
            session.add(row)
            session.commit()
            session.refresh(row)
        self._publish(ChangeType.UPDATE, row, new=row.model_dump(), old=old)
        return row

    def upsert(self, row: RowT) -> RowT:
        model = type(row)
        key = getattr(row, _primary_key(model).name)
        with self.session() as session:
            existing = session.get(model, key)
            old = existing.model_dump() if existing is not None else None
            merged = session.merge(row)
            session.commit()
            session.refresh(merged)
        change = ChangeType.INSERT if old is None else ChangeType.UPDATE
        self._publish(change, merged, new=merged.model_dump(), old=old)
        return merged

    def delete(self, model: Type[RowT], key: Any, *, where: Sequence[Any] = ()) -> bool:
        statement = select(model).where(_primary_key(model) == key)
        for criterion in where:
            statement = statement.where(criterion)
        with self.session() as session:
            row = session.exec(statement).first()
            if row is None:
                return False
            old = row.model_dump()
            session.delete(row)
            session.commit()
        self._publish(ChangeType.DELETE, row, old=old)
        return True

    def _publish(
        self,
        change: ChangeType,
        row: SQLModel,
        *,
        new: Optional[Mapping[str, Any]] = None,
        old: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.feed.publish(ChangeEvent(table=type(row).__tablename__, type=change, new=new, old=old))


__all__ = [
    "AllowanceTransactionRow",
    "Database",
    "FamilyMemberRow",
    "FamilyRow",
    "MissionInstanceRow",
    "MissionTemplateRow",
    "ProfileRow",
    "RewardHistoryRow",
    "RewardSettingsRow",
    "UserProgressRow",
    "build_engine",
    "new_id",
    "storage_time",
    "to_record",
]
