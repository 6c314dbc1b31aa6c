from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from moneyseed.dates import KST, to_kst_date
from moneyseed.ops import StructuredLogger
from moneyseed.persistence import Database
from moneyseed.service import MoneySeed


class FakeClock:
    """Controllable UTC clock; defaults to noon KST on Sunday 2024-03-10."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 10, 12, 0, tzinfo=KST).astimezone(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, days: int = 0, hours: int = 0) -> None:
        self.now += timedelta(days=days, hours=hours)

    def set_day(self, day: date, hour: int = 12) -> None:
        self.now = datetime(day.year, day.month, day.day, hour, tzinfo=KST).astimezone(timezone.utc)

    def today(self) -> date:
        return to_kst_date(self.now)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger()


@pytest.fixture
def database(logger: StructuredLogger) -> Database:
    db = Database("sqlite://", logger=logger)
    yield db
    db.engine.dispose()


@pytest.fixture
def seed(database: Database, clock: FakeClock, logger: StructuredLogger) -> MoneySeed:
    return MoneySeed(database, clock=clock, logger=logger, auto_claim=True)


@pytest.fixture
def family(seed: MoneySeed) -> SimpleNamespace:
    """One legacy family (a parent with two children) and an unrelated household."""

    families = seed.families
    families.create_profile("Mina", "parent", user_id="parent-1", family_code="FAM001")
    families.create_profile("Ava", "child", user_id="child-1", parent_id="parent-1")
    families.create_profile("Ben", "child", user_id="child-2", family_code="FAM001")
    families.create_profile("Owen", "parent", user_id="parent-2")
    families.create_profile("Zoe", "child", user_id="child-9", parent_id="parent-2")
    return SimpleNamespace(parent="parent-1", ava="child-1", ben="child-2", other_parent="parent-2", outsider="child-9")


def complete_on(seed: MoneySeed, clock: FakeClock, mission_id: str, day: date) -> None:
    """Complete a mission as if it happened on ``day`` and restore the clock."""

    saved = clock.now
    clock.set_day(day)
    try:
        seed.missions.complete(mission_id)
    finally:
        clock.now = saved
