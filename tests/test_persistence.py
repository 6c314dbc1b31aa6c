from datetime import timezone

import pytest

from moneyseed.exceptions import ValidationError
from moneyseed.persistence import MissionInstanceRow, ProfileRow, RewardHistoryRow, storage_time


@pytest.mark.parametrize(
    "column",
    [
        ProfileRow.__table__.c.created_at,
        MissionInstanceRow.__table__.c.completed_at,
        MissionInstanceRow.__table__.c.transferred_at,
        RewardHistoryRow.__table__.c.claimed_at,
    ],
)
def test_timestamp_columns_are_timezone_aware(column) -> None:
    assert column.type.timezone


def test_storage_time_keeps_utc(clock) -> None:
    stamp = storage_time(clock())
    assert stamp.tzinfo is timezone.utc
    assert stamp == clock.now
    assert storage_time().tzinfo is timezone.utc


def test_timestamps_round_trip_as_utc(seed, family, clock) -> None:
    mission = seed.missions.create_instance(family.ava, clock.today(), "Fold laundry", 600, "chores")
    seed.missions.complete(mission.id)
    seed.settlement.process_single_reward(mission.id, parent_id=family.parent)

    paid = seed.missions.get(mission.id)
    assert paid.completed_at == clock.now
    assert paid.transferred_at.tzinfo is timezone.utc
    assert paid.created_at.tzinfo is timezone.utc


def test_rejected_bind_values_surface_as_validation_errors(database) -> None:
    with pytest.raises(ValidationError):
        database.insert(ProfileRow(full_name="Ghost", created_at="yesterday"))
    assert database.find(ProfileRow) == []
