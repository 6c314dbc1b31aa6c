from datetime import date

import pytest

from moneyseed.dates import add_days
from moneyseed.exceptions import BackendUnavailableError, BatchInterruptedError, ImmutableAfterTransferError
from moneyseed.models import MISSION_REWARD_CATEGORY, Priority, TransactionType

from conftest import complete_on


def _completed(seed, clock, user_id, title, reward, day):
    mission = seed.missions.create_instance(user_id, day, title, reward, "chores")
    complete_on(seed, clock, mission.id, day)
    return mission


def test_single_reward_records_income_and_locks_mission(seed, family, clock) -> None:
    mission = seed.missions.create_instance(family.ava, clock.today(), "Tidy room", 1000, "chores")
    seed.missions.complete(mission.id)

    result = seed.settlement.process_single_reward(mission.id, parent_note="Great job", parent_id=family.parent)

    assert result.success
    assert (result.processed_count, result.total_amount) == (1, 1000)
    assert result.processed_ids == [mission.id]
    [transaction] = seed.ledger.list_transactions(family.ava)
    assert transaction.type is TransactionType.INCOME
    assert transaction.category == MISSION_REWARD_CATEGORY
    assert transaction.amount == 1000
    assert transaction.mission_id == mission.id
    assert transaction.parent_note == "Great job"
    assert seed.missions.get(mission.id).is_transferred
    assert seed.ledger.get_balance(family.ava) == 1000


def test_settling_twice_never_pays_twice(seed, family, clock) -> None:
    mission = _completed(seed, clock, family.ava, "Dishes", 800, clock.today())

    seed.settlement.process_single_reward(mission.id, parent_id=family.parent)
    again = seed.settlement.process_single_reward(mission.id, parent_id=family.parent)

    assert not again.success
    assert again.processed_count == 0
    assert again.skipped == {mission.id: "already_transferred"}
    assert seed.ledger.get_balance(family.ava) == 800


def test_batch_skips_invalid_missions_and_continues(seed, family, clock) -> None:
    today = clock.today()
    paid_elsewhere = _completed(seed, clock, family.ava, "Vacuum", 1000, today)
    valid = _completed(seed, clock, family.ben, "Walk dog", 700, today)
    unfinished = seed.missions.create_instance(family.ava, today, "Homework", 500, "study")
    stranger = _completed(seed, clock, family.outsider, "Not ours", 900, today)

    # another session settles one mission first
    seed.settlement.process_single_reward(paid_elsewhere.id)

    result = seed.settlement.process_batch_reward(
        [paid_elsewhere.id, valid.id, valid.id, unfinished.id, stranger.id, "missing"],
        parent_id=family.parent,
    )

    assert result.processed_ids == [valid.id]
    assert (result.processed_count, result.total_amount) == (1, 700)
    assert result.skipped == {
        paid_elsewhere.id: "already_transferred",
        unfinished.id: "not_completed",
        stranger.id: "not_in_family",
        "missing": "not_found",
    }
    assert seed.ledger.get_balance(family.ben) == 700
    assert seed.ledger.get_balance(family.ava) == 1000
    assert not seed.missions.get(stranger.id).is_transferred
    assert len(seed.logger.events("reward_skipped")) == 4


def test_payout_left_by_an_interrupted_batch_is_repaired_not_repeated(seed, family, clock) -> None:
    mission = _completed(seed, clock, family.ava, "Clean garage", 3000, clock.today())
    # the transaction was written but the mission flag never flipped
    seed.ledger.record_income(family.ava, 3000, MISSION_REWARD_CATEGORY, mission_id=mission.id)

    result = seed.settlement.process_batch_reward([mission.id], parent_id=family.parent)

    assert result.processed_count == 0
    assert result.skipped == {mission.id: "already_transferred"}
    assert seed.missions.get(mission.id).is_transferred
    assert len(seed.ledger.list_transactions(family.ava)) == 1
    assert seed.ledger.get_balance(family.ava) == 3000


def test_backend_failure_interrupts_batch_with_partial_result(seed, family, clock, monkeypatch) -> None:
    today = clock.today()
    first = _completed(seed, clock, family.ava, "One", 100, today)
    second = _completed(seed, clock, family.ava, "Two", 200, today)
    third = _completed(seed, clock, family.ava, "Three", 300, today)

    original = seed.ledger.record_income
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise BackendUnavailableError("connection reset")
        return original(*args, **kwargs)

    monkeypatch.setattr(seed.ledger, "record_income", flaky)

    with pytest.raises(BatchInterruptedError) as excinfo:
        seed.settlement.process_batch_reward([first.id, second.id, third.id], parent_id=family.parent)

    partial = excinfo.value.partial_result
    assert excinfo.value.retryable
    assert partial.processed_ids == [first.id]
    assert partial.total_amount == 100
    assert seed.missions.get(first.id).is_transferred
    assert not seed.missions.get(second.id).is_transferred

    monkeypatch.undo()
    retry = seed.settlement.process_batch_reward([first.id, second.id, third.id], parent_id=family.parent)
    assert retry.processed_ids == [second.id, third.id]
    assert retry.skipped == {first.id: "already_transferred"}
    assert seed.ledger.get_balance(family.ava) == 600


def test_failed_transfer_flag_still_reports_the_payout(seed, family, clock, monkeypatch) -> None:
    mission = _completed(seed, clock, family.ava, "Rake leaves", 700, clock.today())
    original = seed.database.update

    def flag_fails(model, key, values, **kwargs):
        if "is_transferred" in values:
            raise BackendUnavailableError("connection reset")
        return original(model, key, values, **kwargs)

    monkeypatch.setattr(seed.database, "update", flag_fails)

    with pytest.raises(BatchInterruptedError) as excinfo:
        seed.settlement.process_single_reward(mission.id, parent_id=family.parent)

    partial = excinfo.value.partial_result
    assert partial.processed_ids == [mission.id]
    assert partial.total_amount == 700
    assert seed.ledger.get_balance(family.ava) == 700

    monkeypatch.undo()
    retry = seed.settlement.process_single_reward(mission.id, parent_id=family.parent)
    assert retry.skipped == {mission.id: "already_transferred"}
    assert seed.missions.get(mission.id).is_transferred
    assert seed.ledger.get_balance(family.ava) == 700


def test_mission_cannot_change_while_its_payout_is_in_flight(seed, family, clock) -> None:
    mission = _completed(seed, clock, family.ava, "Walk dog", 1000, clock.today())
    rejected = []

    def interfere(row):
        for attempt in (
            lambda: seed.missions.uncomplete(mission.id),
            lambda: seed.missions.update(mission.id, reward=5000),
        ):
            try:
                attempt()
            except ImmutableAfterTransferError as exc:
                rejected.append(exc.code)

    seed.database.feed.subscribe("allowance_transactions", on_insert=interfere)

    result = seed.settlement.process_single_reward(mission.id, parent_id=family.parent)

    assert result.processed_ids == [mission.id]
    assert rejected == ["immutable_after_transfer", "immutable_after_transfer"]
    paid = seed.missions.get(mission.id)
    assert paid.is_completed and paid.is_transferred
    assert paid.reward == 1000
    assert seed.ledger.get_balance(family.ava) == 1000


def test_mission_uncompleted_before_payout_is_not_flagged_transferred(seed, family, clock, monkeypatch) -> None:
    mission = _completed(seed, clock, family.ava, "Sweep porch", 1000, clock.today())
    original = seed.ledger.record_income

    def uncomplete_first(*args, **kwargs):
        seed.missions.uncomplete(mission.id)
        return original(*args, **kwargs)

    monkeypatch.setattr(seed.ledger, "record_income", uncomplete_first)
    result = seed.settlement.process_single_reward(mission.id, parent_id=family.parent)
    monkeypatch.undo()

    assert result.processed_ids == [mission.id]
    current = seed.missions.get(mission.id)
    assert not current.is_completed and not current.is_transferred
    assert seed.logger.events("reward_flag_lost")[-1]["mission"] == mission.id

    seed.missions.complete(mission.id)
    repaired = seed.settlement.process_single_reward(mission.id, parent_id=family.parent)

    assert repaired.skipped == {mission.id: "already_transferred"}
    assert seed.missions.get(mission.id).is_transferred
    assert seed.ledger.get_balance(family.ava) == 1000


def test_pending_missions_are_windowed_annotated_and_sorted(seed, family, clock) -> None:
    today = clock.today()
    recent = _completed(seed, clock, family.ava, "Recent", 500, add_days(today, -1))
    oldest_in_window = _completed(seed, clock, family.ben, "Edge", 700, add_days(today, -30))
    _completed(seed, clock, family.ava, "Too old", 900, add_days(today, -31))
    _completed(seed, clock, family.outsider, "Other family", 900, today)

    pending = seed.settlement.get_pending_reward_missions(family.parent)

    assert [item.id for item in pending] == [oldest_in_window.id, recent.id]
    edge, fresh = pending
    assert edge.child_name == "Ben"
    assert edge.days_since_completion == 30
    assert edge.priority is Priority.HIGH
    assert fresh.child_name == "Ava"
    assert fresh.days_since_completion == 1
    assert fresh.priority is Priority.NORMAL


def test_days_since_completion_uses_completion_time_not_mission_date(seed, family, clock) -> None:
    today = clock.today()
    mission = seed.missions.create_instance(family.ava, add_days(today, -6), "Late tick", 400, "chores")
    seed.missions.complete(mission.id)

    [pending] = seed.settlement.get_pending_reward_missions(family.parent)

    assert pending.days_since_completion == 0
    assert pending.priority is Priority.NORMAL


def test_smart_selection_preselects_missions_three_or_more_days_old(seed, family, clock) -> None:
    today = clock.today()
    five_days = _completed(seed, clock, family.ava, "Five days", 1000, add_days(today, -5))
    two_days = _completed(seed, clock, family.ava, "Two days", 1000, add_days(today, -2))

    pending = seed.settlement.get_pending_reward_missions(family.parent)

    assert [item.id for item in pending] == [five_days.id, two_days.id]
    assert seed.settlement.get_smart_selection(pending) == [five_days.id]


def test_group_missions_by_date_and_summary(seed, family, clock) -> None:
    today = clock.today()
    _completed(seed, clock, family.ava, "A", 500, add_days(today, -4))
    _completed(seed, clock, family.ben, "B", 300, add_days(today, -4))
    _completed(seed, clock, family.ava, "C", 200, today)

    pending = seed.settlement.get_pending_reward_missions(family.parent)
    groups = seed.settlement.group_missions_by_date(pending)

    assert set(groups) == {"2024-03-06", "2024-03-10"}
    older = groups["2024-03-06"]
    assert older.total_amount == 800
    assert {name: [m.title for m in items] for name, items in older.child_groups.items()} == {
        "Ava": ["A"],
        "Ben": ["B"],
    }
    assert groups["2024-03-10"].total_amount == 200

    summary = seed.settlement.get_reward_summary(family.parent)
    assert summary.total_pending == 3
    assert summary.total_amount == 1000
    assert summary.urgent_count == 2
    assert summary.oldest_completion == date(2024, 3, 6)
    assert summary.latest_completion == date(2024, 3, 10)


def test_empty_summary_for_parent_without_pending_missions(seed, family) -> None:
    summary = seed.settlement.get_reward_summary(family.parent)
    assert (summary.total_pending, summary.total_amount, summary.urgent_count) == (0, 0, 0)
    assert summary.oldest_completion is None


def test_child_side_pending_settlements_and_requests(seed, family, clock) -> None:
    today = clock.today()
    old = _completed(seed, clock, family.ava, "Ancient", 400, add_days(today, -45))
    _completed(seed, clock, family.ava, "Fresh", 600, today)

    pending = seed.settlement.get_all_pending_settlements(family.ava)
    assert pending.total_count == 2
    assert pending.total_amount == 1000
    assert pending.by_date[old.date.isoformat()][1] == 400

    request = seed.settlement.request_manual_settlement(family.ava)
    assert request.success
    assert request.total_amount == 1000
    assert seed.logger.events("settlement_requested")

    nothing = seed.settlement.request_manual_settlement(family.ben)
    assert not nothing.success
    assert nothing.total_count == 0


def test_auto_settlement_triggers_when_all_daily_missions_are_done(seed, family, clock) -> None:
    today = clock.today()
    daily = seed.missions.create_instance(family.ava, today, "Brush teeth", 300, "health", "daily")
    seed.missions.create_instance(family.ava, today, "Zoo trip", 3000, "family", "event")

    check = seed.settlement.should_trigger_auto_settlement(family.ava)
    assert not check.should_trigger
    assert check.reason == "no_auto_trigger"

    seed.missions.complete(daily.id)
    check = seed.settlement.should_trigger_auto_settlement(family.ava)
    assert check.should_trigger
    assert check.reason == "all_completed_today"
    assert check.pending.total_amount == 300
