import warnings
from datetime import date

import pytest

from moneyseed.dates import add_days
from moneyseed.exceptions import AlreadyClaimedError, ConsistencyWarning, ValidationError
from moneyseed.models import STREAK_BONUS_CATEGORY
from moneyseed.persistence import RewardHistoryRow
from moneyseed.streak import StreakAccountingService

START = date(2024, 3, 1)


def run_days(streaks, user_id, days, start=START):
    return [streaks.update_streak(user_id, add_days(start, offset)) for offset in range(days)]


def test_streak_counts_consecutive_days_once_per_day(seed, family) -> None:
    streaks = seed.streaks

    first = streaks.update_streak(family.ava, START)
    assert first.new_streak == 1
    assert first.is_new_record

    repeat = streaks.update_streak(family.ava, START, missions_completed=3)
    assert repeat.new_streak == 1
    assert not repeat.should_celebrate

    second = streaks.update_streak(family.ava, add_days(START, 1), missions_completed=2)
    assert second.new_streak == 2

    progress = streaks.get_user_progress(family.ava)
    assert progress.streak_count == 2
    assert progress.last_completion_date == add_days(START, 1)
    assert progress.streak_started_on == START
    assert progress.total_missions_completed == 3


def test_back_dated_updates_change_nothing(seed, family) -> None:
    streaks = seed.streaks
    run_days(streaks, family.ava, 3)

    result = streaks.update_streak(family.ava, START)

    assert result.new_streak == 3
    assert streaks.get_user_progress(family.ava).last_completion_date == add_days(START, 2)


def test_missed_day_restarts_the_run_but_keeps_best_streak(seed, family) -> None:
    streaks = seed.streaks
    run_days(streaks, family.ava, 5)

    result = streaks.update_streak(family.ava, add_days(START, 6))

    assert result.new_streak == 1
    assert not result.is_new_record
    progress = streaks.get_user_progress(family.ava)
    assert progress.best_streak == 5
    assert progress.streak_started_on == add_days(START, 6)


def test_default_settings_pay_every_seventh_day(seed, family) -> None:
    results = run_days(seed.streaks, family.ava, 14)

    celebrated = [index + 1 for index, result in enumerate(results) if result.should_celebrate]
    assert celebrated == [7, 14]
    assert results[6].bonus_earned == 1000
    assert results[7].bonus_earned == 0

    history = seed.streaks.list_reward_history(family.ava)
    assert [(entry.trigger_value, entry.amount, entry.is_claimed) for entry in history] == [
        (7, 1000, True),
        (14, 1000, True),
    ]
    assert all(entry.transaction_id for entry in history)
    assert seed.ledger.get_balance(family.ava) == 2000
    assert seed.streaks.get_user_progress(family.ava).total_streak_bonus_earned == 2000


def test_non_repeating_bonus_pays_once_per_run(seed, family) -> None:
    seed.streaks.update_streak_settings(
        family.ava, streak_target_days=3, streak_bonus_amount=500, streak_repeat=False
    )

    results = run_days(seed.streaks, family.ava, 7)

    assert [result.bonus_earned for result in results] == [0, 0, 500, 0, 0, 0, 0]
    assert seed.ledger.get_balance(family.ava) == 500

    # a new run earns the bonus again
    restarted = run_days(seed.streaks, family.ava, 3, start=add_days(START, 10))
    assert restarted[-1].bonus_earned == 500
    assert seed.ledger.get_balance(family.ava) == 1000


def test_zero_bonus_and_disabled_streaks_record_nothing(seed, family) -> None:
    streaks = seed.streaks
    streaks.update_streak_settings(family.ava, streak_target_days=2, streak_bonus_amount=0)
    results = run_days(streaks, family.ava, 2)
    assert results[-1].new_streak == 2
    assert not results[-1].should_celebrate
    assert streaks.list_reward_history(family.ava) == []

    streaks.update_streak_settings(family.ben, streak_enabled=False)
    disabled = streaks.update_streak(family.ben, START)
    assert disabled.new_streak == 0
    assert streaks.get_user_progress(family.ben).last_completion_date is None


def test_settings_validation_and_defaults(seed, family) -> None:
    defaults = seed.streaks.get_streak_settings(family.ava)
    assert (defaults.streak_target_days, defaults.streak_bonus_amount, defaults.streak_repeat) == (7, 1000, True)

    with pytest.raises(ValidationError):
        seed.streaks.update_streak_settings(family.ava, streak_target_days=0)
    with pytest.raises(ValidationError):
        seed.streaks.update_streak_settings(family.ava, streak_bonus_amount=-1)

    updated = seed.streaks.update_streak_settings(family.ava, streak_bonus_amount=2500)
    assert updated.streak_target_days == 7
    assert seed.streaks.get_streak_settings(family.ava).streak_bonus_amount == 2500


def test_reset_keeps_best_streak_and_totals(seed, family) -> None:
    run_days(seed.streaks, family.ava, 7)

    progress = seed.streaks.reset_streak(family.ava)

    assert progress.streak_count == 0
    assert progress.last_completion_date is None
    assert progress.best_streak == 7
    assert progress.total_streak_bonus_earned == 1000
    assert seed.streaks.update_streak(family.ava, add_days(START, 7)).new_streak == 1


@pytest.fixture
def deferred(seed, clock, logger):
    streaks = StreakAccountingService(seed.database, seed.ledger, clock=clock, logger=logger, auto_claim=False)
    return streaks


def test_deferred_milestone_is_paid_only_when_claimed(seed, family, deferred) -> None:
    deferred.update_streak_settings(family.ava, streak_target_days=2, streak_bonus_amount=300)

    result = run_days(deferred, family.ava, 2)[-1]

    assert result.should_celebrate
    assert result.bonus_earned == 300
    assert seed.ledger.get_balance(family.ava) == 0
    [pending] = deferred.list_reward_history(family.ava, unclaimed_only=True)
    assert pending.id == result.milestone_id

    claimed = deferred.claim_bonus(result.milestone_id)

    assert claimed.is_claimed
    assert claimed.claimed_at is not None
    [transaction] = seed.ledger.list_transactions(family.ava)
    assert claimed.transaction_id == transaction.id
    assert transaction.category == STREAK_BONUS_CATEGORY
    assert transaction.reward_id == claimed.id
    assert seed.ledger.get_balance(family.ava) == 300
    assert deferred.get_user_progress(family.ava).total_streak_bonus_earned == 300

    with pytest.raises(AlreadyClaimedError):
        deferred.claim_bonus(result.milestone_id)
    assert seed.ledger.get_balance(family.ava) == 300


def test_claim_finishes_after_transaction_was_already_written(seed, family, deferred) -> None:
    deferred.update_streak_settings(family.ava, streak_target_days=2, streak_bonus_amount=300)
    milestone_id = run_days(deferred, family.ava, 2)[-1].milestone_id
    written = seed.ledger.record_income(family.ava, 300, STREAK_BONUS_CATEGORY, reward_id=milestone_id)

    claimed = deferred.claim_bonus(milestone_id)

    assert claimed.transaction_id == written.id
    assert seed.ledger.get_balance(family.ava) == 300
    assert len(seed.ledger.list_transactions(family.ava)) == 1


def test_claim_pending_bonuses_pays_every_open_milestone(seed, family, deferred) -> None:
    deferred.update_streak_settings(family.ava, streak_target_days=1, streak_bonus_amount=100)
    run_days(deferred, family.ava, 3)

    claimed = deferred.claim_pending_bonuses(family.ava)

    assert [entry.trigger_value for entry in claimed] == [1, 2, 3]
    assert seed.ledger.get_balance(family.ava) == 300
    assert deferred.list_reward_history(family.ava, unclaimed_only=True) == []


def test_completing_all_daily_missions_advances_the_streak(seed, family, clock) -> None:
    seed.create_template(family.parent, "Brush teeth", 300, "health")
    seed.create_template(family.parent, "Read a book", 500, "study")
    seed.create_mission(family.parent, family.ava, clock.today(), "Zoo trip", 3000, "family")

    assert seed.ensure_daily_missions(family.ava) == 2
    brush, read = [m for m in seed.missions_for_date(family.ava) if m.mission_type.value == "daily"]

    _, streak = seed.complete_mission(family.ava, brush.id)
    assert streak is None

    _, streak = seed.complete_mission(family.ava, read.id)
    assert streak is not None
    assert streak.new_streak == 1
    assert seed.streaks.get_user_progress(family.ava).total_missions_completed == 2


def test_a_week_of_daily_missions_earns_the_bonus(seed, family, clock) -> None:
    seed.create_template(family.parent, "Make bed", 200, "chores")
    results = []
    for offset in range(7):
        clock.set_day(add_days(START, offset))
        seed.ensure_daily_missions(family.ava)
        [mission] = seed.missions_for_date(family.ava, user_id=family.ava)
        _, streak = seed.complete_mission(family.ava, mission.id)
        results.append(streak)

    assert [result.new_streak for result in results] == list(range(1, 8))
    assert results[-1].should_celebrate
    assert results[-1].bonus_earned == 1000
    assert seed.ledger.get_balance(family.ava) == 1000

    # daily mission rewards still wait for a parent
    assert seed.settlement.get_all_pending_settlements(family.ava).total_amount == 1400


def test_completing_an_old_daily_mission_does_not_touch_the_streak(seed, family, clock) -> None:
    yesterday = add_days(clock.today(), -1)
    mission = seed.create_mission(family.parent, family.ava, yesterday, "Brush teeth", 300, "health", "daily")

    _, streak = seed.complete_mission(family.ava, mission.id)

    assert streak is None
    assert seed.streaks.get_user_progress(family.ava).streak_count == 0


def test_verification_reports_consistent_bookkeeping(seed, family) -> None:
    run_days(seed.streaks, family.ava, 7)

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConsistencyWarning)
        status = seed.verification.system_status(family.ava)

    assert status.success
    assert status.recommendations == ["Streak bonus bookkeeping is consistent."]
    payments = status.bonus_payments
    assert (payments.reward_total, payments.transaction_total, payments.recorded_bonus_earned) == (1000, 1000, 1000)
    logic = status.streak_logic
    assert (logic.current_streak, logic.last_milestone) == (7, 7)
    assert logic.should_have_bonus and logic.has_bonus_record
    assert (logic.next_bonus_at, logic.days_until_bonus) == (14, 7)


def test_verification_warns_about_unmatched_bonus_transactions(seed, family) -> None:
    run_days(seed.streaks, family.ava, 7)
    seed.ledger.record_income(family.ava, 500, STREAK_BONUS_CATEGORY, description="manual bonus")

    with pytest.warns(ConsistencyWarning):
        report = seed.verification.verify_bonus_payments(family.ava)

    assert not report.is_consistent
    assert report.transaction_total == 1500
    assert report.reward_total == 1000
    assert seed.logger.events("streak_bonus_mismatch")


def test_verification_warns_when_milestone_record_is_missing(seed, family) -> None:
    milestone_id = run_days(seed.streaks, family.ava, 7)[-1].milestone_id
    seed.database.delete(RewardHistoryRow, milestone_id)

    with pytest.warns(ConsistencyWarning):
        report = seed.verification.verify_streak_logic(family.ava)

    assert report.should_have_bonus
    assert not report.has_bonus_record
    assert not report.streak_logic_correct
    assert seed.logger.events("streak_logic_mismatch")


def test_verification_of_non_repeating_streaks(seed, family) -> None:
    seed.streaks.update_streak_settings(
        family.ava, streak_target_days=3, streak_bonus_amount=500, streak_repeat=False
    )
    run_days(seed.streaks, family.ava, 2)
    early = seed.verification.verify_streak_logic(family.ava)
    assert (early.next_bonus_at, early.days_until_bonus) == (3, 1)
    assert not early.should_have_bonus

    run_days(seed.streaks, family.ava, 2, start=add_days(START, 2))
    late = seed.verification.verify_streak_logic(family.ava)
    assert late.current_streak == 4
    assert late.has_bonus_record
    assert (late.next_bonus_at, late.days_until_bonus) == (0, 0)
