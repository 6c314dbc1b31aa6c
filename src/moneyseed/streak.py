"""Consecutive-day streak accounting and its consistency audit.

A streak advances at most once per KST calendar day.  Reaching a milestone
writes a pending reward history record before the progress row changes; the
bonus money reaches the ledger only when the milestone is claimed, either
immediately (auto-claim) or later through :meth:`StreakAccountingService.claim_bonus`.
"""

from __future__ import annotations

import warnings
from datetime import date
from typing import List, Optional

from .allowance import AllowanceLedger
from .config import DEFAULT_STREAK_BONUS, DEFAULT_STREAK_REPEAT, DEFAULT_STREAK_TARGET, STREAK_AUTO_CLAIM
from .dates import Clock, add_days, parse_date, today_kst, utc_now
from .exceptions import AlreadyClaimedError, ConflictError, ConsistencyWarning, ValidationError
from .models import (
    BonusPaymentReport,
    RewardHistoryEntry,
    STREAK_BONUS_CATEGORY,
    STREAK_BONUS_REWARD_TYPE,
    StreakLogicReport,
    StreakResult,
    StreakSettings,
    SystemStatus,
    TransactionType,
    UserStreakProgress,
)
from .money import MAX_AMOUNT, format_currency
from .ops import StructuredLogger
from .persistence import (
    AllowanceTransactionRow,
    Database,
    RewardHistoryRow,
    RewardSettingsRow,
    UserProgressRow,
    storage_time,
    to_record,
)


class StreakAccountingService:
    """Maintain per-user streak counters and streak bonus milestones."""

    def __init__(
        self,
        database: Database,
        ledger: AllowanceLedger,
        *,
        clock: Clock = utc_now,
        logger: StructuredLogger | None = None,
        auto_claim: bool = STREAK_AUTO_CLAIM,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._clock = clock
        self._logger = logger or StructuredLogger()
        self.auto_claim = auto_claim

    # ------------------------------------------------------------------
    # Settings and progress
    # ------------------------------------------------------------------
    def get_streak_settings(self, user_id: str) -> StreakSettings:
        row = self._db.get(RewardSettingsRow, user_id)
        if row is None:
            return StreakSettings(
                user_id=user_id,
                streak_target_days=DEFAULT_STREAK_TARGET,
                streak_bonus_amount=DEFAULT_STREAK_BONUS,
                streak_repeat=DEFAULT_STREAK_REPEAT,
                streak_enabled=True,
            )
        return to_record(row)

    def update_streak_settings(
        self,
        user_id: str,
        *,
        streak_target_days: int | None = None,
        streak_bonus_amount: int | None = None,
        streak_repeat: bool | None = None,
        streak_enabled: bool | None = None,
    ) -> StreakSettings:
        settings = self.get_streak_settings(user_id)
        if streak_target_days is not None:
            if streak_target_days < 1:
                raise ValidationError("Streak target must be at least one day.")
            settings.streak_target_days = streak_target_days
        if streak_bonus_amount is not None:
            if not 0 <= streak_bonus_amount <= MAX_AMOUNT:
                raise ValidationError(f"Streak bonus must be between ₩0 and {format_currency(MAX_AMOUNT)}.")
            settings.streak_bonus_amount = streak_bonus_amount
        if streak_repeat is not None:
            settings.streak_repeat = streak_repeat
        if streak_enabled is not None:
            settings.streak_enabled = streak_enabled
        self._db.upsert(
            RewardSettingsRow(
                user_id=user_id,
                streak_target_days=settings.streak_target_days,
                streak_bonus_amount=settings.streak_bonus_amount,
                streak_repeat=settings.streak_repeat,
                streak_enabled=settings.streak_enabled,
                updated_at=storage_time(self._clock()),
            )
        )
        self._logger.log(
            "streak_settings_updated",
            user=user_id,
            target=settings.streak_target_days,
            bonus=settings.streak_bonus_amount,
            repeat=settings.streak_repeat,
            enabled=settings.streak_enabled,
        )
        return settings

    def get_user_progress(self, user_id: str) -> UserStreakProgress:
        row = self._db.get(UserProgressRow, user_id)
        return to_record(row) if row is not None else UserStreakProgress(user_id=user_id)

    def list_reward_history(self, user_id: str, *, unclaimed_only: bool = False) -> List[RewardHistoryEntry]:
        criteria = [
            RewardHistoryRow.user_id == user_id,
            RewardHistoryRow.reward_type == STREAK_BONUS_REWARD_TYPE,
        ]
        if unclaimed_only:
            criteria.append(RewardHistoryRow.is_claimed == False)  # noqa: E712
        rows = self._db.find(RewardHistoryRow, *criteria, order_by=(RewardHistoryRow.created_at,))
        return [to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Streak updates
    # ------------------------------------------------------------------
    def update_streak(
        self,
        user_id: str,
        completion_date: date | str | None = None,
        missions_completed: int = 1,
    ) -> StreakResult:
        """Advance the streak for a day on which all daily missions were completed.

        Repeated calls for the same day, and calls for a day before the last
        recorded completion, change nothing.
        """

        settings = self.get_streak_settings(user_id)
        progress = self.get_user_progress(user_id)
        if not settings.streak_enabled:
            return StreakResult(new_streak=progress.streak_count)

        day = parse_date(completion_date) if completion_date is not None else today_kst(self._clock)
        last = progress.last_completion_date
        if last is not None and last >= day:
            return StreakResult(new_streak=progress.streak_count)

        if last is not None and last == add_days(day, -1) and progress.streak_count > 0:
            count = progress.streak_count + 1
            started = progress.streak_started_on or add_days(day, 1 - count)
        else:
            count = 1
            started = day
        is_new_record = count > progress.best_streak

        milestone: Optional[RewardHistoryEntry] = None
        if settings.is_milestone(count) and settings.streak_bonus_amount > 0:
            milestone = self._record_milestone(user_id, settings, count, started)

        self._db.upsert(
            UserProgressRow(
                user_id=user_id,
                streak_count=count,
                last_completion_date=day,
                streak_started_on=started,
                best_streak=max(progress.best_streak, count),
                total_missions_completed=progress.total_missions_completed + max(missions_completed, 0),
                total_streak_bonus_earned=progress.total_streak_bonus_earned,
                updated_at=storage_time(self._clock()),
            )
        )
        self._logger.log(
            "streak_updated",
            user=user_id,
            streak=count,
            date=day.isoformat(),
            milestone=milestone.id if milestone else None,
        )

        if milestone is not None and self.auto_claim and not milestone.is_claimed:
            self.claim_bonus(milestone.id)

        return StreakResult(
            new_streak=count,
            bonus_earned=milestone.amount if milestone else 0,
            should_celebrate=milestone is not None,
            is_new_record=is_new_record,
            milestone_id=milestone.id if milestone else None,
        )

    def _record_milestone(
        self, user_id: str, settings: StreakSettings, count: int, started: date
    ) -> RewardHistoryEntry:
        row = RewardHistoryRow(
            user_id=user_id,
            reward_type=STREAK_BONUS_REWARD_TYPE,
            amount=settings.streak_bonus_amount,
            trigger_value=count,
            streak_started_on=started,
            description=f"{count}-day streak bonus",
        )
        try:
            self._db.insert(row)
        except ConflictError:
            existing = self._db.first(
                RewardHistoryRow,
                RewardHistoryRow.user_id == user_id,
                RewardHistoryRow.reward_type == STREAK_BONUS_REWARD_TYPE,
                RewardHistoryRow.streak_started_on == started,
                RewardHistoryRow.trigger_value == count,
            )
            if existing is None:
                raise
            return to_record(existing)
        self._logger.log("streak_milestone_reached", user=user_id, streak=count, milestone=row.id)
        return to_record(row)

    def claim_bonus(self, milestone_id: str) -> RewardHistoryEntry:
        """Pay a milestone into the ledger; a milestone pays at most once."""

        row = self._db.require(RewardHistoryRow, milestone_id, label="Streak bonus")
        if row.is_claimed:
            raise AlreadyClaimedError(f"Streak bonus {milestone_id!r} has already been claimed.")
        try:
            transaction = self._ledger.record_income(
                row.user_id,
                row.amount,
                STREAK_BONUS_CATEGORY,
                description=row.description,
                reward_id=row.id,
            )
        except ConflictError:
            # A previous claim wrote the transaction but stopped before flagging the record.
            transaction = self._ledger.find_by_reward(row.id)
            if transaction is None:
                raise
        claimed = self._db.update(
            RewardHistoryRow,
            row.id,
            {"is_claimed": True, "claimed_at": storage_time(self._clock()), "transaction_id": transaction.id},
            where=(RewardHistoryRow.is_claimed == False,),  # noqa: E712
        )
        if claimed is None:
            raise AlreadyClaimedError(f"Streak bonus {milestone_id!r} has already been claimed.")
        self._add_bonus_earned(row.user_id, row.amount)
        self._logger.log(
            "streak_bonus_claimed",
            user=row.user_id,
            milestone=row.id,
            amount=row.amount,
            transaction=transaction.id,
        )
        return to_record(claimed)

    def claim_pending_bonuses(self, user_id: str) -> List[RewardHistoryEntry]:
        return [self.claim_bonus(entry.id) for entry in self.list_reward_history(user_id, unclaimed_only=True)]

    def _add_bonus_earned(self, user_id: str, amount: int) -> None:
        progress = self.get_user_progress(user_id)
        self._db.upsert(
            UserProgressRow(
                user_id=user_id,
                streak_count=progress.streak_count,
                last_completion_date=progress.last_completion_date,
                streak_started_on=progress.streak_started_on,
                best_streak=progress.best_streak,
                total_missions_completed=progress.total_missions_completed,
                total_streak_bonus_earned=progress.total_streak_bonus_earned + amount,
                updated_at=storage_time(self._clock()),
            )
        )

    def reset_streak(self, user_id: str) -> UserStreakProgress:
        """Clear the current run; best streak and lifetime totals are kept."""

        progress = self.get_user_progress(user_id)
        row = self._db.upsert(
            UserProgressRow(
                user_id=user_id,
                streak_count=0,
                last_completion_date=None,
                streak_started_on=None,
                best_streak=progress.best_streak,
                total_missions_completed=progress.total_missions_completed,
                total_streak_bonus_earned=progress.total_streak_bonus_earned,
                updated_at=storage_time(self._clock()),
            )
        )
        self._logger.log("streak_reset", user=user_id, previous=progress.streak_count)
        return to_record(row)


class StreakVerificationService:
    """Read-only audit of streak bonus bookkeeping.

    Disagreements are reported through :class:`ConsistencyWarning` and the
    structured log.  Nothing is corrected automatically.
    """

    def __init__(
        self,
        database: Database,
        streaks: StreakAccountingService,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._db = database
        self._streaks = streaks
        self._logger = logger or StructuredLogger()

    def verify_bonus_payments(self, user_id: str) -> BonusPaymentReport:
        claimed = [entry for entry in self._streaks.list_reward_history(user_id) if entry.is_claimed]
        transactions = self._db.find(
            AllowanceTransactionRow,
            AllowanceTransactionRow.user_id == user_id,
            AllowanceTransactionRow.type == TransactionType.INCOME.value,
            AllowanceTransactionRow.category == STREAK_BONUS_CATEGORY,
        )
        reward_total = sum(entry.amount for entry in claimed)
        transaction_total = sum(row.amount for row in transactions)
        recorded = self._streaks.get_user_progress(user_id).total_streak_bonus_earned
        report = BonusPaymentReport(
            user_id=user_id,
            is_consistent=reward_total == transaction_total == recorded,
            reward_count=len(claimed),
            reward_total=reward_total,
            transaction_count=len(transactions),
            transaction_total=transaction_total,
            recorded_bonus_earned=recorded,
        )
        if not report.is_consistent:
            self._warn(
                "streak_bonus_mismatch",
                f"Streak bonus totals disagree for {user_id}: rewards {reward_total}, "
                f"transactions {transaction_total}, progress {recorded}.",
                user=user_id,
                reward_total=reward_total,
                transaction_total=transaction_total,
                recorded=recorded,
            )
        return report

    def verify_streak_logic(self, user_id: str) -> StreakLogicReport:
        settings = self._streaks.get_streak_settings(user_id)
        progress = self._streaks.get_user_progress(user_id)
        current = progress.streak_count
        target = settings.streak_target_days
        last_milestone = settings.last_milestone(current)
        should_have_bonus = settings.is_milestone(last_milestone) and settings.streak_bonus_amount > 0
        has_bonus_record = False
        if last_milestone:
            has_bonus_record = (
                self._db.first(
                    RewardHistoryRow,
                    RewardHistoryRow.user_id == user_id,
                    RewardHistoryRow.reward_type == STREAK_BONUS_REWARD_TYPE,
                    RewardHistoryRow.streak_started_on == progress.streak_started_on,
                    RewardHistoryRow.trigger_value == last_milestone,
                )
                is not None
            )
        if settings.streak_repeat or current < target:
            next_bonus_at = (current // target + 1) * target
            days_until_bonus = next_bonus_at - current
        else:
            # no further bonus until the run restarts
            next_bonus_at = 0
            days_until_bonus = 0
        report = StreakLogicReport(
            user_id=user_id,
            current_streak=current,
            target=target,
            last_milestone=last_milestone,
            should_have_bonus=should_have_bonus,
            has_bonus_record=has_bonus_record,
            next_bonus_at=next_bonus_at,
            days_until_bonus=days_until_bonus,
        )
        if not report.streak_logic_correct:
            self._warn(
                "streak_logic_mismatch",
                f"Milestone {last_milestone} for {user_id} expected a bonus record: "
                f"{should_have_bonus}, found: {has_bonus_record}.",
                user=user_id,
                milestone=last_milestone,
                expected=should_have_bonus,
                found=has_bonus_record,
            )
        return report

    def system_status(self, user_id: str) -> SystemStatus:
        payments = self.verify_bonus_payments(user_id)
        logic = self.verify_streak_logic(user_id)
        recommendations: List[str] = []
        if not payments.is_consistent:
            recommendations.append("Reward history and streak bonus transactions disagree; review the ledger.")
        if not logic.streak_logic_correct:
            recommendations.append("The current streak and its milestone records disagree; review streak updates.")
        success = not recommendations
        if success:
            recommendations.append("Streak bonus bookkeeping is consistent.")
        return SystemStatus(
            success=success,
            bonus_payments=payments,
            streak_logic=logic,
            recommendations=recommendations,
        )

    def _warn(self, event: str, message: str, **fields: object) -> None:
        self._logger.log(event, **fields)
        warnings.warn(message, ConsistencyWarning, stacklevel=3)


__all__ = ["StreakAccountingService", "StreakVerificationService"]
