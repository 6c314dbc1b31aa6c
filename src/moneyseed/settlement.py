"""Reward settlement: review pending missions and pay them out in batches.

Payout order per mission is fixed: the income transaction is written first and
only then is the mission flagged as transferred.  The transaction table holds at
most one row per ``mission_id``, so a mission that another session (or an
earlier, interrupted batch) already paid is detected at insert time and never
credited twice.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from .allowance import AllowanceLedger
from .config import SETTLEMENT_WINDOW_DAYS, URGENT_AFTER_DAYS
from .dates import Clock, add_days, days_between, format_date, to_kst_date, today_kst, utc_now
from .exceptions import BackendUnavailableError, BatchInterruptedError, ConflictError
from .family import FamilyResolver
from .missions import MissionLifecycleManager
from .models import (
    AutoSettlementCheck,
    BatchRewardResult,
    DateGroupedMissions,
    FamilyContext,
    MISSION_REWARD_CATEGORY,
    MissionInstance,
    PendingRewardMission,
    PendingSettlement,
    Priority,
    RewardSummary,
    SettlementRequest,
)
from .money import format_currency
from .ops import StructuredLogger
from .persistence import Database, MissionInstanceRow, storage_time, to_record

SKIP_NOT_FOUND = "not_found"
SKIP_NOT_COMPLETED = "not_completed"
SKIP_ALREADY_TRANSFERRED = "already_transferred"
SKIP_NOT_IN_FAMILY = "not_in_family"


class RewardSettlementEngine:
    """Parent-facing review and payout of completed missions."""

    def __init__(
        self,
        database: Database,
        families: FamilyResolver,
        ledger: AllowanceLedger,
        missions: MissionLifecycleManager,
        *,
        clock: Clock = utc_now,
        logger: StructuredLogger | None = None,
        window_days: int = SETTLEMENT_WINDOW_DAYS,
        urgent_after_days: int = URGENT_AFTER_DAYS,
    ) -> None:
        self._db = database
        self._families = families
        self._ledger = ledger
        self._missions = missions
        self._clock = clock
        self._logger = logger or StructuredLogger()
        self.window_days = window_days
        self.urgent_after_days = urgent_after_days

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------
    def get_pending_reward_missions(self, parent_id: str) -> List[PendingRewardMission]:
        """Completed, unpaid missions of the parent's children, oldest first.

        Only missions dated within the settlement window (today and the
        ``window_days`` days before it) are returned.
        """

        context = self._families.resolve(parent_id)
        if not context.child_ids:
            return []
        today = today_kst(self._clock)
        rows = self._db.find(
            MissionInstanceRow,
            MissionInstanceRow.user_id.in_(list(context.child_ids)),
            MissionInstanceRow.is_completed == True,  # noqa: E712
            MissionInstanceRow.is_transferred == False,  # noqa: E712
            MissionInstanceRow.date >= add_days(today, -self.window_days),
            MissionInstanceRow.date <= today,
        )
        pending = [self._annotate(to_record(row), context, today) for row in rows]
        pending.sort(key=lambda item: (-item.days_since_completion, item.date, item.title))
        return pending

    def get_reward_summary(self, parent_id: str) -> RewardSummary:
        missions = self.get_pending_reward_missions(parent_id)
        if not missions:
            return RewardSummary(total_pending=0, total_amount=0, urgent_count=0)
        dates = [mission.date for mission in missions]
        return RewardSummary(
            total_pending=len(missions),
            total_amount=sum(mission.reward for mission in missions),
            urgent_count=sum(1 for mission in missions if mission.priority is Priority.HIGH),
            latest_completion=max(dates),
            oldest_completion=min(dates),
        )

    @staticmethod
    def group_missions_by_date(missions: Iterable[PendingRewardMission]) -> Dict[str, DateGroupedMissions]:
        groups: Dict[str, DateGroupedMissions] = {}
        for mission in missions:
            key = format_date(mission.date)
            group = groups.get(key)
            if group is None:
                group = groups[key] = DateGroupedMissions(date=key)
            group.missions.append(mission)
            group.total_amount += mission.reward
            group.child_groups.setdefault(mission.child_name, []).append(mission)
        return groups

    @staticmethod
    def get_smart_selection(missions: Iterable[PendingRewardMission]) -> List[str]:
        return [mission.id for mission in missions if mission.priority is Priority.HIGH]

    def _annotate(
        self, mission: MissionInstance, context: FamilyContext, today: date
    ) -> PendingRewardMission:
        completed_on = to_kst_date(mission.completed_at) if mission.completed_at else mission.date
        age = max(days_between(completed_on, today), 0)
        return PendingRewardMission(
            id=mission.id,
            user_id=mission.user_id,
            child_name=context.child_names.get(mission.user_id, mission.user_id),
            title=mission.title,
            reward=mission.reward,
            category=mission.category,
            mission_type=mission.mission_type,
            date=mission.date,
            completed_at=mission.completed_at,
            days_since_completion=age,
            priority=Priority.HIGH if age >= self.urgent_after_days else Priority.NORMAL,
            description=mission.description,
        )

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------
    def process_batch_reward(
        self,
        mission_ids: Sequence[str],
        parent_note: str | None = None,
        parent_id: str | None = None,
    ) -> BatchRewardResult:
        """Pay every still-valid mission in ``mission_ids``.

        Invalid missions are skipped with a reason and the batch continues.  A
        backend failure stops the batch with :class:`BatchInterruptedError`;
        missions paid before the failure stay paid and can be resubmitted safely.
        """

        result = BatchRewardResult()
        context = self._families.resolve(parent_id) if parent_id else None
        note = (parent_note or "").strip() or None
        for mission_id in dict.fromkeys(mission_ids):
            try:
                self._settle(mission_id, note, context, result)
            except BackendUnavailableError as exc:
                result.message = self._summary(result)
                self._logger.log(
                    "reward_batch_interrupted",
                    mission=mission_id,
                    processed=result.processed_count,
                    error=str(exc),
                )
                raise BatchInterruptedError(
                    "Settlement stopped part way; resubmit to pay the remaining missions.",
                    result,
                ) from exc
        result.message = self._summary(result)
        self._logger.log(
            "reward_batch_processed",
            parent=parent_id,
            processed=result.processed_count,
            total=result.total_amount,
            skipped=len(result.skipped),
        )
        return result

    def process_single_reward(
        self,
        mission_id: str,
        parent_note: str | None = None,
        parent_id: str | None = None,
    ) -> BatchRewardResult:
        return self.process_batch_reward([mission_id], parent_note=parent_note, parent_id=parent_id)

    def _settle(
        self,
        mission_id: str,
        note: Optional[str],
        context: Optional[FamilyContext],
        result: BatchRewardResult,
    ) -> None:
        row = self._db.get(MissionInstanceRow, mission_id)
        reason = self._skip_reason(row, context)
        if reason is not None:
            self._skip(result, mission_id, reason)
            return
        mission: MissionInstance = to_record(row)
        try:
            self._ledger.record_income(
                mission.user_id,
                mission.reward,
                MISSION_REWARD_CATEGORY,
                description=mission.title,
                mission_id=mission.id,
                parent_note=note,
            )
        except ConflictError:
            self._mark_transferred(mission.id)
            self._skip(result, mission_id, SKIP_ALREADY_TRANSFERRED)
            return
        # The income row is committed, so the mission counts as paid even if the flip fails.
        result.processed_count += 1
        result.total_amount += mission.reward
        result.processed_ids.append(mission.id)
        self._logger.log("reward_processed", mission=mission.id, user=mission.user_id, amount=mission.reward)
        if self._mark_transferred(mission.id) is None:
            # Uncompleted before the insert landed; the next batch repairs the flag once it is completed again.
            self._logger.log("reward_flag_lost", mission=mission.id)

    def _mark_transferred(self, mission_id: str) -> Optional[MissionInstanceRow]:
        return self._db.update(
            MissionInstanceRow,
            mission_id,
            {"is_transferred": True, "transferred_at": storage_time(self._clock())},
            where=(
                MissionInstanceRow.is_transferred == False,  # noqa: E712
                MissionInstanceRow.is_completed == True,  # noqa: E712
            ),
        )

    @staticmethod
    def _skip_reason(row: Optional[MissionInstanceRow], context: Optional[FamilyContext]) -> Optional[str]:
        if row is None:
            return SKIP_NOT_FOUND
        if context is not None and not context.includes_child(row.user_id):
            return SKIP_NOT_IN_FAMILY
        if row.is_transferred:
            return SKIP_ALREADY_TRANSFERRED
        if not row.is_completed:
            return SKIP_NOT_COMPLETED
        return None

    def _skip(self, result: BatchRewardResult, mission_id: str, reason: str) -> None:
        result.skipped[mission_id] = reason
        self._logger.log("reward_skipped", mission=mission_id, reason=reason)

    @staticmethod
    def _summary(result: BatchRewardResult) -> str:
        if not result.processed_count:
            return "No missions were settled."
        message = f"Settled {result.processed_count} mission(s) for {format_currency(result.total_amount)}."
        if result.skipped:
            message += f" Skipped {len(result.skipped)}."
        return message

    # ------------------------------------------------------------------
    # Child-side helpers
    # ------------------------------------------------------------------
    def get_all_pending_settlements(self, user_id: str) -> PendingSettlement:
        """Every completed, unpaid mission of ``user_id`` regardless of age."""

        settlement = PendingSettlement()
        grouped: Dict[str, List[MissionInstance]] = defaultdict(list)
        for mission in self._missions.list_pending(user_id):
            grouped[format_date(mission.date)].append(mission)
            settlement.missions.append(mission)
            settlement.total_amount += mission.reward
            settlement.total_count += 1
        settlement.by_date = {
            key: (missions, sum(mission.reward for mission in missions))
            for key, missions in grouped.items()
        }
        return settlement

    def should_trigger_auto_settlement(self, user_id: str) -> AutoSettlementCheck:
        status = self._missions.daily_completion_status(user_id, today_kst(self._clock))
        should_trigger = status.all_completed
        return AutoSettlementCheck(
            should_trigger=should_trigger,
            reason="all_completed_today" if should_trigger else "no_auto_trigger",
            today_status=status,
            pending=self.get_all_pending_settlements(user_id),
        )

    def request_manual_settlement(self, user_id: str) -> SettlementRequest:
        pending = self.get_all_pending_settlements(user_id)
        if not pending.total_count:
            return SettlementRequest(
                success=False,
                total_amount=0,
                total_count=0,
                message="There are no completed missions to settle.",
            )
        self._logger.log(
            "settlement_requested",
            user=user_id,
            count=pending.total_count,
            total=pending.total_amount,
        )
        return SettlementRequest(
            success=True,
            total_amount=pending.total_amount,
            total_count=pending.total_count,
            missions=pending.missions,
            message=(
                f"Asked a parent to settle {pending.total_count} mission(s) "
                f"worth {format_currency(pending.total_amount)}."
            ),
        )


__all__ = [
    "RewardSettlementEngine",
    "SKIP_ALREADY_TRANSFERRED",
    "SKIP_NOT_COMPLETED",
    "SKIP_NOT_FOUND",
    "SKIP_NOT_IN_FAMILY",
]
