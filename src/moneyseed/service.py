"""High level service wiring the MoneySeed components together."""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .allowance import AllowanceLedger
from .api import ApiExporter
from .config import LOG_PATH, STREAK_AUTO_CLAIM
from .dates import Clock, parse_date, today_kst, utc_now
from .exceptions import PermissionDeniedError
from .family import FamilyResolver
from .missions import MissionLifecycleManager
from .models import (
    AllowanceStatistics,
    AllowanceTransaction,
    AutoSettlementCheck,
    BatchRewardResult,
    DateGroupedMissions,
    FamilyContext,
    MissionInstance,
    MissionTemplate,
    MissionType,
    PendingRewardMission,
    PendingSettlement,
    RewardHistoryEntry,
    RewardSummary,
    SettlementRequest,
    StreakResult,
    StreakSettings,
    SystemStatus,
    UserStreakProgress,
)
from .money import AmountLike
from .ops import StructuredLogger
from .persistence import Database
from .realtime import ConnectionManager, MissionListener
from .settlement import RewardSettlementEngine
from .streak import StreakAccountingService, StreakVerificationService


class MoneySeed:
    """Coordinate missions, settlement, streaks and the allowance ledger for families.

    Every public method takes the acting user's id first and checks that the
    actor may see (or, for parent-only actions, manage) the target child.
    """

    __slots__ = (
        "_clock",
        "_logger",
        "_db",
        "_families",
        "_missions",
        "_ledger",
        "_settlement",
        "_streaks",
        "_verification",
        "_connections",
        "_api",
    )

    def __init__(
        self,
        database: Database | None = None,
        *,
        clock: Clock = utc_now,
        logger: StructuredLogger | None = None,
        auto_claim: bool = STREAK_AUTO_CLAIM,
    ) -> None:
        self._clock = clock
        self._logger = logger or StructuredLogger(path=LOG_PATH)
        self._db = database or Database(logger=self._logger)
        self._families = FamilyResolver(self._db, logger=self._logger)
        self._missions = MissionLifecycleManager(self._db, clock=clock, logger=self._logger)
        self._ledger = AllowanceLedger(self._db, clock=clock, logger=self._logger)
        self._settlement = RewardSettlementEngine(
            self._db,
            self._families,
            self._ledger,
            self._missions,
            clock=clock,
            logger=self._logger,
        )
        self._streaks = StreakAccountingService(
            self._db, self._ledger, clock=clock, logger=self._logger, auto_claim=auto_claim
        )
        self._verification = StreakVerificationService(self._db, self._streaks, logger=self._logger)
        self._connections = ConnectionManager(self._db.feed, logger=self._logger)
        self._api = ApiExporter()

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    @property
    def database(self) -> Database:
        return self._db

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def families(self) -> FamilyResolver:
        return self._families

    @property
    def missions(self) -> MissionLifecycleManager:
        return self._missions

    @property
    def ledger(self) -> AllowanceLedger:
        return self._ledger

    @property
    def settlement(self) -> RewardSettlementEngine:
        return self._settlement

    @property
    def streaks(self) -> StreakAccountingService:
        return self._streaks

    @property
    def verification(self) -> StreakVerificationService:
        return self._verification

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    @property
    def api(self) -> ApiExporter:
        return self._api

    def today(self) -> date:
        return today_kst(self._clock)

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------
    def family_context(self, user_id: str) -> FamilyContext:
        return self._families.resolve(user_id)

    def _require_visible(self, actor_id: str, user_id: str) -> None:
        if not self._families.can_view(actor_id, user_id):
            raise PermissionDeniedError(f"User {actor_id!r} cannot access data for {user_id!r}.")

    def _require_parent_of(self, actor_id: str, child_id: str) -> FamilyContext:
        context = self._require_parent(actor_id)
        if not context.includes_child(child_id):
            raise PermissionDeniedError(f"{child_id!r} is not a child in {actor_id!r}'s family.")
        return context

    def _require_parent(self, actor_id: str) -> FamilyContext:
        context = self._families.resolve(actor_id)
        if not context.is_parent:
            raise PermissionDeniedError("Only parents can perform this action.")
        return context

    def _mission_for(self, actor_id: str, mission_id: str) -> MissionInstance:
        mission = self._missions.get(mission_id)
        self._require_visible(actor_id, mission.user_id)
        return mission

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------
    def create_mission(
        self,
        actor_id: str,
        user_id: str,
        day: date | str,
        title: str,
        reward: AmountLike,
        category: str,
        mission_type: MissionType | str = MissionType.EVENT,
        *,
        description: str | None = None,
    ) -> MissionInstance:
        self._require_visible(actor_id, user_id)
        return self._missions.create_instance(
            user_id, day, title, reward, category, mission_type, description=description
        )

    def update_mission(self, actor_id: str, mission_id: str, **changes: Any) -> MissionInstance:
        self._mission_for(actor_id, mission_id)
        return self._missions.update(mission_id, **changes)

    def delete_mission(self, actor_id: str, mission_id: str) -> None:
        self._mission_for(actor_id, mission_id)
        self._missions.delete(mission_id)

    def complete_mission(self, actor_id: str, mission_id: str) -> Tuple[MissionInstance, Optional[StreakResult]]:
        """Complete a mission and advance the streak when today's daily missions are all done."""

        self._mission_for(actor_id, mission_id)
        mission = self._missions.complete(mission_id)
        streak: Optional[StreakResult] = None
        today = self.today()
        if mission.mission_type is MissionType.DAILY and mission.date == today:
            status = self._missions.daily_completion_status(mission.user_id, today)
            if status.all_completed:
                streak = self._streaks.update_streak(
                    mission.user_id, today, missions_completed=status.completed
                )
        return mission, streak

    def uncomplete_mission(self, actor_id: str, mission_id: str) -> MissionInstance:
        self._mission_for(actor_id, mission_id)
        return self._missions.uncomplete(mission_id)

    def missions_for_date(
        self, actor_id: str, day: date | str | None = None, *, user_id: str | None = None
    ) -> List[MissionInstance]:
        target = parse_date(day) if day is not None else self.today()
        if user_id is not None:
            self._require_visible(actor_id, user_id)
            return self._missions.list_for_date(user_id, target)
        context = self._families.resolve(actor_id)
        user_ids = context.child_ids if context.is_parent else (actor_id,)
        return self._missions.list_for_date(list(user_ids), target)

    def ensure_daily_missions(self, user_id: str, day: date | str | None = None) -> int:
        context = self._families.resolve(user_id)
        owners = list(context.parent_ids) or [user_id]
        return self._missions.ensure_daily_missions(user_id, owners, day if day is not None else self.today())

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def create_template(
        self,
        actor_id: str,
        title: str,
        reward: AmountLike,
        category: str,
        mission_type: MissionType | str = MissionType.DAILY,
        **options: Any,
    ) -> MissionTemplate:
        self._require_parent(actor_id)
        return self._missions.create_template(actor_id, title, reward, category, mission_type, **options)

    def list_templates(self, actor_id: str, *, include_inactive: bool = False) -> List[MissionTemplate]:
        context = self._families.resolve(actor_id)
        owners = set(context.parent_ids) | {actor_id}
        return self._missions.list_templates(sorted(owners), include_inactive=include_inactive)

    def deactivate_template(self, actor_id: str, template_id: str) -> MissionTemplate:
        context = self._require_parent(actor_id)
        template = self._missions.get_template(template_id)
        if template.user_id not in set(context.parent_ids) | {actor_id}:
            raise PermissionDeniedError("Templates can only be changed by their family's parents.")
        return self._missions.deactivate_template(template_id)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def pending_rewards(self, parent_id: str) -> List[PendingRewardMission]:
        self._require_parent(parent_id)
        return self._settlement.get_pending_reward_missions(parent_id)

    def reward_summary(self, parent_id: str) -> RewardSummary:
        self._require_parent(parent_id)
        return self._settlement.get_reward_summary(parent_id)

    def grouped_rewards(self, parent_id: str) -> Dict[str, DateGroupedMissions]:
        return self._settlement.group_missions_by_date(self.pending_rewards(parent_id))

    def smart_selection(self, parent_id: str) -> List[str]:
        return self._settlement.get_smart_selection(self.pending_rewards(parent_id))

    def settle_rewards(
        self, parent_id: str, mission_ids: Sequence[str], parent_note: str | None = None
    ) -> BatchRewardResult:
        self._require_parent(parent_id)
        return self._settlement.process_batch_reward(mission_ids, parent_note=parent_note, parent_id=parent_id)

    def settle_reward(self, parent_id: str, mission_id: str, parent_note: str | None = None) -> BatchRewardResult:
        self._require_parent(parent_id)
        return self._settlement.process_single_reward(mission_id, parent_note=parent_note, parent_id=parent_id)

    def pending_settlements(self, actor_id: str, user_id: str | None = None) -> PendingSettlement:
        target = user_id or actor_id
        self._require_visible(actor_id, target)
        return self._settlement.get_all_pending_settlements(target)

    def auto_settlement_check(self, user_id: str) -> AutoSettlementCheck:
        return self._settlement.should_trigger_auto_settlement(user_id)

    def request_settlement(self, user_id: str) -> SettlementRequest:
        return self._settlement.request_manual_settlement(user_id)

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------
    def streak_progress(self, actor_id: str, user_id: str | None = None) -> UserStreakProgress:
        target = user_id or actor_id
        self._require_visible(actor_id, target)
        return self._streaks.get_user_progress(target)

    def streak_settings(self, actor_id: str, user_id: str | None = None) -> StreakSettings:
        target = user_id or actor_id
        self._require_visible(actor_id, target)
        return self._streaks.get_streak_settings(target)

    def update_streak_settings(self, parent_id: str, child_id: str, **changes: Any) -> StreakSettings:
        self._require_parent_of(parent_id, child_id)
        return self._streaks.update_streak_settings(child_id, **changes)

    def reset_streak(self, parent_id: str, child_id: str) -> UserStreakProgress:
        self._require_parent_of(parent_id, child_id)
        return self._streaks.reset_streak(child_id)

    def claim_streak_bonus(self, actor_id: str, milestone_id: str) -> RewardHistoryEntry:
        entry = next(
            (item for item in self._streak_history_for(actor_id) if item.id == milestone_id),
            None,
        )
        if entry is None:
            raise PermissionDeniedError(f"Streak bonus {milestone_id!r} is not visible to {actor_id!r}.")
        return self._streaks.claim_bonus(milestone_id)

    def _streak_history_for(self, actor_id: str) -> List[RewardHistoryEntry]:
        context = self._families.resolve(actor_id)
        entries: List[RewardHistoryEntry] = []
        for child_id in context.child_ids:
            entries.extend(self._streaks.list_reward_history(child_id))
        return entries

    def verify_streak(self, actor_id: str, user_id: str) -> SystemStatus:
        self._require_visible(actor_id, user_id)
        return self._verification.system_status(user_id)

    # ------------------------------------------------------------------
    # Allowance
    # ------------------------------------------------------------------
    def balance(self, actor_id: str, user_id: str | None = None) -> int:
        target = user_id or actor_id
        self._require_visible(actor_id, target)
        return self._ledger.get_balance(target)

    def statistics(self, actor_id: str, user_id: str | None = None, period: str = "month") -> AllowanceStatistics:
        target = user_id or actor_id
        self._require_visible(actor_id, target)
        return self._ledger.get_statistics(target, period)

    def add_expense(
        self,
        actor_id: str,
        amount: AmountLike,
        category: str,
        description: str | None = None,
        day: date | str | None = None,
    ) -> AllowanceTransaction:
        return self._ledger.add_expense(actor_id, amount, category, description, day)

    # ------------------------------------------------------------------
    # Realtime and operations
    # ------------------------------------------------------------------
    def subscribe_missions(self, user_id: str, listener: MissionListener) -> Callable[[], None]:
        return self._connections.subscribe_to_missions(user_id, listener)

    def subscribe_family_missions(self, parent_id: str, listener: MissionListener) -> Callable[[], None]:
        context = self._require_parent(parent_id)
        return self._connections.subscribe_to_family_missions(
            context.child_ids, listener, subscriber=parent_id
        )

    def health(self) -> Dict[str, object]:
        database_ok = self._db.ping()
        return {
            "status": "ok" if database_ok else "degraded",
            "database": database_ok,
            "channels": len(self._connections.channels()),
        }

    def close(self) -> None:
        self._connections.unsubscribe_all()
        self._db.engine.dispose()


__all__ = ["MoneySeed"]
