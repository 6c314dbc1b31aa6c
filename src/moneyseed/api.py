"""JSON serialisation helpers for MoneySeed records."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional

from .models import (
    AllowanceStatistics,
    AllowanceTransaction,
    AutoSettlementCheck,
    BatchRewardResult,
    DateGroupedMissions,
    MissionInstance,
    MissionTemplate,
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


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ApiExporter:
    """Convert MoneySeed records to JSON friendly dictionaries."""

    def mission(self, mission: MissionInstance) -> Dict[str, object]:
        return {
            "id": mission.id,
            "user_id": mission.user_id,
            "template_id": mission.template_id,
            "date": _iso(mission.date),
            "title": mission.title,
            "description": mission.description,
            "reward": mission.reward,
            "category": mission.category,
            "mission_type": mission.mission_type.value,
            "status": mission.status,
            "is_completed": mission.is_completed,
            "completed_at": _iso(mission.completed_at),
            "is_transferred": mission.is_transferred,
            "transferred_at": _iso(mission.transferred_at),
        }

    def missions(self, missions: Iterable[MissionInstance]) -> List[Dict[str, object]]:
        return [self.mission(mission) for mission in missions]

    def template(self, template: MissionTemplate) -> Dict[str, object]:
        return {
            "id": template.id,
            "user_id": template.user_id,
            "title": template.title,
            "description": template.description,
            "reward": template.reward,
            "category": template.category,
            "mission_type": template.mission_type.value,
            "recurring_pattern": template.recurring_pattern.value if template.recurring_pattern else None,
            "is_active": template.is_active,
        }

    def transaction(self, transaction: AllowanceTransaction) -> Dict[str, object]:
        return {
            "id": transaction.id,
            "user_id": transaction.user_id,
            "date": _iso(transaction.date),
            "type": transaction.type.value,
            "category": transaction.category,
            "amount": transaction.amount,
            "description": transaction.description,
            "mission_id": transaction.mission_id,
            "parent_note": transaction.parent_note,
        }

    def pending_mission(self, mission: PendingRewardMission) -> Dict[str, object]:
        return {
            "id": mission.id,
            "user_id": mission.user_id,
            "child_name": mission.child_name,
            "title": mission.title,
            "reward": mission.reward,
            "category": mission.category,
            "mission_type": mission.mission_type.value,
            "date": _iso(mission.date),
            "completed_at": _iso(mission.completed_at),
            "days_since_completion": mission.days_since_completion,
            "priority": mission.priority.value,
        }

    def grouped_missions(self, groups: Mapping[str, DateGroupedMissions]) -> Dict[str, object]:
        return {
            key: {
                "date": group.date,
                "total_amount": group.total_amount,
                "missions": [self.pending_mission(mission) for mission in group.missions],
                "child_groups": {
                    child: [mission.id for mission in missions]
                    for child, missions in group.child_groups.items()
                },
            }
            for key, group in groups.items()
        }

    def reward_summary(self, summary: RewardSummary) -> Dict[str, object]:
        return {
            "total_pending": summary.total_pending,
            "total_amount": summary.total_amount,
            "urgent_count": summary.urgent_count,
            "latest_completion": _iso(summary.latest_completion),
            "oldest_completion": _iso(summary.oldest_completion),
        }

    def batch_result(self, result: BatchRewardResult) -> Dict[str, object]:
        return {
            "success": result.success,
            "processed_count": result.processed_count,
            "total_amount": result.total_amount,
            "processed_ids": list(result.processed_ids),
            "skipped": dict(result.skipped),
            "message": result.message,
        }

    def pending_settlement(self, pending: PendingSettlement) -> Dict[str, object]:
        return {
            "total_amount": pending.total_amount,
            "total_count": pending.total_count,
            "missions": self.missions(pending.missions),
            "by_date": {
                key: {"amount": amount, "mission_ids": [mission.id for mission in missions]}
                for key, (missions, amount) in pending.by_date.items()
            },
        }

    def auto_settlement(self, check: AutoSettlementCheck) -> Dict[str, object]:
        return {
            "should_trigger": check.should_trigger,
            "reason": check.reason,
            "today": {
                "all_completed": check.today_status.all_completed,
                "total": check.today_status.total,
                "completed": check.today_status.completed,
            },
            "pending": self.pending_settlement(check.pending),
        }

    def settlement_request(self, request: SettlementRequest) -> Dict[str, object]:
        return {
            "success": request.success,
            "total_amount": request.total_amount,
            "total_count": request.total_count,
            "mission_ids": [mission.id for mission in request.missions],
            "message": request.message,
        }

    def streak_progress(self, progress: UserStreakProgress) -> Dict[str, object]:
        return {
            "user_id": progress.user_id,
            "streak_count": progress.streak_count,
            "last_completion_date": _iso(progress.last_completion_date),
            "streak_started_on": _iso(progress.streak_started_on),
            "best_streak": progress.best_streak,
            "total_missions_completed": progress.total_missions_completed,
            "total_streak_bonus_earned": progress.total_streak_bonus_earned,
        }

    def streak_settings(self, settings: StreakSettings) -> Dict[str, object]:
        return {
            "user_id": settings.user_id,
            "streak_target_days": settings.streak_target_days,
            "streak_bonus_amount": settings.streak_bonus_amount,
            "streak_repeat": settings.streak_repeat,
            "streak_enabled": settings.streak_enabled,
        }

    def streak_result(self, result: Optional[StreakResult]) -> Optional[Dict[str, object]]:
        if result is None:
            return None
        return {
            "new_streak": result.new_streak,
            "bonus_earned": result.bonus_earned,
            "should_celebrate": result.should_celebrate,
            "is_new_record": result.is_new_record,
            "milestone_id": result.milestone_id,
        }

    def reward_history(self, entry: RewardHistoryEntry) -> Dict[str, object]:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "reward_type": entry.reward_type,
            "amount": entry.amount,
            "trigger_value": entry.trigger_value,
            "streak_started_on": _iso(entry.streak_started_on),
            "description": entry.description,
            "is_claimed": entry.is_claimed,
            "claimed_at": _iso(entry.claimed_at),
            "transaction_id": entry.transaction_id,
        }

    def system_status(self, status: SystemStatus) -> Dict[str, object]:
        payments = status.bonus_payments
        logic = status.streak_logic
        return {
            "success": status.success,
            "recommendations": list(status.recommendations),
            "bonus_payments": {
                "is_consistent": payments.is_consistent,
                "reward_count": payments.reward_count,
                "reward_total": payments.reward_total,
                "transaction_count": payments.transaction_count,
                "transaction_total": payments.transaction_total,
                "recorded_bonus_earned": payments.recorded_bonus_earned,
            },
            "streak_logic": {
                "current_streak": logic.current_streak,
                "target": logic.target,
                "last_milestone": logic.last_milestone,
                "should_have_bonus": logic.should_have_bonus,
                "has_bonus_record": logic.has_bonus_record,
                "streak_logic_correct": logic.streak_logic_correct,
                "next_bonus_at": logic.next_bonus_at,
                "days_until_bonus": logic.days_until_bonus,
            },
        }

    def statistics(self, stats: AllowanceStatistics) -> Dict[str, object]:
        return {
            "current_balance": stats.current_balance,
            "total_income": stats.total_income,
            "total_expense": stats.total_expense,
            "monthly_income": stats.monthly_income,
            "monthly_expense": stats.monthly_expense,
            "top_categories": [
                {"category": share.category, "amount": share.amount, "percentage": round(share.percentage, 1)}
                for share in stats.top_categories
            ],
            "recent_transactions": [self.transaction(item) for item in stats.recent_transactions],
        }

    def to_json(self, payload: Mapping[str, object]) -> str:
        return json.dumps(payload, sort_keys=True, ensure_ascii=False)


__all__ = ["ApiExporter"]
