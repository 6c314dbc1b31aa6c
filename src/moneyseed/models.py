"""Domain models used by the MoneySeed package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from .dates import RecurringPattern

MISSION_REWARD_CATEGORY = "mission reward"
STREAK_BONUS_CATEGORY = "streak bonus"
STREAK_BONUS_REWARD_TYPE = "streak_bonus"

INCOME_CATEGORIES: Tuple[str, ...] = (MISSION_REWARD_CATEGORY, STREAK_BONUS_CATEGORY)
EXPENSE_CATEGORIES: Tuple[str, ...] = (
    "snack",
    "toy",
    "book",
    "stationery",
    "game",
    "clothes",
    "saving",
    "other",
)


class MissionType(str, Enum):
    """Daily missions recur from templates; event missions are one-off."""

    DAILY = "daily"
    EVENT = "event"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


class UserType(str, Enum):
    PARENT = "parent"
    CHILD = "child"


class FamilyRole(str, Enum):
    FATHER = "father"
    MOTHER = "mother"
    CHILD = "child"

    @property
    def is_parent(self) -> bool:
        return self is not FamilyRole.CHILD


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class MissionTemplate:
    """Reusable chore definition that spawns dated mission instances."""

    id: str
    user_id: str
    title: str
    reward: int
    category: str
    mission_type: MissionType
    is_active: bool = True
    description: Optional[str] = None
    recurring_pattern: Optional[RecurringPattern] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mission_type", MissionType(self.mission_type))
        if self.recurring_pattern is not None:
            object.__setattr__(self, "recurring_pattern", RecurringPattern(self.recurring_pattern))


@dataclass(slots=True)
class MissionInstance:
    """One concrete, dated occurrence of a chore."""

    id: str
    user_id: str
    date: date
    title: str
    reward: int
    category: str
    mission_type: MissionType
    is_completed: bool = False
    is_transferred: bool = False
    template_id: Optional[str] = None
    description: Optional[str] = None
    completed_at: Optional[datetime] = None
    transferred_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mission_type", MissionType(self.mission_type))

    @property
    def status(self) -> str:
        if self.is_transferred:
            return "transferred"
        if self.is_completed:
            return "completed"
        return "incomplete"

    @property
    def is_pending_reward(self) -> bool:
        return self.is_completed and not self.is_transferred


@dataclass(slots=True)
class AllowanceTransaction:
    """Append-only ledger entry; ``amount`` is always positive."""

    id: str
    user_id: str
    amount: int
    type: TransactionType
    category: str
    date: date
    description: Optional[str] = None
    mission_id: Optional[str] = None
    reward_id: Optional[str] = None
    parent_note: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", TransactionType(self.type))

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type is TransactionType.INCOME else -self.amount


@dataclass(slots=True)
class UserStreakProgress:
    user_id: str
    streak_count: int = 0
    last_completion_date: Optional[date] = None
    streak_started_on: Optional[date] = None
    best_streak: int = 0
    total_missions_completed: int = 0
    total_streak_bonus_earned: int = 0


@dataclass(slots=True)
class StreakSettings:
    """Parent-controlled streak configuration for one child."""

    user_id: str
    streak_target_days: int = 7
    streak_bonus_amount: int = 1000
    streak_repeat: bool = True
    streak_enabled: bool = True

    def is_milestone(self, streak_count: int) -> bool:
        """True when reaching ``streak_count`` earns a bonus.

        Without ``streak_repeat`` only the first multiple of the target in a
        streak run pays out.
        """

        if streak_count <= 0 or self.streak_target_days <= 0:
            return False
        if streak_count % self.streak_target_days:
            return False
        return self.streak_repeat or streak_count == self.streak_target_days

    def last_milestone(self, streak_count: int) -> int:
        """Largest multiple of the target not above ``streak_count`` (0 when none)."""

        if self.streak_target_days <= 0:
            return 0
        return (streak_count // self.streak_target_days) * self.streak_target_days


@dataclass(slots=True)
class RewardHistoryEntry:
    """Audit record written for every streak milestone."""

    id: str
    user_id: str
    reward_type: str
    amount: int
    trigger_value: int
    streak_started_on: Optional[date] = None
    description: str = ""
    is_claimed: bool = False
    claimed_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class Profile:
    id: str
    full_name: str
    user_type: UserType
    parent_id: Optional[str] = None
    family_code: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_type", UserType(self.user_type))

    @property
    def is_parent(self) -> bool:
        return self.user_type is UserType.PARENT


# ---------------------------------------------------------------------------
# Family links
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LegacyCode:
    """Family membership expressed through a shared ``family_code`` string."""

    code: str


@dataclass(frozen=True, slots=True)
class Relational:
    """Family membership expressed through family / member rows."""

    family_id: str
    member_id: str


FamilyLink = Union[LegacyCode, Relational]


@dataclass(slots=True)
class FamilyContext:
    """Normalised view of a user's family consumed by the services."""

    user_id: str
    is_parent: bool
    parent_ids: Tuple[str, ...] = ()
    child_ids: Tuple[str, ...] = ()
    child_names: Dict[str, str] = field(default_factory=dict)
    link: Optional[FamilyLink] = None

    @property
    def parent_id(self) -> Optional[str]:
        if self.is_parent:
            return self.user_id
        return self.parent_ids[0] if self.parent_ids else None

    @property
    def member_ids(self) -> Tuple[str, ...]:
        members = list(self.parent_ids)
        if self.user_id not in members and self.user_id not in self.child_ids:
            members.append(self.user_id)
        members.extend(self.child_ids)
        return tuple(dict.fromkeys(members))

    def includes_child(self, user_id: str) -> bool:
        return user_id in self.child_ids


# ---------------------------------------------------------------------------
# Settlement value objects
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class PendingRewardMission:
    """A completed but unpaid mission annotated for parent review."""

    id: str
    user_id: str
    child_name: str
    title: str
    reward: int
    category: str
    mission_type: MissionType
    date: date
    completed_at: Optional[datetime]
    days_since_completion: int
    priority: Priority
    description: Optional[str] = None


@dataclass(slots=True)
class DateGroupedMissions:
    date: str
    missions: List[PendingRewardMission] = field(default_factory=list)
    total_amount: int = 0
    child_groups: Dict[str, List[PendingRewardMission]] = field(default_factory=dict)


@dataclass(slots=True)
class RewardSummary:
    total_pending: int
    total_amount: int
    urgent_count: int
    latest_completion: Optional[date] = None
    oldest_completion: Optional[date] = None


@dataclass(slots=True)
class BatchRewardResult:
    """What a settlement batch actually applied."""

    processed_count: int = 0
    total_amount: int = 0
    processed_ids: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.processed_count > 0


@dataclass(slots=True)
class DailyCompletionStatus:
    user_id: str
    day: date
    total: int
    completed: int

    @property
    def all_completed(self) -> bool:
        return self.total > 0 and self.completed == self.total


@dataclass(slots=True)
class PendingSettlement:
    total_amount: int = 0
    total_count: int = 0
    missions: List[MissionInstance] = field(default_factory=list)
    by_date: Dict[str, Tuple[List[MissionInstance], int]] = field(default_factory=dict)


@dataclass(slots=True)
class SettlementRequest:
    """Child-side request asking a parent to settle every pending mission."""

    success: bool
    total_amount: int
    total_count: int
    missions: List[MissionInstance] = field(default_factory=list)
    message: str = ""


@dataclass(slots=True)
class AutoSettlementCheck:
    should_trigger: bool
    reason: str
    today_status: DailyCompletionStatus
    pending: PendingSettlement


# ---------------------------------------------------------------------------
# Streak value objects
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class StreakResult:
    new_streak: int
    bonus_earned: int = 0
    should_celebrate: bool = False
    is_new_record: bool = False
    milestone_id: Optional[str] = None


@dataclass(slots=True)
class BonusPaymentReport:
    user_id: str
    is_consistent: bool
    reward_count: int
    reward_total: int
    transaction_count: int
    transaction_total: int
    recorded_bonus_earned: int


@dataclass(slots=True)
class StreakLogicReport:
    user_id: str
    current_streak: int
    target: int
    last_milestone: int
    should_have_bonus: bool
    has_bonus_record: bool
    next_bonus_at: int
    days_until_bonus: int

    @property
    def streak_logic_correct(self) -> bool:
        return self.should_have_bonus == self.has_bonus_record


@dataclass(slots=True)
class SystemStatus:
    success: bool
    bonus_payments: BonusPaymentReport
    streak_logic: StreakLogicReport
    recommendations: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Ledger statistics
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class CategoryShare:
    category: str
    amount: int
    percentage: float


@dataclass(slots=True)
class AllowanceStatistics:
    current_balance: int
    total_income: int
    total_expense: int
    monthly_income: int
    monthly_expense: int
    top_categories: List[CategoryShare] = field(default_factory=list)
    recent_transactions: List[AllowanceTransaction] = field(default_factory=list)


__all__ = [
    "AllowanceStatistics",
    "AllowanceTransaction",
    "AutoSettlementCheck",
    "BatchRewardResult",
    "BonusPaymentReport",
    "CategoryShare",
    "DailyCompletionStatus",
    "DateGroupedMissions",
    "EXPENSE_CATEGORIES",
    "FamilyContext",
    "FamilyLink",
    "FamilyRole",
    "INCOME_CATEGORIES",
    "LegacyCode",
    "MISSION_REWARD_CATEGORY",
    "MissionInstance",
    "MissionTemplate",
    "MissionType",
    "PendingRewardMission",
    "PendingSettlement",
    "Priority",
    "Profile",
    "Relational",
    "RewardHistoryEntry",
    "RewardSummary",
    "SettlementRequest",
    "STREAK_BONUS_CATEGORY",
    "STREAK_BONUS_REWARD_TYPE",
    "StreakLogicReport",
    "StreakResult",
    "StreakSettings",
    "SystemStatus",
    "TransactionType",
    "UserStreakProgress",
    "UserType",
]
