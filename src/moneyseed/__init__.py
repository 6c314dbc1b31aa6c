"""MoneySeed package: family allowance, missions, reward settlement and streak bonuses."""

from .allowance import AllowanceLedger
from .api import ApiExporter
from .dates import KST, RecurringPattern
from .exceptions import (
    AlreadyClaimedError,
    AlreadyTransferredError,
    BackendUnavailableError,
    BatchInterruptedError,
    ConflictError,
    ConsistencyWarning,
    ImmutableAfterTransferError,
    InsufficientFundsError,
    MoneySeedError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .family import FamilyResolver
from .missions import MissionLifecycleManager
from .models import (
    AllowanceTransaction,
    BatchRewardResult,
    FamilyContext,
    FamilyRole,
    LegacyCode,
    MissionInstance,
    MissionTemplate,
    MissionType,
    PendingRewardMission,
    Priority,
    Relational,
    RewardHistoryEntry,
    StreakResult,
    StreakSettings,
    TransactionType,
    UserStreakProgress,
    UserType,
)
from .ops import StructuredLogger
from .persistence import Database
from .realtime import ChangeEvent, ChangeFeed, ChangeType, ConnectionManager, InMemoryChangeFeed, MissionListener
from .service import MoneySeed
from .settlement import RewardSettlementEngine
from .streak import StreakAccountingService, StreakVerificationService

__all__ = [
    "AllowanceLedger",
    "AllowanceTransaction",
    "AlreadyClaimedError",
    "AlreadyTransferredError",
    "ApiExporter",
    "BackendUnavailableError",
    "BatchInterruptedError",
    "BatchRewardResult",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeType",
    "ConflictError",
    "ConnectionManager",
    "ConsistencyWarning",
    "Database",
    "FamilyContext",
    "FamilyResolver",
    "FamilyRole",
    "ImmutableAfterTransferError",
    "InMemoryChangeFeed",
    "InsufficientFundsError",
    "KST",
    "LegacyCode",
    "MissionInstance",
    "MissionLifecycleManager",
    "MissionListener",
    "MissionTemplate",
    "MissionType",
    "MoneySeed",
    "MoneySeedError",
    "NotFoundError",
    "PendingRewardMission",
    "PermissionDeniedError",
    "Priority",
    "RecurringPattern",
    "Relational",
    "RewardHistoryEntry",
    "RewardSettlementEngine",
    "StreakAccountingService",
    "StreakResult",
    "StreakSettings",
    "StreakVerificationService",
    "StructuredLogger",
    "TransactionType",
    "UserStreakProgress",
    "UserType",
    "ValidationError",
]
