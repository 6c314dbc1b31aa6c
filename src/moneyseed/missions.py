"""Mission lifecycle: templates, dated instances and completion state."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlmodel import select

from .config import MAX_REWARD_AMOUNT
from .dates import Clock, RecurringPattern, parse_date, should_fire_on, utc_now
from .exceptions import AlreadyTransferredError, ImmutableAfterTransferError, NotFoundError, ValidationError
from .models import DailyCompletionStatus, MissionInstance, MissionTemplate, MissionType
from .money import AmountLike, require_positive, to_amount
from .ops import StructuredLogger
from .persistence import (
    AllowanceTransactionRow,
    Database,
    MissionInstanceRow,
    MissionTemplateRow,
    storage_time,
    to_record,
)

_EDITABLE_FIELDS = frozenset({"title", "description", "reward", "category", "date", "mission_type"})
_TEMPLATE_FIELDS = frozenset(
    {"title", "description", "reward", "category", "mission_type", "recurring_pattern", "is_active"}
)

# A mission is locked once it is flagged transferred or a payout row names it.
_UNPAID = (
    MissionInstanceRow.is_transferred == False,  # noqa: E712
    ~select(AllowanceTransactionRow.id)
    .where(AllowanceTransactionRow.mission_id == MissionInstanceRow.id)
    .exists(),
)


def validate_title(title: str) -> str:
    value = (title or "").strip()
    if not value:
        raise ValidationError("Mission title is required.")
    if len(value) > 100:
        raise ValidationError("Mission title must be 100 characters or fewer.")
    if "<" in value or ">" in value:
        raise ValidationError("Mission title must not contain '<' or '>'.")
    return value


def validate_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    value = description.strip()
    if len(value) > 500:
        raise ValidationError("Description must be 500 characters or fewer.")
    if "<" in value or ">" in value:
        raise ValidationError("Description must not contain '<' or '>'.")
    return value or None


def validate_reward(reward: AmountLike) -> int:
    return require_positive(to_amount(reward), maximum=MAX_REWARD_AMOUNT)


def validate_category(category: str) -> str:
    value = (category or "").strip()
    if not value:
        raise ValidationError("Category is required.")
    return value


def validate_mission_type(mission_type: MissionType | str) -> MissionType:
    try:
        return MissionType(mission_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown mission type {mission_type!r}.") from exc


def validate_recurring_pattern(pattern: RecurringPattern | str | None) -> Optional[RecurringPattern]:
    if not pattern:
        return None
    try:
        return RecurringPattern(pattern)
    except ValueError as exc:
        raise ValidationError(f"Unknown recurring pattern {pattern!r}.") from exc


def _validated_fields(values: Mapping[str, Any], allowed: frozenset[str]) -> Dict[str, Any]:
    unknown = set(values) - allowed
    if unknown:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}.")
    cleaned: Dict[str, Any] = {}
    for name, value in values.items():
        if name == "title":
            cleaned[name] = validate_title(value)
        elif name == "description":
            cleaned[name] = validate_description(value)
        elif name == "reward":
            cleaned[name] = validate_reward(value)
        elif name == "category":
            cleaned[name] = validate_category(value)
        elif name == "date":
            cleaned[name] = parse_date(value)
        elif name == "mission_type":
            cleaned[name] = validate_mission_type(value).value
        elif name == "recurring_pattern":
            pattern = validate_recurring_pattern(value)
            cleaned[name] = pattern.value if pattern else None
        else:
            cleaned[name] = bool(value)
    return cleaned


class MissionLifecycleManager:
    """Create, complete and edit missions while guarding paid-out ones."""

    def __init__(
        self,
        database: Database,
        *,
        clock: Clock = utc_now,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._db = database
        self._clock = clock
        self._logger = logger or StructuredLogger()

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def create_instance(
        self,
        user_id: str,
        day: date | str,
        title: str,
        reward: AmountLike,
        category: str,
        mission_type: MissionType | str = MissionType.EVENT,
        *,
        template_id: str | None = None,
        description: str | None = None,
    ) -> MissionInstance:
        if not user_id:
            raise ValidationError("A mission must be assigned to a user.")
        row = MissionInstanceRow(
            user_id=user_id,
            template_id=template_id,
            date=parse_date(day),
            title=validate_title(title),
            description=validate_description(description),
            reward=validate_reward(reward),
            category=validate_category(category),
            mission_type=validate_mission_type(mission_type).value,
        )
        self._db.insert(row)
        self._logger.log("mission_created", mission=row.id, user=user_id, date=row.date.isoformat())
        return to_record(row)

    def get(self, instance_id: str) -> MissionInstance:
        return to_record(self._db.require(MissionInstanceRow, instance_id, label="Mission"))

    def complete(self, instance_id: str) -> MissionInstance:
        """Mark a mission completed; completing twice keeps the first timestamp."""

        current = self.get(instance_id)
        if current.is_transferred:
            raise AlreadyTransferredError(f"Mission {instance_id!r} has already been paid out.")
        if current.is_completed:
            return current
        row = self._db.update(
            MissionInstanceRow,
            instance_id,
            {"is_completed": True, "completed_at": storage_time(self._clock())},
            where=(MissionInstanceRow.is_transferred == False,),  # noqa: E712
        )
        if row is None:
            self._raise_guard(instance_id, AlreadyTransferredError)
        self._logger.log("mission_completed", mission=instance_id, user=row.user_id)
        return to_record(row)

    def uncomplete(self, instance_id: str) -> MissionInstance:
        row = self._guarded_update(instance_id, {"is_completed": False, "completed_at": None})
        self._logger.log("mission_uncompleted", mission=instance_id, user=row.user_id)
        return to_record(row)

    def update(self, instance_id: str, **changes: Any) -> MissionInstance:
        if not changes:
            return self.get(instance_id)
        row = self._guarded_update(instance_id, _validated_fields(changes, _EDITABLE_FIELDS))
        self._logger.log("mission_updated", mission=instance_id, fields=sorted(changes))
        return to_record(row)

    def delete(self, instance_id: str) -> None:
        removed = self._db.delete(
            MissionInstanceRow,
            instance_id,
            where=_UNPAID,
        )
        if not removed:
            self._raise_guard(instance_id, ImmutableAfterTransferError)
        self._logger.log("mission_deleted", mission=instance_id)

    def list_for_date(self, user_ids: Sequence[str] | str, day: date | str) -> List[MissionInstance]:
        ids = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        if not ids:
            return []
        rows = self._db.find(
            MissionInstanceRow,
            MissionInstanceRow.user_id.in_(ids),
            MissionInstanceRow.date == parse_date(day),
            order_by=(MissionInstanceRow.created_at,),
        )
        return [to_record(row) for row in rows]

    def list_pending(self, user_id: str) -> List[MissionInstance]:
        """Completed but untransferred missions for ``user_id``, any date."""

        rows = self._db.find(
            MissionInstanceRow,
            MissionInstanceRow.user_id == user_id,
            MissionInstanceRow.is_completed == True,  # noqa: E712
            MissionInstanceRow.is_transferred == False,  # noqa: E712
            order_by=(MissionInstanceRow.date, MissionInstanceRow.created_at),
        )
        return [to_record(row) for row in rows]

    def daily_completion_status(self, user_id: str, day: date | str) -> DailyCompletionStatus:
        """Completion totals over the user's *daily* missions for ``day``.

        Event missions never count towards streak eligibility.
        """

        target = parse_date(day)
        daily = [
            mission
            for mission in self.list_for_date(user_id, target)
            if mission.mission_type is MissionType.DAILY
        ]
        return DailyCompletionStatus(
            user_id=user_id,
            day=target,
            total=len(daily),
            completed=sum(1 for mission in daily if mission.is_completed),
        )

    def _guarded_update(self, instance_id: str, values: Mapping[str, Any]) -> MissionInstanceRow:
        row = self._db.update(
            MissionInstanceRow,
            instance_id,
            values,
            where=_UNPAID,
        )
        if row is None:
            self._raise_guard(instance_id, ImmutableAfterTransferError)
        return row

    def _raise_guard(self, instance_id: str, error: type[ImmutableAfterTransferError]) -> None:
        if self._db.get(MissionInstanceRow, instance_id) is None:
            raise NotFoundError(f"Mission {instance_id!r} does not exist.")
        raise error(f"Mission {instance_id!r} has been paid out and can no longer change.")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def create_template(
        self,
        owner_id: str,
        title: str,
        reward: AmountLike,
        category: str,
        mission_type: MissionType | str = MissionType.DAILY,
        *,
        description: str | None = None,
        recurring_pattern: RecurringPattern | str | None = None,
    ) -> MissionTemplate:
        pattern = validate_recurring_pattern(recurring_pattern)
        row = MissionTemplateRow(
            user_id=owner_id,
            title=validate_title(title),
            description=validate_description(description),
            reward=validate_reward(reward),
            category=validate_category(category),
            mission_type=validate_mission_type(mission_type).value,
            recurring_pattern=pattern.value if pattern else None,
        )
        self._db.insert(row)
        self._logger.log("template_created", template=row.id, owner=owner_id)
        return to_record(row)

    def get_template(self, template_id: str) -> MissionTemplate:
        return to_record(self._db.require(MissionTemplateRow, template_id, label="Template"))

    def update_template(self, template_id: str, **changes: Any) -> MissionTemplate:
        values = _validated_fields(changes, _TEMPLATE_FIELDS)
        values["updated_at"] = storage_time(self._clock())
        row = self._db.update(MissionTemplateRow, template_id, values)
        if row is None:
            raise NotFoundError(f"Template {template_id!r} does not exist.")
        return to_record(row)

    def deactivate_template(self, template_id: str) -> MissionTemplate:
        """Soft-disable a template; instances it already produced stay valid."""

        template = self.update_template(template_id, is_active=False)
        self._logger.log("template_deactivated", template=template_id)
        return template

    def list_templates(self, owner_ids: Iterable[str], *, include_inactive: bool = False) -> List[MissionTemplate]:
        ids = list(owner_ids)
        if not ids:
            return []
        criteria = [MissionTemplateRow.user_id.in_(ids)]
        if not include_inactive:
            criteria.append(MissionTemplateRow.is_active == True)  # noqa: E712
        rows = self._db.find(MissionTemplateRow, *criteria, order_by=(MissionTemplateRow.created_at,))
        return [to_record(row) for row in rows]

    def ensure_daily_missions(self, user_id: str, owner_ids: Iterable[str], day: date | str) -> int:
        """Fire the owners' active daily templates for ``user_id`` on ``day``.

        Nothing is created when the user already has any daily mission for that
        date.  Returns the number of instances created.
        """

        target = parse_date(day)
        existing = self._db.first(
            MissionInstanceRow,
            MissionInstanceRow.user_id == user_id,
            MissionInstanceRow.date == target,
            MissionInstanceRow.mission_type == MissionType.DAILY.value,
        )
        if existing is not None:
            return 0
        created = 0
        for template in self.list_templates(owner_ids):
            if template.mission_type is not MissionType.DAILY:
                continue
            if not should_fire_on(target, template.recurring_pattern):
                continue
            self.create_instance(
                user_id,
                target,
                template.title,
                template.reward,
                template.category,
                MissionType.DAILY,
                template_id=template.id,
                description=template.description,
            )
            created += 1
        if created:
            self._logger.log("daily_missions_generated", user=user_id, date=target.isoformat(), count=created)
        return created


__all__ = [
    "MissionLifecycleManager",
    "validate_category",
    "validate_description",
    "validate_mission_type",
    "validate_recurring_pattern",
    "validate_reward",
    "validate_title",
]
