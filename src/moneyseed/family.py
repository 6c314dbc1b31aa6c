"""Family resolution for MoneySeed.

Two family representations coexist in stored data: the legacy shared
``family_code`` / ``parent_id`` fields on profiles and the relational
``families`` / ``family_members`` tables.  :class:`FamilyResolver` turns
either into one :class:`~moneyseed.models.FamilyContext` so that nothing
downstream has to know which one a user is on.
"""

from __future__ import annotations

import secrets
import string
from typing import Dict, List, Optional

from sqlalchemy import or_

from .exceptions import NotFoundError, ValidationError
from .models import FamilyContext, FamilyLink, FamilyRole, LegacyCode, Profile, Relational, UserType
from .ops import StructuredLogger
from .persistence import Database, FamilyMemberRow, FamilyRow, ProfileRow, to_record

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class FamilyResolver:
    """Resolve family links and manage profiles and memberships."""

    def __init__(self, database: Database, *, logger: StructuredLogger | None = None) -> None:
        self._db = database
        self._logger = logger or StructuredLogger()

    # ------------------------------------------------------------------
    # Profiles and memberships
    # ------------------------------------------------------------------
    def create_profile(
        self,
        full_name: str,
        user_type: UserType | str,
        *,
        user_id: str | None = None,
        parent_id: str | None = None,
        family_code: str | None = None,
    ) -> Profile:
        name = (full_name or "").strip()
        if not name or len(name) > 50:
            raise ValidationError("Name must be between 1 and 50 characters.")
        row = ProfileRow(
            full_name=name,
            user_type=UserType(user_type).value,
            parent_id=parent_id,
            family_code=family_code,
        )
        if user_id:
            row.id = user_id
        self._db.insert(row)
        self._logger.log("profile_created", user=row.id, user_type=row.user_type)
        return to_record(row)

    def get_profile(self, user_id: str) -> Profile:
        return to_record(self._db.require(ProfileRow, user_id, label="Profile"))

    def create_family(self, family_name: str, created_by: str, role: FamilyRole | str) -> Relational:
        name = (family_name or "").strip()
        if not name:
            raise ValidationError("Family name is required.")
        self.get_profile(created_by)
        family = self._db.insert(
            FamilyRow(family_code=self._generate_code(), family_name=name, created_by=created_by)
        )
        member = self._db.insert(
            FamilyMemberRow(family_id=family.id, user_id=created_by, role=FamilyRole(role).value)
        )
        self._logger.log("family_created", family=family.id, created_by=created_by)
        return Relational(family_id=family.id, member_id=member.id)

    def join_family(
        self, family_code: str, user_id: str, role: FamilyRole | str, *, nickname: str | None = None
    ) -> Relational:
        code = (family_code or "").strip().upper()
        family = self._db.first(FamilyRow, FamilyRow.family_code == code)
        if family is None:
            raise NotFoundError(f"No family uses the code {code!r}.")
        self.get_profile(user_id)
        existing = self._db.first(
            FamilyMemberRow,
            FamilyMemberRow.family_id == family.id,
            FamilyMemberRow.user_id == user_id,
        )
        if existing is not None:
            if not existing.is_active:
                self._db.update(FamilyMemberRow, existing.id, {"is_active": True})
            return Relational(family_id=family.id, member_id=existing.id)
        member = self._db.insert(
            FamilyMemberRow(
                family_id=family.id,
                user_id=user_id,
                role=FamilyRole(role).value,
                nickname=nickname,
            )
        )
        self._logger.log("family_joined", family=family.id, user=user_id, role=member.role)
        return Relational(family_id=family.id, member_id=member.id)

    def family_code_for(self, link: FamilyLink) -> str:
        if isinstance(link, LegacyCode):
            return link.code
        family = self._db.require(FamilyRow, link.family_id, label="Family")
        return family.family_code

    def _generate_code(self) -> str:
        while True:
            code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
            if self._db.first(FamilyRow, FamilyRow.family_code == code) is None:
                return code

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def link_for(self, user_id: str) -> Optional[FamilyLink]:
        """Return the user's family link, preferring relational membership."""

        member = self._db.first(
            FamilyMemberRow,
            FamilyMemberRow.user_id == user_id,
            FamilyMemberRow.is_active == True,  # noqa: E712
            order_by=(FamilyMemberRow.joined_at,),
        )
        if member is not None:
            return Relational(family_id=member.family_id, member_id=member.id)
        profile = self._db.get(ProfileRow, user_id)
        if profile is not None and profile.family_code:
            return LegacyCode(profile.family_code)
        return None

    def resolve(self, user_id: str) -> FamilyContext:
        profile = self.get_profile(user_id)
        link = self.link_for(user_id)
        if isinstance(link, Relational):
            context = self._resolve_relational(profile, link)
        else:
            context = self._resolve_legacy(profile, link)
        return context

    def can_view(self, viewer_id: str, target_id: str) -> bool:
        if viewer_id == target_id:
            return True
        context = self.resolve(viewer_id)
        return target_id in context.member_ids

    def _resolve_relational(self, profile: Profile, link: Relational) -> FamilyContext:
        members = self._db.find(
            FamilyMemberRow,
            FamilyMemberRow.family_id == link.family_id,
            FamilyMemberRow.is_active == True,  # noqa: E712
            order_by=(FamilyMemberRow.joined_at,),
        )
        me = next((member for member in members if member.id == link.member_id), None)
        is_parent = FamilyRole(me.role).is_parent if me is not None else profile.is_parent
        parent_ids = [m.user_id for m in members if FamilyRole(m.role).is_parent]
        child_ids = [m.user_id for m in members if not FamilyRole(m.role).is_parent]
        names = self._names(child_ids)
        for member in members:
            if member.user_id in names and member.nickname:
                names[member.user_id] = member.nickname
        return FamilyContext(
            user_id=profile.id,
            is_parent=is_parent,
            parent_ids=tuple(parent_ids),
            child_ids=tuple(child_ids) if is_parent else (profile.id,),
            child_names=names if is_parent else {profile.id: names.get(profile.id, profile.full_name)},
            link=link,
        )

    def _resolve_legacy(self, profile: Profile, link: Optional[FamilyLink]) -> FamilyContext:
        if profile.is_parent:
            criteria = [ProfileRow.parent_id == profile.id]
            if profile.family_code:
                criteria.append(ProfileRow.family_code == profile.family_code)
            children = self._db.find(
                ProfileRow,
                or_(*criteria),
                ProfileRow.user_type == UserType.CHILD.value,
                order_by=(ProfileRow.created_at,),
            )
            return FamilyContext(
                user_id=profile.id,
                is_parent=True,
                parent_ids=(profile.id,),
                child_ids=tuple(child.id for child in children),
                child_names={child.id: child.full_name for child in children},
                link=link,
            )
        parent_ids: List[str] = []
        if profile.parent_id:
            parent_ids.append(profile.parent_id)
        if profile.family_code:
            parents = self._db.find(
                ProfileRow,
                ProfileRow.family_code == profile.family_code,
                ProfileRow.user_type == UserType.PARENT.value,
                order_by=(ProfileRow.created_at,),
            )
            parent_ids.extend(parent.id for parent in parents if parent.id not in parent_ids)
        return FamilyContext(
            user_id=profile.id,
            is_parent=False,
            parent_ids=tuple(parent_ids),
            child_ids=(profile.id,),
            child_names={profile.id: profile.full_name},
            link=link,
        )

    def _names(self, user_ids: List[str]) -> Dict[str, str]:
        if not user_ids:
            return {}
        rows = self._db.find(ProfileRow, ProfileRow.id.in_(user_ids))
        names = {row.id: row.full_name for row in rows}
        return {user_id: names.get(user_id, user_id) for user_id in user_ids}


__all__ = ["FamilyResolver"]
