import pytest

from moneyseed.exceptions import NotFoundError, ValidationError
from moneyseed.models import LegacyCode, Relational


def test_legacy_parent_sees_children_by_parent_id_and_family_code(seed, family) -> None:
    context = seed.families.resolve(family.parent)

    assert context.is_parent
    assert context.parent_ids == (family.parent,)
    assert context.child_ids == (family.ava, family.ben)
    assert context.child_names == {family.ava: "Ava", family.ben: "Ben"}
    assert context.link == LegacyCode("FAM001")


def test_legacy_children_resolve_their_parents(seed, family) -> None:
    ava = seed.families.resolve(family.ava)
    ben = seed.families.resolve(family.ben)

    assert not ava.is_parent
    assert ava.parent_ids == (family.parent,)
    assert ava.parent_id == family.parent
    assert ava.child_ids == (family.ava,)
    assert ava.link is None
    assert ben.parent_ids == (family.parent,)
    assert ben.link == LegacyCode("FAM001")


def test_visibility_stays_inside_the_family(seed, family) -> None:
    families = seed.families
    assert families.can_view(family.parent, family.ava)
    assert families.can_view(family.ava, family.parent)
    assert families.can_view(family.ava, family.ava)
    assert not families.can_view(family.ava, family.ben)
    assert not families.can_view(family.other_parent, family.ava)
    assert not families.can_view(family.parent, family.outsider)


@pytest.fixture
def kims(seed):
    families = seed.families
    families.create_profile("Dad", "parent", user_id="dad")
    families.create_profile("Mom", "parent", user_id="mom")
    families.create_profile("Jun", "child", user_id="jun")
    link = families.create_family("Kim family", "dad", "father")
    code = families.family_code_for(link)
    families.join_family(code.lower(), "mom", "mother")
    families.join_family(code, "jun", "child", nickname="Junnie")
    return link, code


def test_relational_family_resolution(seed, kims) -> None:
    link, code = kims
    assert len(code) == 6 and code.isalnum() and code.isupper()

    mom = seed.families.resolve("mom")
    assert mom.is_parent
    assert mom.parent_ids == ("dad", "mom")
    assert mom.child_ids == ("jun",)
    assert mom.child_names == {"jun": "Junnie"}
    assert isinstance(mom.link, Relational)
    assert mom.link.family_id == link.family_id

    jun = seed.families.resolve("jun")
    assert not jun.is_parent
    assert jun.parent_ids == ("dad", "mom")
    assert jun.child_names == {"jun": "Junnie"}
    assert seed.families.can_view("dad", "jun")


def test_relational_membership_wins_over_legacy_code(seed, family, kims) -> None:
    _, code = kims
    seed.families.join_family(code, family.ben, "child")

    ben = seed.families.resolve(family.ben)

    assert isinstance(ben.link, Relational)
    assert ben.parent_ids == ("dad", "mom")
    assert family.ben in seed.families.resolve("dad").child_ids


def test_joining_twice_reuses_membership(seed, kims) -> None:
    _, code = kims
    first = seed.families.join_family(code, "jun", "child")
    second = seed.families.join_family(code, "jun", "child")
    assert first == second


def test_unknown_codes_and_profiles(seed, family) -> None:
    with pytest.raises(NotFoundError):
        seed.families.join_family("NOPE00", family.ava, "child")
    with pytest.raises(NotFoundError):
        seed.families.get_profile("ghost")
    with pytest.raises(NotFoundError):
        seed.families.resolve("ghost")
    with pytest.raises(ValidationError):
        seed.families.create_profile("   ", "child")
    with pytest.raises(ValidationError):
        seed.families.create_family("", family.parent, "mother")


def test_family_code_for_legacy_link(seed) -> None:
    assert seed.families.family_code_for(LegacyCode("FAM001")) == "FAM001"
